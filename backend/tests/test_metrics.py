"""
Tests for per-project metrics: NAV target, pool lookup, deviation,
and the abort/skip behaviour when one project fails.

Run: cd backend && uv run python tests/test_metrics.py
"""

import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from fake_chain import MAINNET, WAD, FakeWeb3, World, addr, sqrt_price_for
from lp_rebalancer.errors import NavTargetZeroError
from lp_rebalancer.metrics import fetch_all_metrics, fetch_project_metrics
from lp_rebalancer.models import Direction, ProjectInfo
from lp_rebalancer.rpc import RetryPolicy

REGISTRY = addr(0xA11)
OWNER = addr(0x999)
STABLE = addr(0x300)
NO_SLEEP = RetryPolicy(sleep=lambda _: None)


def _project(n: int) -> ProjectInfo:
    return ProjectInfo(addr(0x100 + n), addr(0x200 + n), STABLE)


def test_metrics_with_pool() -> None:
    """Pool at 1.95 against a 2.0 target: 250 bps below, INCREASE."""
    world = World(FakeWeb3(), REGISTRY, OWNER)
    pool = addr(0xB0B)
    world.add_project(
        addr(0x100), addr(0x200), STABLE, 1,
        target=2 * WAD, nav=3 * WAD, sqrt_price_x96=sqrt_price_for(195, 100),
        pool_liquidity=12345, pool=pool,
    )

    metric = fetch_project_metrics(world.w3, _project(0), MAINNET, NO_SLEEP)

    assert metric.pool_address == pool
    assert metric.nav_per_share == 3 * WAD
    assert metric.target_price == 2 * WAD
    assert abs(metric.current_pool_price - 195 * WAD // 100) <= 1
    assert metric.pool_liquidity == 12345
    assert metric.deviation_bps == 250
    assert metric.direction == Direction.INCREASE
    assert metric.sqrt_price_x96 == sqrt_price_for(195, 100)
    assert metric.positions == []
    print("  [PASS] metrics_with_pool")


def test_metrics_without_pool() -> None:
    """No pool at the fee tier: price and liquidity are zero, still evaluated."""
    world = World(FakeWeb3(), REGISTRY, OWNER)
    world.add_project(addr(0x100), addr(0x200), STABLE, 1, target=2 * WAD)

    metric = fetch_project_metrics(world.w3, _project(0), MAINNET, NO_SLEEP)

    assert metric.pool_address is None
    assert metric.current_pool_price == 0
    assert metric.pool_liquidity == 0
    assert metric.deviation_bps == 10_000
    assert metric.direction == Direction.INCREASE
    print("  [PASS] metrics_without_pool")


def test_project_reads_run_concurrently() -> None:
    """NAV, target and pool lookup are in flight at the same time."""
    world = World(FakeWeb3(), REGISTRY, OWNER)
    world.add_project(addr(0x100), addr(0x200), STABLE, 1, sqrt_price_x96=sqrt_price_for(2))
    barrier = threading.Barrier(3, timeout=5)

    def rendezvous(handler):
        def wrapped(*args):
            barrier.wait()
            return handler(*args)
        return wrapped

    project = world.w3.contract_at(addr(0x100))
    factory = world.w3.contract_at(MAINNET.pool_factory)
    for contract, name in ((project, "getNAVPerShare"), (project, "getTargetPoolPrice"), (factory, "getPool")):
        contract.handlers[name] = rendezvous(contract.handlers[name])

    metric = fetch_project_metrics(world.w3, _project(0), MAINNET, NO_SLEEP)

    assert metric.target_price == 2 * WAD
    assert metric.pool_address is not None
    assert not barrier.broken
    print("  [PASS] project_reads_run_concurrently")


def test_zero_target_is_hard_failure() -> None:
    world = World(FakeWeb3(), REGISTRY, OWNER)
    world.add_project(addr(0x100), addr(0x200), STABLE, 1, target=0, sqrt_price_x96=sqrt_price_for(2))

    try:
        fetch_project_metrics(world.w3, _project(0), MAINNET, NO_SLEEP)
    except NavTargetZeroError as exc:
        assert exc.reason == "NAV_TARGET_ZERO"
    else:
        raise AssertionError("expected NavTargetZeroError")
    print("  [PASS] zero_target_is_hard_failure")


def _three_projects_one_broken() -> World:
    """Prices 1.0, 4.0, 9.0 (exact) against a 1.0 target; the middle one fails."""
    world = World(FakeWeb3(), REGISTRY, OWNER)
    for n in range(3):
        world.add_project(
            addr(0x100 + n), addr(0x200 + n), STABLE, n,
            target=WAD, sqrt_price_x96=sqrt_price_for((n + 1) ** 2),
        )
    world.w3.contract_at(addr(0x101)).handlers["getTargetPoolPrice"] = lambda: 0
    return world


def test_fetch_all_metrics_aborts_by_default() -> None:
    world = _three_projects_one_broken()
    projects = [_project(n) for n in range(3)]

    try:
        fetch_all_metrics(world.w3, projects, MAINNET, NO_SLEEP)
    except NavTargetZeroError as exc:
        assert addr(0x101) in str(exc)
    else:
        raise AssertionError("expected NavTargetZeroError")
    print("  [PASS] fetch_all_metrics_aborts_by_default")


def test_fetch_all_metrics_skips_when_lenient() -> None:
    """Failing project is reported and left out; the rest keep registry order."""
    world = _three_projects_one_broken()
    projects = [_project(n) for n in range(3)]

    metrics, failures = fetch_all_metrics(
        world.w3, projects, MAINNET, NO_SLEEP, abort_on_error=False, max_workers=3
    )

    assert [m.project.project_address for m in metrics] == [addr(0x100), addr(0x102)]
    assert failures == [{
        "projectAddress": addr(0x101),
        "reason": "NAV_TARGET_ZERO",
        "error": failures[0]["error"],
    }]
    assert [m.direction for m in metrics] == [Direction.NONE, Direction.DECREASE]
    print("  [PASS] fetch_all_metrics_skips_when_lenient")


def test_fetch_all_metrics_empty() -> None:
    assert fetch_all_metrics(FakeWeb3(), [], MAINNET, NO_SLEEP) == ([], [])
    print("  [PASS] fetch_all_metrics_empty")


if __name__ == "__main__":
    print("=== test_metrics.py ===")
    test_metrics_with_pool()
    test_metrics_without_pool()
    test_project_reads_run_concurrently()
    test_zero_target_is_hard_failure()
    test_fetch_all_metrics_aborts_by_default()
    test_fetch_all_metrics_skips_when_lenient()
    test_fetch_all_metrics_empty()
    print("\nAll metrics tests passed.")
