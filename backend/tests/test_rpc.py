"""
Tests for the resilient chain reader: retry policy, error classification,
network resolution, and block windows.

Run: cd backend && uv run python tests/test_rpc.py
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import requests

from fake_chain import FakeWeb3, MAINNET
from lp_rebalancer.block_utils import iter_block_windows_backward, lookback_floor
from lp_rebalancer.config import DEFAULT_NETWORK_CONFIGS, SEPOLIA_CHAIN_ID, NetworkConfig
from lp_rebalancer.errors import ProjectDiscoveryError
from lp_rebalancer.rpc import (
    RetryPolicy,
    infer_chain_id_from_rpc,
    is_retryable_rpc_error,
    resolve_network_config,
    with_retry,
)


class CodedError(Exception):
    def __init__(self, code=None, status=None):
        super().__init__(f"code={code} status={status}")
        self.code = code
        self.status = status


class FlakyOperation:
    """Fails with the given errors in order, then returns `value`."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.attempts = 0

    def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def _recording_policy(max_attempts=3, base_delay=1.0):
    delays = []
    return RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, sleep=delays.append), delays


def test_retry_succeeds_on_third_attempt() -> None:
    """Two retryable failures then success: value returned, exactly two delays."""
    policy, delays = _recording_policy()
    op = FlakyOperation([CodedError(code="SERVER_ERROR"), CodedError(status=503)], value=42)

    assert with_retry(op, "flaky read", policy) == 42
    assert op.attempts == 3
    assert delays == [1.0, 2.0], delays
    print("  [PASS] retry_succeeds_on_third_attempt")


def test_non_retryable_fails_immediately() -> None:
    """A revert-style error propagates on the first attempt with zero delay."""
    policy, delays = _recording_policy()
    op = FlakyOperation([ValueError("execution reverted")])

    try:
        with_retry(op, "reverting read", policy)
    except ValueError as exc:
        assert "reverted" in str(exc)
    else:
        raise AssertionError("expected ValueError")

    assert op.attempts == 1
    assert delays == []
    print("  [PASS] non_retryable_fails_immediately")


def test_retry_ceiling_reraises_last_error() -> None:
    """Three retryable failures exhaust the ceiling after two delays."""
    policy, delays = _recording_policy()
    errors = [CodedError(code="NETWORK_ERROR") for _ in range(3)]
    op = FlakyOperation(errors)

    try:
        with_retry(op, "dead endpoint", policy)
    except CodedError as exc:
        assert exc.code == "NETWORK_ERROR"
    else:
        raise AssertionError("expected CodedError")

    assert op.attempts == 3
    assert delays == [1.0, 2.0]
    print("  [PASS] retry_ceiling_reraises_last_error")


def test_linear_backoff_scales_with_base() -> None:
    policy = RetryPolicy(base_delay=0.5)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]
    print("  [PASS] linear_backoff_scales_with_base")


def test_error_classification() -> None:
    """Server/network codes, 5xx and transport failures retry; the rest do not."""
    response = requests.Response()
    response.status_code = 502
    http_502 = requests.exceptions.HTTPError("bad gateway", response=response)

    response_404 = requests.Response()
    response_404.status_code = 404
    http_404 = requests.exceptions.HTTPError("not found", response=response_404)

    assert is_retryable_rpc_error(CodedError(code="SERVER_ERROR"))
    assert is_retryable_rpc_error(CodedError(code="NETWORK_ERROR"))
    assert is_retryable_rpc_error(CodedError(status=500))
    assert is_retryable_rpc_error(http_502)
    assert is_retryable_rpc_error(requests.exceptions.ConnectionError("reset"))
    assert is_retryable_rpc_error(requests.exceptions.ReadTimeout("slow"))

    assert not is_retryable_rpc_error(http_404)
    assert not is_retryable_rpc_error(CodedError(code="CALL_EXCEPTION"))
    assert not is_retryable_rpc_error(CodedError(status=429))
    assert not is_retryable_rpc_error(ValueError("malformed"))
    print("  [PASS] error_classification")


def test_infer_chain_id_from_rpc() -> None:
    assert infer_chain_id_from_rpc("https://eth-SEPOLIA.example.org/v2/key") == SEPOLIA_CHAIN_ID
    assert infer_chain_id_from_rpc("https://mainnet.infura.io/v3/key") == 1
    assert infer_chain_id_from_rpc("https://yellowstone-rpc.litprotocol.com/") is None
    assert infer_chain_id_from_rpc(None) is None
    print("  [PASS] infer_chain_id_from_rpc")


def test_resolve_network_from_chain_id() -> None:
    w3 = FakeWeb3(chain_id=1)
    assert resolve_network_config(w3) == MAINNET
    print("  [PASS] resolve_network_from_chain_id")


def test_resolve_network_falls_back_to_rpc_hint() -> None:
    """A failing chain id lookup falls back to the hostname hint."""
    policy, _ = _recording_policy()
    w3 = FakeWeb3()

    def broken_chain_id():
        raise ValueError("eth_chainId not supported")

    w3.chain_id_fn = broken_chain_id
    config = resolve_network_config(w3, "https://sepolia.example.org", policy=policy)
    assert config == DEFAULT_NETWORK_CONFIGS[SEPOLIA_CHAIN_ID]
    print("  [PASS] resolve_network_falls_back_to_rpc_hint")


def test_resolve_network_unsupported_chain() -> None:
    """Unknown chain with no usable hint is a discovery failure."""
    w3 = FakeWeb3(chain_id=137)
    try:
        resolve_network_config(w3, "https://polygon.example.org")
    except ProjectDiscoveryError as exc:
        assert "137" in str(exc)
    else:
        raise AssertionError("expected ProjectDiscoveryError")
    print("  [PASS] resolve_network_unsupported_chain")


def test_resolve_network_uses_injected_configs() -> None:
    custom = NetworkConfig(pool_factory="0x" + "11" * 20, position_manager="0x" + "22" * 20)
    w3 = FakeWeb3(chain_id=31337)
    assert resolve_network_config(w3, configs={31337: custom}) is custom
    print("  [PASS] resolve_network_uses_injected_configs")


def test_block_windows_cover_range_exactly_once() -> None:
    windows = list(iter_block_windows_backward(25, 0, 10))
    assert windows == [(16, 25), (6, 15), (0, 5)]

    covered = [b for start, end in iter_block_windows_backward(1234, 1000, 7) for b in range(start, end + 1)]
    assert sorted(covered) == list(range(1000, 1235))
    assert len(covered) == len(set(covered))

    assert list(iter_block_windows_backward(0, 0, 10)) == [(0, 0)]
    assert lookback_floor(100, 5000) == 0
    assert lookback_floor(9000, 5000) == 4000
    print("  [PASS] block_windows_cover_range_exactly_once")


if __name__ == "__main__":
    print("=== test_rpc.py ===")
    test_retry_succeeds_on_third_attempt()
    test_non_retryable_fails_immediately()
    test_retry_ceiling_reraises_last_error()
    test_linear_backoff_scales_with_base()
    test_error_classification()
    test_infer_chain_id_from_rpc()
    test_resolve_network_from_chain_id()
    test_resolve_network_falls_back_to_rpc_hint()
    test_resolve_network_unsupported_chain()
    test_resolve_network_uses_injected_configs()
    test_block_windows_cover_range_exactly_once()
    print("\nAll rpc tests passed.")
