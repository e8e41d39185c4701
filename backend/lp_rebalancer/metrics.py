"""
Per-project pool metrics: NAV target, pool price, liquidity, deviation.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from web3 import Web3

from .abis import CORNERSTONE_PROJECT_ABI, UNISWAP_V3_FACTORY_ABI, UNISWAP_V3_POOL_ABI
from .amm_math import calculate_deviation, sqrt_price_x96_to_wad_price
from .config import POOL_FEE_TIER, ZERO_ADDRESS, NetworkConfig
from .errors import NavTargetZeroError, ProviderError, RebalancerError
from .models import ProjectInfo, ProjectMetrics
from .rpc import DEFAULT_RETRY_POLICY, RetryPolicy, call_fn

logger = logging.getLogger(__name__)


def get_pool_state(w3: Web3, pool_address: str, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> dict:
    """Fetch sqrtPriceX96, tick and active liquidity of a V3 pool."""
    pool = w3.eth.contract(address=pool_address, abi=UNISWAP_V3_POOL_ABI)
    slot0 = call_fn(pool.functions.slot0(), "metrics: pool slot0", policy)
    liquidity = call_fn(pool.functions.liquidity(), "metrics: pool liquidity", policy)
    return {
        "sqrtPriceX96": int(slot0[0]),
        "tick": int(slot0[1]),
        "liquidity": int(liquidity),
    }


def fetch_project_metrics(
    w3: Web3,
    project: ProjectInfo,
    network: NetworkConfig,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> ProjectMetrics:
    """
    Read NAV and pool state for one project and compute its deviation.

    A project without a pool at the configured fee tier reports a current
    price of zero, which always lands below target (direction INCREASE).

    Raises:
        NavTargetZeroError: the project reports a zero target price
        ProviderError: any other read failure after retries
    """
    try:
        contract = w3.eth.contract(address=project.project_address, abi=CORNERSTONE_PROJECT_ABI)
        factory = w3.eth.contract(address=network.pool_factory, abi=UNISWAP_V3_FACTORY_ABI)

        # nav, target and pool lookup are independent
        with ThreadPoolExecutor(max_workers=3) as executor:
            futures = [
                executor.submit(
                    call_fn, contract.functions.getNAVPerShare(), "metrics: getNAVPerShare", policy
                ),
                executor.submit(
                    call_fn, contract.functions.getTargetPoolPrice(), "metrics: getTargetPoolPrice", policy
                ),
                executor.submit(
                    call_fn,
                    factory.functions.getPool(
                        project.token_address, project.stable_token_address, POOL_FEE_TIER
                    ),
                    "metrics: getPool",
                    policy,
                ),
            ]
        nav_per_share, target_price, pool_address = (f.result() for f in futures)
        nav_per_share = int(nav_per_share)
        target_price = int(target_price)

        if target_price == 0:
            raise NavTargetZeroError(
                f"Target pool price returned 0 from CornerstoneProject {project.project_address}"
            )

        has_pool = bool(pool_address) and int(pool_address, 16) != int(ZERO_ADDRESS, 16)
        sqrt_price_x96 = 0
        current_price = 0
        pool_liquidity = 0
        if has_pool:
            state = get_pool_state(w3, pool_address, policy)
            sqrt_price_x96 = state["sqrtPriceX96"]
            current_price = sqrt_price_x96_to_wad_price(sqrt_price_x96)
            pool_liquidity = state["liquidity"]
    except RebalancerError:
        raise
    except Exception as exc:
        raise ProviderError(
            f"Failed to read metrics for project {project.project_address}: {exc}"
        ) from exc

    deviation_bps, direction = calculate_deviation(current_price, target_price)

    logger.debug(
        "Project %s: target=%d current=%d deviation=%dbps direction=%s",
        project.project_address, target_price, current_price, deviation_bps, direction.value,
    )

    return ProjectMetrics(
        project=project,
        pool_address=pool_address if has_pool else None,
        nav_per_share=nav_per_share,
        target_price=target_price,
        current_pool_price=current_price,
        pool_liquidity=pool_liquidity,
        deviation_bps=deviation_bps,
        direction=direction,
        sqrt_price_x96=sqrt_price_x96,
    )


def fetch_all_metrics(
    w3: Web3,
    projects: list[ProjectInfo],
    network: NetworkConfig,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    abort_on_error: bool = True,
    max_workers: int = 8,
) -> tuple[list[ProjectMetrics], list[dict]]:
    """
    Evaluate all projects concurrently, preserving registry order.

    Returns (metrics, failures). With abort_on_error the first failing
    project (in registry order) aborts the whole run by re-raising;
    otherwise failing projects are logged, left out of `metrics`, and
    described in `failures` as {"projectAddress", "reason", "error"}.
    """
    if not projects:
        return [], []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(projects)))) as pool:
        futures = [
            pool.submit(fetch_project_metrics, w3, project, network, policy)
            for project in projects
        ]

    metrics = []
    failures = []
    for project, future in zip(projects, futures):
        exc = future.exception()
        if exc is None:
            metrics.append(future.result())
            continue
        if abort_on_error:
            raise exc
        reason = exc.reason if isinstance(exc, RebalancerError) else ProviderError.reason
        logger.warning(
            "Skipping project %s: %s", project.project_address, exc, exc_info=exc
        )
        failures.append({
            "projectAddress": project.project_address,
            "reason": reason,
            "error": str(exc),
        })

    return metrics, failures
