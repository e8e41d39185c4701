"""
Resilient chain reads over a web3 HTTP provider.

Every read the rebalancer issues goes through `with_retry`, which retries
server/network failures with linear backoff and lets reverts and malformed
calls propagate immediately. Also resolves which Uniswap V3 deployment
applies to the connected chain.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypeVar

import requests
from web3 import Web3
from web3.exceptions import ProviderConnectionError

from .config import (
    DEFAULT_NETWORK_CONFIGS,
    DEFAULT_RPC_URL,
    MAINNET_CHAIN_ID,
    RPC_MAX_RETRIES,
    RPC_RETRY_BASE_DELAY,
    SEPOLIA_CHAIN_ID,
    NetworkConfig,
    RebalancerSettings,
)
from .errors import ProjectDiscoveryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERROR_CODES = frozenset({"SERVER_ERROR", "NETWORK_ERROR"})


def _http_status(error: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable_rpc_error(error: BaseException) -> bool:
    """
    Classify a failed chain read.

    Retryable: explicit SERVER_ERROR / NETWORK_ERROR codes, HTTP status >= 500,
    and transport-level connection failures or timeouts. Everything else
    (reverts, bad arguments, 4xx) is final.
    """
    status = _http_status(error)
    if status is not None and status >= 500:
        return True

    if getattr(error, "code", None) in RETRYABLE_ERROR_CODES:
        return True

    return isinstance(
        error,
        (requests.exceptions.ConnectionError, requests.exceptions.Timeout, ProviderConnectionError),
    )


def linear_backoff(base_delay: float, attempt: int) -> float:
    """Delay before retrying after failed attempt `attempt` (1-based)."""
    return base_delay * attempt


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: attempt ceiling, backoff function, retryability predicate."""
    max_attempts: int = RPC_MAX_RETRIES
    base_delay: float = RPC_RETRY_BASE_DELAY
    backoff: Callable[[float, int], float] = linear_backoff
    is_retryable: Callable[[BaseException], bool] = is_retryable_rpc_error
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        return self.backoff(self.base_delay, attempt)


DEFAULT_RETRY_POLICY = RetryPolicy()


def retry_policy_from_settings(settings: RebalancerSettings) -> RetryPolicy:
    """Retry policy sized by a run's settings."""
    return RetryPolicy(
        max_attempts=settings.rpc_max_retries,
        base_delay=settings.rpc_retry_base_delay,
    )


def with_retry(
    operation: Callable[[], T],
    label: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> T:
    """
    Run `operation`, retrying classified-retryable failures.

    Args:
        operation: Zero-argument callable performing one chain read
        label: Human-readable context for log lines
        policy: Retry policy (attempt ceiling, backoff, predicate, sleep)

    Returns:
        The operation's result from the first successful attempt
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            if not policy.is_retryable(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "RPC call failed in %s (attempt %d/%d): %s. Retrying in %.2fs",
                label, attempt, policy.max_attempts, exc, delay,
            )
            policy.sleep(delay)


def call_fn(contract_fn: Any, label: str, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> Any:
    """Execute a bound contract function (`contract.functions.x(...)`) under retry."""
    return with_retry(contract_fn.call, label, policy)


def get_latest_block(w3: Web3, policy: RetryPolicy = DEFAULT_RETRY_POLICY) -> int:
    """Get the latest block number."""
    return with_retry(lambda: w3.eth.block_number, "getBlockNumber", policy)


def infer_chain_id_from_rpc(rpc_url: str | None) -> int | None:
    """Guess the chain from hostname hints in the RPC endpoint."""
    if not rpc_url:
        return None
    lowered = rpc_url.lower()
    if "sepolia" in lowered:
        return SEPOLIA_CHAIN_ID
    if "mainnet" in lowered:
        return MAINNET_CHAIN_ID
    return None


def resolve_network_config(
    w3: Web3,
    rpc_url: str | None = None,
    configs: Mapping[int, NetworkConfig] = DEFAULT_NETWORK_CONFIGS,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> NetworkConfig:
    """
    Pick the contract addresses for the connected chain.

    Queries the chain id first; if that fails or names an unsupported chain,
    falls back to the chain inferred from the RPC URL.
    """
    try:
        chain_id = int(with_retry(lambda: w3.eth.chain_id, "getChainId", policy))
        config = configs.get(chain_id)
        if config is None:
            raise ProjectDiscoveryError(f"Unsupported network {chain_id}")
        return config
    except Exception as exc:
        fallback_id = infer_chain_id_from_rpc(rpc_url)
        if fallback_id is not None and fallback_id in configs:
            logger.warning(
                "Falling back to inferred network %d (%s)", fallback_id, exc
            )
            return configs[fallback_id]
        if isinstance(exc, ProjectDiscoveryError):
            raise
        raise ProjectDiscoveryError(f"Unable to resolve network: {exc}") from exc


def create_web3(rpc_url: str | None = None, timeout: float = 30.0) -> Web3:
    """
    Build a Web3 instance on an HTTP provider.

    The provider's own retry layer is disabled so that `with_retry` is the
    only place reads are retried.
    """
    provider = Web3.HTTPProvider(
        rpc_url or DEFAULT_RPC_URL,
        request_kwargs={"timeout": timeout},
        exception_retry_configuration=None,
    )
    return Web3(provider)
