"""
Configuration for the registry-driven LP rebalancer.

Centralizes per-chain contract addresses, pool parameters, and the
tunable thresholds of a rebalancing run.
"""

import os
from dataclasses import dataclass
from types import MappingProxyType

from dotenv import load_dotenv

# ─── RPC ───
DEFAULT_RPC_URL = "https://yellowstone-rpc.litprotocol.com/"

# ─── Chain Identifiers ───
MAINNET_CHAIN_ID = 1
SEPOLIA_CHAIN_ID = 11155111

# ─── Pool Parameters ───
POOL_FEE_TIER = 3000  # 0.3% Uniswap V3 fee tier used by every project pool
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT128 = 2 ** 128 - 1

# ─── Rebalancing Defaults ───
DEFAULT_DEVIATION_THRESHOLD_BPS = 150  # 1.5%
DEFAULT_REBALANCE_LIQUIDITY_BPS = 2_500  # 25%
DEFAULT_SLIPPAGE_BPS = 100  # 1%
DEADLINE_SECONDS = 900
BPS_DENOMINATOR = 10_000

# ─── Event Scanning ───
MAX_EVENT_BLOCK_SPAN = 10  # provider cap on eth_getLogs ranges
HISTORY_LOOKBACK_BLOCKS = 5_000

# ─── RPC Retry ───
RPC_MAX_RETRIES = 3
RPC_RETRY_BASE_DELAY = 1.0  # seconds


@dataclass(frozen=True)
class NetworkConfig:
    """Uniswap V3 deployment addresses for one chain."""
    pool_factory: str
    position_manager: str


# Ref: https://docs.uniswap.org/contracts/v3/reference/deployments/
DEFAULT_NETWORK_CONFIGS = MappingProxyType({
    MAINNET_CHAIN_ID: NetworkConfig(
        pool_factory="0x1F98431c8aD98523631AE4a59f267346ea31F984",
        position_manager="0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
    ),
    SEPOLIA_CHAIN_ID: NetworkConfig(
        pool_factory="0x0227628f3F023bb0B980b67D528571c95c6DaC1c",
        position_manager="0x1238536071E1c677A632429e3655c799b22cDA52",
    ),
})


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() == "none":
        return None
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RebalancerSettings:
    """
    Tunables for one evaluation cycle.

    slippage_bps=None disables minimum-output guards entirely (zero mins).
    abort_on_metrics_error=False evaluates the remaining projects when one
    project's metrics cannot be read.
    """
    deviation_threshold_bps: int = DEFAULT_DEVIATION_THRESHOLD_BPS
    rebalance_liquidity_bps: int = DEFAULT_REBALANCE_LIQUIDITY_BPS
    slippage_bps: int | None = DEFAULT_SLIPPAGE_BPS
    deadline_seconds: int = DEADLINE_SECONDS
    max_event_block_span: int = MAX_EVENT_BLOCK_SPAN
    history_lookback_blocks: int = HISTORY_LOOKBACK_BLOCKS
    enable_backfill: bool = False
    abort_on_metrics_error: bool = True
    max_read_workers: int = 8
    rpc_max_retries: int = RPC_MAX_RETRIES
    rpc_retry_base_delay: float = RPC_RETRY_BASE_DELAY

    def __post_init__(self) -> None:
        if not 0 < self.rebalance_liquidity_bps <= BPS_DENOMINATOR:
            raise ValueError(
                f"rebalance_liquidity_bps must be in (0, {BPS_DENOMINATOR}], "
                f"got {self.rebalance_liquidity_bps}"
            )
        if self.slippage_bps is not None and not 0 <= self.slippage_bps < BPS_DENOMINATOR:
            raise ValueError(f"slippage_bps out of range: {self.slippage_bps}")
        if self.max_event_block_span < 1:
            raise ValueError("max_event_block_span must be >= 1")
        if self.rpc_max_retries < 1:
            raise ValueError("rpc_max_retries must be >= 1")

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "RebalancerSettings":
        """Build settings from REBALANCER_* variables (a .env file is loaded first)."""
        load_dotenv(dotenv_path)
        return cls(
            deviation_threshold_bps=_env_int(
                "REBALANCER_DEVIATION_THRESHOLD_BPS", DEFAULT_DEVIATION_THRESHOLD_BPS
            ),
            rebalance_liquidity_bps=_env_int(
                "REBALANCER_REBALANCE_LIQUIDITY_BPS", DEFAULT_REBALANCE_LIQUIDITY_BPS
            ),
            slippage_bps=_env_int("REBALANCER_SLIPPAGE_BPS", DEFAULT_SLIPPAGE_BPS),
            deadline_seconds=_env_int("REBALANCER_DEADLINE_SECONDS", DEADLINE_SECONDS),
            max_event_block_span=_env_int(
                "REBALANCER_MAX_EVENT_BLOCK_SPAN", MAX_EVENT_BLOCK_SPAN
            ),
            history_lookback_blocks=_env_int(
                "REBALANCER_HISTORY_LOOKBACK_BLOCKS", HISTORY_LOOKBACK_BLOCKS
            ),
            enable_backfill=_env_bool("REBALANCER_ENABLE_BACKFILL", False),
            abort_on_metrics_error=_env_bool("REBALANCER_ABORT_ON_METRICS_ERROR", True),
            max_read_workers=_env_int("REBALANCER_MAX_READ_WORKERS", 8),
            rpc_max_retries=_env_int("REBALANCER_RPC_MAX_RETRIES", RPC_MAX_RETRIES),
            rpc_retry_base_delay=_env_float(
                "REBALANCER_RPC_RETRY_BASE_DELAY", RPC_RETRY_BASE_DELAY
            ),
        )


def rpc_url_from_env(dotenv_path: str | None = None) -> str:
    """RPC endpoint from REBALANCER_RPC_URL, falling back to the public default."""
    load_dotenv(dotenv_path)
    return os.getenv("REBALANCER_RPC_URL") or DEFAULT_RPC_URL
