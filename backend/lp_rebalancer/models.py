"""
Data model for projects, their pool metrics, owned positions, and the
actions recorded while rebalancing.
"""

from dataclasses import dataclass, field
from enum import Enum


class Direction(str, Enum):
    """Which way the pool must move to reach its target price."""
    INCREASE = "increase"
    DECREASE = "decrease"
    NONE = "none"


@dataclass(frozen=True)
class ProjectInfo:
    """A registry project: its contract, project token and stable token."""
    project_address: str
    token_address: str
    stable_token_address: str


@dataclass(frozen=True)
class PositionInfo:
    """A Uniswap V3 position NFT as read from the position manager."""
    token_id: int
    token0: str
    token1: str
    fee: int
    liquidity: int
    tick_lower: int
    tick_upper: int


@dataclass
class ProjectMetrics:
    """Pool state vs NAV target for one project, recomputed every cycle."""
    project: ProjectInfo
    pool_address: str | None
    nav_per_share: int
    target_price: int
    current_pool_price: int
    pool_liquidity: int
    deviation_bps: int
    direction: Direction
    sqrt_price_x96: int = 0
    positions: list[PositionInfo] = field(default_factory=list)

    @property
    def total_position_liquidity(self) -> int:
        return sum(p.liquidity for p in self.positions)


@dataclass(frozen=True)
class ActionRecord:
    """One state-mutating call and the hash the dispatcher returned for it."""
    project_address: str
    name: str
    tx_hash: str
    token_id: int | None = None


@dataclass(frozen=True)
class DelegationContext:
    """The delegated wallet and the key material the signing service needs."""
    pkp_address: str | None
    pkp_public_key: str | None

    @property
    def can_sign(self) -> bool:
        return bool(self.pkp_address) and bool(self.pkp_public_key)
