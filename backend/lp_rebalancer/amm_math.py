import math
from decimal import Decimal, getcontext

from .config import BPS_DENOMINATOR
from .errors import NavTargetZeroError
from .models import Direction

# Set high precision for Decimal operations
getcontext().prec = 50

# Pre-compute 2^96 as Decimal for price conversions
Q96 = Decimal(2 ** 96)
Q192 = 2 ** 192
WAD = 10 ** 18


def sqrt_price_x96_to_wad_price(sqrt_price_x96: int) -> int:
    """
    Convert sqrtPriceX96 to an 18-decimal fixed-point price (token1 per token0).

    Exact integer arithmetic: price_wad = sqrtPriceX96^2 * 1e18 // 2^192.
    This is the unit NAV target prices are reported in.
    """
    return sqrt_price_x96 * sqrt_price_x96 * WAD // Q192


def sqrt_price_x96_to_sqrt_price(sqrt_price_x96: int) -> Decimal:
    """
    Convert sqrtPriceX96 to sqrt(price).

    Args:
        sqrt_price_x96: The sqrtPriceX96 value from the pool

    Returns:
        Decimal sqrt(price)
    """
    return Decimal(sqrt_price_x96) / Q96


def tick_to_sqrt_price(tick: int) -> float:
    """Convert tick to sqrt price: sqrt(1.0001^tick) = 1.0001^(tick/2)"""
    return 1.0001 ** (tick / 2)


def calculate_deviation(current_price: int, target_price: int) -> tuple[int, Direction]:
    """
    Signed deviation of the pool price from its target.

    Returns (deviation_bps, direction) with
    deviation_bps = |current - target| * 10000 // target. A pool trading above
    target needs its price pushed down (DECREASE), below target pushed up
    (INCREASE).

    Raises:
        NavTargetZeroError: target_price is zero, deviation is undefined
    """
    if target_price == 0:
        raise NavTargetZeroError("Target pool price returned 0 from CornerstoneProject")

    if current_price == target_price:
        return 0, Direction.NONE

    direction = Direction.DECREASE if current_price > target_price else Direction.INCREASE
    deviation = abs(current_price - target_price)
    return deviation * BPS_DENOMINATOR // target_price, direction


def liquidity_to_remove(liquidity: int, rebalance_bps: int) -> int:
    """
    Liquidity to pull from a position on the decrease path.

    floor(L * bps / 10000); when that rounds to zero the whole position is
    removed instead.
    """
    partial = liquidity * rebalance_bps // BPS_DENOMINATOR
    return partial if partial > 0 else liquidity


def calculate_token0_amount(liquidity: int, sqrt_price_current: float, sqrt_price_low: float, sqrt_price_high: float) -> float:
    """
    Calculate token0 amount for a liquidity position.

    token0 = L * (sqrt_price_high - sqrt_price_current) / (sqrt_price_current * sqrt_price_high)
    """
    # Clamp current price to tick range
    sp = max(min(sqrt_price_current, sqrt_price_high), sqrt_price_low)

    if sp >= sqrt_price_high:
        return 0.0  # All liquidity is in token1

    return liquidity * (sqrt_price_high - sp) / (sp * sqrt_price_high)


def calculate_token1_amount(liquidity: int, sqrt_price_current: float, sqrt_price_low: float, sqrt_price_high: float) -> float:
    """
    Calculate token1 amount for a liquidity position.

    token1 = L * (sqrt_price_current - sqrt_price_low)
    """
    # Clamp current price to tick range
    sp = max(min(sqrt_price_current, sqrt_price_high), sqrt_price_low)

    if sp <= sqrt_price_low:
        return 0.0  # All liquidity is in token0

    return liquidity * (sp - sqrt_price_low)


def liquidity_for_amounts(
    sqrt_price_current: float,
    sqrt_price_low: float,
    sqrt_price_high: float,
    amount0: int,
    amount1: int,
) -> float:
    """
    Largest liquidity mintable from (amount0, amount1) in a tick range.

    Mirrors LiquidityAmounts.getLiquidityForAmounts from v3-periphery:
    below range only token0 counts, above range only token1, in range the
    scarcer side binds.
    """
    if sqrt_price_high <= sqrt_price_low:
        return 0.0

    if sqrt_price_current <= sqrt_price_low:
        return amount0 * sqrt_price_low * sqrt_price_high / (sqrt_price_high - sqrt_price_low)

    if sqrt_price_current >= sqrt_price_high:
        return amount1 / (sqrt_price_high - sqrt_price_low)

    l0 = amount0 * sqrt_price_current * sqrt_price_high / (sqrt_price_high - sqrt_price_current)
    l1 = amount1 / (sqrt_price_current - sqrt_price_low)
    return min(l0, l1)


def expected_amounts(
    liquidity: float,
    sqrt_price_x96: int,
    tick_lower: int,
    tick_upper: int,
) -> tuple[int, int]:
    """Raw (token0, token1) amounts represented by `liquidity` at the pool's price."""
    sqrt_p = float(sqrt_price_x96_to_sqrt_price(sqrt_price_x96))
    sqrt_a = tick_to_sqrt_price(tick_lower)
    sqrt_b = tick_to_sqrt_price(tick_upper)
    amount0 = calculate_token0_amount(liquidity, sqrt_p, sqrt_a, sqrt_b)
    amount1 = calculate_token1_amount(liquidity, sqrt_p, sqrt_a, sqrt_b)
    return math.floor(amount0), math.floor(amount1)


def apply_slippage(amount: int, slippage_bps: int) -> int:
    """Minimum acceptable output: amount reduced by slippage_bps, rounded down."""
    return amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR
