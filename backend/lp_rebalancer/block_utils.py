"""
Block-range utilities for bounded event scans.

RPC providers cap the block span of a single eth_getLogs query, so history
is walked backward from the chain head in fixed-size windows.
"""

from typing import Iterator

from .config import MAX_EVENT_BLOCK_SPAN


def iter_block_windows_backward(
    latest_block: int,
    floor_block: int = 0,
    span: int = MAX_EVENT_BLOCK_SPAN,
) -> Iterator[tuple[int, int]]:
    """
    Yield inclusive (start, end) windows from latest_block down to floor_block.

    >>> list(iter_block_windows_backward(25, 0, 10))
    [(16, 25), (6, 15), (0, 5)]
    """
    if span < 1:
        raise ValueError(f"span must be >= 1, got {span}")
    floor_block = max(0, floor_block)
    end = latest_block
    while end >= floor_block:
        start = max(floor_block, end - span + 1)
        yield start, end
        end = start - 1


def lookback_floor(latest_block: int, lookback_blocks: int) -> int:
    """First block of a lookback window ending at latest_block (never negative)."""
    return max(0, latest_block - lookback_blocks)
