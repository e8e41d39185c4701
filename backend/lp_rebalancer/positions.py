"""
Position discovery for the delegated wallet and position-to-project matching.

Owned positions are enumerated through the ERC-721 Enumerable interface of
the NonfungiblePositionManager (count, then one lookup per index). The
optional backfill reconstructs token ids that ever moved in or out of the
wallet from Transfer logs; it is an audit aid and never feeds rebalancing.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from web3 import Web3
from web3.contract import Contract

from .abis import POSITION_MANAGER_ABI
from .block_utils import iter_block_windows_backward, lookback_floor
from .config import HISTORY_LOOKBACK_BLOCKS, MAX_EVENT_BLOCK_SPAN, NetworkConfig
from .errors import PositionDiscoveryError, RebalancerError
from .models import PositionInfo, ProjectMetrics
from .rpc import DEFAULT_RETRY_POLICY, RetryPolicy, call_fn, get_latest_block, with_retry

logger = logging.getLogger(__name__)


def _position_manager(w3: Web3, network: NetworkConfig) -> Contract:
    return w3.eth.contract(address=network.position_manager, abi=POSITION_MANAGER_ABI)


def fetch_owned_positions(
    w3: Web3,
    network: NetworkConfig,
    owner: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> list[PositionInfo]:
    """
    Read every position NFT currently held by `owner`.

    Raises:
        PositionDiscoveryError: the enumeration could not complete
    """
    manager = _position_manager(w3, network)

    try:
        count = int(call_fn(manager.functions.balanceOf(owner), "positions: balanceOf", policy))
        positions = []
        for index in range(count):
            token_id = int(call_fn(
                manager.functions.tokenOfOwnerByIndex(owner, index),
                f"positions: tokenOfOwnerByIndex({index})",
                policy,
            ))
            raw = call_fn(
                manager.functions.positions(token_id),
                f"positions: positions({token_id})",
                policy,
            )
            positions.append(PositionInfo(
                token_id=token_id,
                token0=raw[2],
                token1=raw[3],
                fee=int(raw[4]),
                tick_lower=int(raw[5]),
                tick_upper=int(raw[6]),
                liquidity=int(raw[7]),
            ))
    except RebalancerError:
        raise
    except Exception as exc:
        raise PositionDiscoveryError(f"Failed to enumerate positions of {owner}: {exc}") from exc

    logger.info("Owner %s holds %d positions", owner, len(positions))
    return positions


def _scan_transfers(
    manager: Contract,
    argument_filters: dict,
    latest_block: int,
    floor_block: int,
    span: int,
    policy: RetryPolicy,
) -> list:
    collected = []
    for start, end in iter_block_windows_backward(latest_block, floor_block, span):
        batch = with_retry(
            lambda s=start, e=end: manager.events.Transfer.get_logs(
                argument_filters=argument_filters, from_block=s, to_block=e
            ),
            f"backfill: get_logs [{start}, {end}]",
            policy,
        )
        collected.extend(batch)
    return collected


def backfill_historical_token_ids(
    w3: Web3,
    network: NetworkConfig,
    owner: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    lookback_blocks: int = HISTORY_LOOKBACK_BLOCKS,
    span: int = MAX_EVENT_BLOCK_SPAN,
) -> set[int]:
    """
    Token ids transferred to or from `owner` within the lookback window.

    Incoming and outgoing transfers are scanned concurrently with the same
    windowed technique as project discovery.
    """
    manager = _position_manager(w3, network)

    try:
        latest_block = get_latest_block(w3, policy)
        floor_block = lookback_floor(latest_block, lookback_blocks)

        with ThreadPoolExecutor(max_workers=2) as pool:
            incoming = pool.submit(
                _scan_transfers, manager, {"to": owner}, latest_block, floor_block, span, policy
            )
            outgoing = pool.submit(
                _scan_transfers, manager, {"from": owner}, latest_block, floor_block, span, policy
            )
            events = incoming.result() + outgoing.result()
    except RebalancerError:
        raise
    except Exception as exc:
        raise PositionDiscoveryError(f"Transfer backfill failed for {owner}: {exc}") from exc

    token_ids = {int(event["args"]["tokenId"]) for event in events if "tokenId" in event["args"]}
    logger.info(
        "Backfilled %d historical token ids for %s over blocks [%d, %d]",
        len(token_ids), owner, floor_block, latest_block,
    )
    return token_ids


def pair_key(token_a: str, token_b: str) -> str:
    """Order-independent, case-insensitive key for a token pair."""
    return ":".join(sorted((token_a.lower(), token_b.lower())))


def attach_positions_to_projects(
    metrics: list[ProjectMetrics],
    positions: list[PositionInfo],
) -> list[PositionInfo]:
    """
    Append each position to the project trading the same token pair.

    Returns the positions that matched no project; they are excluded from
    rebalancing and never touched.
    """
    by_pair = {
        pair_key(m.project.token_address, m.project.stable_token_address): m
        for m in metrics
    }

    unmatched = []
    for position in positions:
        metric = by_pair.get(pair_key(position.token0, position.token1))
        if metric is None:
            unmatched.append(position)
            continue
        metric.positions.append(position)

    if unmatched:
        logger.debug(
            "Ignoring %d positions outside tracked projects: %s",
            len(unmatched), [p.token_id for p in unmatched],
        )
    return unmatched
