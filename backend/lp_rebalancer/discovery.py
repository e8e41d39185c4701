"""
Project discovery from ProjectRegistry event history.

Walks ProjectCreated logs backward from the chain head in bounded block
windows until every project the registry counts has been seen, then
returns the projects oldest-first.
"""

import logging
from typing import Any

from web3 import Web3
from web3.contract import Contract

from .abis import CORNERSTONE_PROJECT_ABI, PROJECT_REGISTRY_ABI
from .block_utils import iter_block_windows_backward
from .config import MAX_EVENT_BLOCK_SPAN
from .errors import ProjectDiscoveryError, RebalancerError
from .models import ProjectInfo
from .rpc import DEFAULT_RETRY_POLICY, RetryPolicy, call_fn, get_latest_block, with_retry

logger = logging.getLogger(__name__)


def _event_order(event: Any) -> tuple[int, int]:
    return event["blockNumber"], event.get("logIndex", 0)


def fetch_project_creation_events(
    w3: Web3,
    registry: Contract,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    span: int = MAX_EVENT_BLOCK_SPAN,
) -> list[Any]:
    """
    Collect one ProjectCreated event per project, sorted by creation.

    Reads the latest block and the registry's projectCount(), then queries
    `span`-block windows backward until the number of distinct projects
    reaches the count or block 0 is passed. A registry reporting zero
    projects is not scanned at all.
    """
    latest_block = get_latest_block(w3, policy)
    total_projects = int(
        call_fn(registry.functions.projectCount(), "project discovery: projectCount", policy)
    )

    if total_projects == 0:
        return []

    # keyed by lower-cased project address; a re-emitted event keeps the earliest
    earliest: dict[str, Any] = {}

    for start, end in iter_block_windows_backward(latest_block, 0, span):
        if len(earliest) >= total_projects:
            break
        batch = with_retry(
            lambda s=start, e=end: registry.events.ProjectCreated.get_logs(
                from_block=s, to_block=e
            ),
            f"project discovery: get_logs [{start}, {end}]",
            policy,
        )
        for event in batch:
            project_address = event["args"].get("project")
            if not project_address:
                continue
            normalized = project_address.lower()
            known = earliest.get(normalized)
            if known is None or _event_order(event) < _event_order(known):
                earliest[normalized] = event

    if len(earliest) < total_projects:
        logger.warning(
            "Registry reports %d projects but only %d creation events were found",
            total_projects, len(earliest),
        )

    return sorted(earliest.values(), key=_event_order)


def discover_projects(
    w3: Web3,
    registry_address: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    span: int = MAX_EVENT_BLOCK_SPAN,
) -> list[ProjectInfo]:
    """
    Enumerate every project the registry has recorded, in creation order.

    The stable token of each project is read from the project contract.

    Raises:
        ProjectDiscoveryError: the event scan or a project read failed
    """
    registry = w3.eth.contract(
        address=Web3.to_checksum_address(registry_address), abi=PROJECT_REGISTRY_ABI
    )

    try:
        events = fetch_project_creation_events(w3, registry, policy, span)

        projects: dict[str, ProjectInfo] = {}
        for event in events:
            project_address = event["args"].get("project")
            token_address = event["args"].get("token")
            if not project_address or not token_address:
                continue
            project_address = Web3.to_checksum_address(project_address)
            token_address = Web3.to_checksum_address(token_address)
            if project_address in projects:
                continue

            project = w3.eth.contract(address=project_address, abi=CORNERSTONE_PROJECT_ABI)
            stable_token = call_fn(project.functions.pyusd(), "project discovery: pyusd", policy)
            projects[project_address] = ProjectInfo(
                project_address=project_address,
                token_address=token_address,
                stable_token_address=stable_token,
            )
    except RebalancerError:
        raise
    except Exception as exc:
        raise ProjectDiscoveryError(f"Project discovery failed: {exc}") from exc

    logger.info("Discovered %d projects in registry %s", len(projects), registry_address)
    return list(projects.values())
