"""
Evaluation cycle orchestration.

Two entry points share one read pipeline:

  run_precheck  network -> projects -> metrics -> positions -> matching -> report
  run_execute   same pipeline, then sequential rebalancing through a dispatcher

Neither raises: every failure comes back as a FailureReport carrying a
KNOWN_ERRORS reason. One cycle must not run concurrently with another for
the same delegated wallet.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Mapping

from web3 import Web3

from .config import DEFAULT_NETWORK_CONFIGS, NetworkConfig, RebalancerSettings
from .discovery import discover_projects
from .dispatch import ContractCallDispatcher
from .errors import (
    InvalidRegistryAddressError,
    PolicyError,
    ProviderError,
    RebalancerError,
)
from .execution import execute_rebalance
from .metrics import fetch_all_metrics
from .models import DelegationContext, PositionInfo, ProjectMetrics
from .positions import attach_positions_to_projects, backfill_historical_token_ids, fetch_owned_positions
from .report import FailureReport, build_execute_report, build_precheck_report
from .rpc import RetryPolicy, create_web3, resolve_network_config, retry_policy_from_settings

logger = logging.getLogger(__name__)


@dataclass
class Evaluation:
    """Everything read during one cycle, before any state is mutated."""
    network: NetworkConfig
    metrics: list[ProjectMetrics]
    positions: list[PositionInfo]
    unmatched: list[PositionInfo]
    backfilled_token_ids: set[int]
    failed_projects: list[dict]


def validate_registry_address(registry_address: str) -> str:
    if not isinstance(registry_address, str) or not Web3.is_address(registry_address):
        raise InvalidRegistryAddressError(f"Invalid registry address: {registry_address}")
    return Web3.to_checksum_address(registry_address)


def evaluate(
    w3: Web3,
    registry_address: str,
    owner: str | None,
    settings: RebalancerSettings,
    policy: RetryPolicy,
    rpc_url: str | None = None,
    network_configs: Mapping[int, NetworkConfig] = DEFAULT_NETWORK_CONFIGS,
) -> Evaluation:
    """Run every read of a cycle. No owner means no positions are read."""
    network = resolve_network_config(w3, rpc_url, network_configs, policy)
    projects = discover_projects(w3, registry_address, policy, settings.max_event_block_span)
    metrics, failed = fetch_all_metrics(
        w3, projects, network, policy,
        abort_on_error=settings.abort_on_metrics_error,
        max_workers=settings.max_read_workers,
    )

    positions: list[PositionInfo] = []
    backfilled: set[int] = set()
    if owner:
        positions = fetch_owned_positions(w3, network, owner, policy)
        if settings.enable_backfill:
            backfilled = backfill_historical_token_ids(
                w3, network, owner, policy,
                lookback_blocks=settings.history_lookback_blocks,
                span=settings.max_event_block_span,
            )

    unmatched = attach_positions_to_projects(metrics, positions)
    return Evaluation(
        network=network,
        metrics=metrics,
        positions=positions,
        unmatched=unmatched,
        backfilled_token_ids=backfilled,
        failed_projects=failed,
    )


def validate_delegated_address(pkp_address: str) -> str:
    if not isinstance(pkp_address, str) or not Web3.is_address(pkp_address):
        raise PolicyError(f"Invalid delegated wallet address: {pkp_address}")
    return Web3.to_checksum_address(pkp_address)


def _failure(exc: Exception, context: str) -> FailureReport:
    if isinstance(exc, RebalancerError):
        logger.error("%s: [%s] %s", context, exc.reason, exc, exc_info=True)
        return FailureReport(
            reason=exc.reason, error=str(exc), actions=list(getattr(exc, "actions", []))
        )
    logger.exception("%s: unexpected failure", context)
    return FailureReport(reason=ProviderError.reason, error=str(exc) or repr(exc))


def _policy(settings: RebalancerSettings, sleep: Callable[[float], None] | None) -> RetryPolicy:
    policy = retry_policy_from_settings(settings)
    return replace(policy, sleep=sleep) if sleep is not None else policy


def run_precheck(
    registry_address: str,
    rpc_url: str | None = None,
    delegation: DelegationContext | None = None,
    settings: RebalancerSettings | None = None,
    w3: Web3 | None = None,
    network_configs: Mapping[int, NetworkConfig] = DEFAULT_NETWORK_CONFIGS,
    sleep: Callable[[float], None] | None = None,
) -> dict | FailureReport:
    """
    Read-only evaluation of every registry project.

    Without a delegation the wallet is treated as owning no positions.
    """
    settings = settings or RebalancerSettings()
    try:
        registry_address = validate_registry_address(registry_address)
        w3 = w3 or create_web3(rpc_url)
        owner = None
        if delegation is not None and delegation.pkp_address:
            owner = validate_delegated_address(delegation.pkp_address)
        evaluation = evaluate(
            w3, registry_address, owner, settings, _policy(settings, sleep),
            rpc_url, network_configs,
        )
    except Exception as exc:
        return _failure(exc, "precheck")

    return build_precheck_report(
        registry_address,
        evaluation.metrics,
        tracked_positions=len(evaluation.positions),
        backfilled_positions=len(evaluation.backfilled_token_ids),
        unmatched_positions=len(evaluation.unmatched),
        failed_projects=evaluation.failed_projects,
    )


def run_execute(
    registry_address: str,
    dispatch: ContractCallDispatcher,
    delegation: DelegationContext | None,
    rpc_url: str | None = None,
    settings: RebalancerSettings | None = None,
    w3: Web3 | None = None,
    network_configs: Mapping[int, NetworkConfig] = DEFAULT_NETWORK_CONFIGS,
    sleep: Callable[[float], None] | None = None,
    clock: Callable[[], float] = time.time,
) -> dict | FailureReport:
    """
    Evaluate every project, then rebalance the eligible ones.

    All reads complete before the first transaction is dispatched. When a
    dispatched call fails, the FailureReport lists the actions that had
    already landed; nothing is rolled back.
    """
    settings = settings or RebalancerSettings()
    try:
        registry_address = validate_registry_address(registry_address)
        if delegation is None or not delegation.can_sign:
            raise PolicyError("Delegation context missing PKP information")
        delegation = replace(
            delegation, pkp_address=validate_delegated_address(delegation.pkp_address)
        )

        w3 = w3 or create_web3(rpc_url)
        policy = _policy(settings, sleep)
        evaluation = evaluate(
            w3, registry_address, delegation.pkp_address, settings, policy,
            rpc_url, network_configs,
        )
        actions = execute_rebalance(
            w3, evaluation.metrics, evaluation.network, delegation, dispatch,
            settings, policy, clock,
        )
    except Exception as exc:
        return _failure(exc, "execute")

    logger.info(
        "Registry %s: %d actions across %d projects",
        registry_address, len(actions), len(evaluation.metrics),
    )
    return build_execute_report(
        registry_address,
        evaluation.metrics,
        actions,
        backfilled_positions=len(evaluation.backfilled_token_ids),
        unmatched_positions=len(evaluation.unmatched),
        failed_projects=evaluation.failed_projects,
    )
