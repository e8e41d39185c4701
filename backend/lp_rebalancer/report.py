"""
Run reports: per-project summaries, precheck/execute envelopes, failures.

Big integers are rendered as decimal strings so reports survive JSON
round-trips without precision loss.
"""

from dataclasses import dataclass, field

import pandas as pd

from .models import ActionRecord, ProjectMetrics


def summarize_action(action: ActionRecord) -> dict:
    return {
        "projectAddress": action.project_address,
        "tokenId": None if action.token_id is None else str(action.token_id),
        "name": action.name,
        "txHash": action.tx_hash,
    }


def summarize_metric(metric: ProjectMetrics) -> dict:
    """Flatten one project's metrics into its reported summary."""
    return {
        "projectAddress": metric.project.project_address,
        "tokenAddress": metric.project.token_address,
        "stableTokenAddress": metric.project.stable_token_address,
        "poolAddress": metric.pool_address,
        "navPerShare": str(metric.nav_per_share),
        "targetPoolPrice": str(metric.target_price),
        "currentPoolPrice": str(metric.current_pool_price),
        "poolLiquidity": str(metric.pool_liquidity),
        "totalPositionLiquidity": str(metric.total_position_liquidity),
        "deviationBps": metric.deviation_bps,
        "direction": metric.direction.value,
        "positionCount": len(metric.positions),
        "positionTokenIds": [str(p.token_id) for p in metric.positions],
    }


def build_precheck_report(
    registry_address: str,
    metrics: list[ProjectMetrics],
    tracked_positions: int,
    backfilled_positions: int,
    unmatched_positions: int = 0,
    failed_projects: list[dict] | None = None,
) -> dict:
    return {
        "registryAddress": registry_address,
        "projectCount": len(metrics),
        "trackedPositions": tracked_positions,
        "backfilledPositions": backfilled_positions,
        "unmatchedPositions": unmatched_positions,
        "projects": [summarize_metric(m) for m in metrics],
        "failedProjects": list(failed_projects or []),
    }


def build_execute_report(
    registry_address: str,
    metrics: list[ProjectMetrics],
    actions: list[ActionRecord],
    backfilled_positions: int,
    unmatched_positions: int = 0,
    failed_projects: list[dict] | None = None,
) -> dict:
    """Project summaries extended with each project's ordered actions."""
    projects = []
    for metric in metrics:
        summary = summarize_metric(metric)
        summary["actions"] = [
            summarize_action(a)
            for a in actions
            if a.project_address == metric.project.project_address
        ]
        projects.append(summary)

    return {
        "registryAddress": registry_address,
        "totalActions": len(actions),
        "backfilledPositions": backfilled_positions,
        "unmatchedPositions": unmatched_positions,
        "projects": projects,
        "failedProjects": list(failed_projects or []),
    }


@dataclass
class FailureReport:
    """A run that could not complete: category, message, and landed actions."""
    reason: str
    error: str
    actions: list[ActionRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "error": self.error,
            "actions": [summarize_action(a) for a in self.actions],
        }


def projects_frame(report: dict) -> pd.DataFrame:
    """
    Tabular view of a precheck or execute report, one row per project.

    Adds an `actionCount` column when the report carries actions.
    """
    columns = [
        "projectAddress", "poolAddress", "targetPoolPrice", "currentPoolPrice",
        "deviationBps", "direction", "positionCount",
    ]
    rows = []
    for project in report.get("projects", []):
        row = {col: project.get(col) for col in columns}
        if "actions" in project:
            row["actionCount"] = len(project["actions"])
        rows.append(row)

    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame(rows)
