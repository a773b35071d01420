"""Run outcomes and the end-of-run summary.

A RunReport answers, for one invocation:
- "What happened to each resource, and why?"
- "Was Argo CD exposed, and how?"
- "Which exit code does this run deserve?"

The report is logged once as a structured record and rendered as a short
table for the operator.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .commands import ErrorCategory
from .executor import ActionType
from .exposure import ExposureResult
from .models import ResourceState, ResourceTier

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """Per-resource outcome of a pass."""

    SATISFIED = "Satisfied"
    FAILED = "Failed"  # Non-fatal action error
    UNKNOWN = "Unknown"  # Probe failed, dependents blocked
    BLOCKED = "Blocked"  # A dependency is not satisfied
    FATAL = "Fatal"  # Aborted the remaining queue


@dataclass
class ResourceOutcome:
    """What happened to one resource during a pass."""

    resource: str
    tier: ResourceTier
    status: OutcomeStatus
    state: ResourceState | None = None
    action: ActionType | None = None
    error: ErrorCategory | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return self.status == OutcomeStatus.SATISFIED


@dataclass
class RunReport:
    """Complete record of one driver run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    infrastructure_complete: bool = False
    exposure: ExposureResult | None = None
    applications_confirmed: bool | None = None
    aborted: bool = False
    dry_run: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def status_counts(self) -> dict[str, int]:
        counts = Counter(outcome.status.value for outcome in self.outcomes)
        return {status.value: counts.get(status.value, 0) for status in OutcomeStatus}

    def action_counts(self) -> dict[str, int]:
        counts = Counter(
            outcome.action.value for outcome in self.outcomes if outcome.action is not None
        )
        return dict(counts)

    def outcome(self, name: str) -> ResourceOutcome:
        for outcome in self.outcomes:
            if outcome.resource == name:
                return outcome
        raise KeyError(f"No outcome recorded for '{name}'")

    @property
    def exit_code(self) -> int:
        """0 on success or declined optional phases, 1 otherwise."""
        if self.aborted:
            return 1
        if not self.infrastructure_complete:
            return 1
        if self.exposure is not None and not self.exposure.success:
            return 1
        return 0


def log_run_report(report: RunReport) -> None:
    """Log a completed run as one structured record.

    Args:
        report: Completed run report.
    """
    log_level = logging.INFO
    if report.exit_code != 0:
        log_level = logging.ERROR
    elif any(outcome.warnings or not outcome.satisfied for outcome in report.outcomes):
        log_level = logging.WARNING

    extra: dict[str, Any] = {
        "exit_code": report.exit_code,
        "duration_seconds": report.duration_seconds,
        "dry_run": report.dry_run,
        "aborted": report.aborted,
        "infrastructure_complete": report.infrastructure_complete,
        "applications_confirmed": report.applications_confirmed,
        **{f"{status.lower()}_count": count for status, count in report.status_counts().items()},
    }
    if report.exposure is not None:
        extra["exposure_phase"] = report.exposure.phase.value
        if report.exposure.choice is not None:
            extra["exposure_method"] = report.exposure.choice.method.value
        if report.exposure.error is not None:
            extra["exposure_error"] = report.exposure.error.value

    logger.log(log_level, "Run complete", extra=extra)


def format_report(report: RunReport) -> list[str]:
    """Render the report as lines for the terminal."""
    lines = []
    width = max((len(outcome.resource) for outcome in report.outcomes), default=8)
    for outcome in report.outcomes:
        line = f"{outcome.resource:<{width}}  {outcome.status.value:<9}"
        if outcome.action is not None:
            line += f"  {outcome.action.value}"
        if outcome.blocked_by:
            line += f"  (waiting on: {', '.join(outcome.blocked_by)})"
        elif outcome.error is not None:
            line += f"  [{outcome.error.value}] {outcome.message}"
        lines.append(line)
        lines.extend(f"{'':<{width}}  warning: {warning}" for warning in outcome.warnings)

    if report.exposure is not None:
        exposure = report.exposure
        method = exposure.choice.method.value if exposure.choice else "-"
        lines.append(f"argocd exposure: {exposure.phase.value} ({method})")
        if exposure.error is not None:
            lines.append(f"  [{exposure.error.value}] {exposure.message}")

    if report.applications_confirmed is False:
        lines.append("application deployment: skipped")
    return lines
