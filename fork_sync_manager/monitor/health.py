"""Read-only health summary of the cascade pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from fork_sync_manager.github.abc import GitHubClientBase
from fork_sync_manager.lifecycle.exceptions import LifecycleIntegrityError
from fork_sync_manager.lifecycle.states import LifecycleState, state_from_labels
from fork_sync_manager.utils.constants import CASCADE_ESCALATED_LABEL, UPSTREAM_SYNC_LABEL
from fork_sync_manager.utils.helpers import format_timestamp, utc_now
from fork_sync_manager.utils.templates import render_packaged_template

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class HealthStatus(str, Enum):
    """Overall status of the cascade pipeline."""

    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class HealthItem:
    """One issue listed in the health report."""

    number: int
    title: str


@dataclass
class HealthReport:
    """Counts of tracking issues per lifecycle state and of escalated records."""

    generated_at: datetime = field(default_factory=utc_now)
    awaiting_human: list[HealthItem] = field(default_factory=list)
    active: list[HealthItem] = field(default_factory=list)
    blocked: list[HealthItem] = field(default_factory=list)
    failed: list[HealthItem] = field(default_factory=list)
    recovery_ready: list[HealthItem] = field(default_factory=list)
    validated: list[HealthItem] = field(default_factory=list)
    escalated: list[HealthItem] = field(default_factory=list)
    inconsistent: list[HealthItem] = field(default_factory=list)

    @property
    def status(self) -> HealthStatus:
        """CRITICAL on escalations or inconsistent labels, WARNING on blocked or failed cascades."""
        if self.escalated or self.inconsistent:
            return HealthStatus.CRITICAL
        if self.blocked or self.failed or self.recovery_ready:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    @property
    def action_required(self) -> bool:
        """Whether anything in the report needs a person."""
        return self.status is not HealthStatus.HEALTHY

    def counts(self) -> dict[str, int]:
        """Number of items per report section."""
        return {
            "awaiting_human": len(self.awaiting_human),
            "active": len(self.active),
            "blocked": len(self.blocked),
            "failed": len(self.failed),
            "recovery_ready": len(self.recovery_ready),
            "validated": len(self.validated),
            "escalated": len(self.escalated),
            "inconsistent": len(self.inconsistent),
        }

    def render(self) -> str:
        """Render the report as Markdown."""
        return render_packaged_template(
            "health_report.j2",
            generated_at=format_timestamp(self.generated_at),
            status=self.status.value,
            counts=self.counts(),
            active=self.active,
            blocked=self.blocked,
            failed=self.failed + self.recovery_ready,
            escalated=self.escalated,
            inconsistent=self.inconsistent,
            action_required=self.action_required,
        )


_STATE_SECTIONS: dict[LifecycleState, str] = {
    LifecycleState.HUMAN_REQUIRED: "awaiting_human",
    LifecycleState.CASCADE_ACTIVE: "active",
    LifecycleState.CASCADE_BLOCKED: "blocked",
    LifecycleState.CASCADE_FAILED: "failed",
    LifecycleState.RECOVERY_READY: "recovery_ready",
    LifecycleState.VALIDATED: "validated",
}


def _item(issue: Any) -> HealthItem:
    return HealthItem(number=issue.number, title=issue.title)


async def build_health_report(client: GitHubClientBase) -> HealthReport:
    """Aggregate open tracking issues and escalations into a report.

    Never mutates anything. Tracking issues whose labels do not map to a
    lifecycle state are listed as inconsistent instead of failing the report.
    """
    report = HealthReport()
    for issue in await client.list_issues(labels=[UPSTREAM_SYNC_LABEL], state="open"):
        try:
            state = state_from_labels(issue.labels, issue_number=issue.number)
        except LifecycleIntegrityError as exc:
            logger.warning("Tracking issue has inconsistent lifecycle labels", issue_number=issue.number, reason=exc.reason)
            report.inconsistent.append(_item(issue))
            continue
        getattr(report, _STATE_SECTIONS[state]).append(_item(issue))

    for record in await client.list_issues(labels=[CASCADE_ESCALATED_LABEL], state="open"):
        report.escalated.append(_item(record))

    logger.info("Built health report", status=report.status.value, **report.counts())
    return report
