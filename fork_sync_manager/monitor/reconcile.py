"""Safety-net reconciliation pass that converges tracking issues after missed or failed triggers."""

from datetime import timedelta
from typing import Any, Awaitable, Callable

import structlog

from fork_sync_manager.cascade.engine import CascadeEngine
from fork_sync_manager.cascade.exceptions import CascadeInvariantError, CascadeStartError
from fork_sync_manager.configuration.models import OrchestratorConfig
from fork_sync_manager.github.abc import GitHubClientBase
from fork_sync_manager.lifecycle.exceptions import LifecycleIntegrityError, LifecycleTransitionError
from fork_sync_manager.lifecycle.states import LifecycleState, state_from_labels
from fork_sync_manager.monitor.health import build_health_report
from fork_sync_manager.monitor.models import MonitorReport, MonitorTaskResult
from fork_sync_manager.utils.constants import (
    CASCADE_ESCALATED_LABEL,
    CONFLICT_LABEL,
    ESCALATES_MARKER,
    ESCALATES_MARKER_PATTERN,
    ESCALATION_LABEL,
    HIGH_PRIORITY_LABEL,
    HUMAN_REQUIRED_LABEL,
    PRODUCTION_PR_MARKER_PATTERN,
    RELEASE_BRANCH_PREFIX,
    SYNC_PR_MARKER_PATTERN,
    TRACKING_ISSUE_MARKER_PATTERN,
    UPSTREAM_SYNC_LABEL,
    VALIDATION_FAILED_LABEL,
)
from fork_sync_manager.utils.github import (
    base_ref_of,
    extract_label_names,
    find_marker_number,
    head_ref_of,
    is_closed,
    pull_request_is_merged,
    references_tracking_issue,
)
from fork_sync_manager.utils.helpers import format_timestamp, utc_now
from fork_sync_manager.utils.templates import render_packaged_template
from fork_sync_manager.utils.truncation import fit_body_to_limit
from fork_sync_manager.vcs.exceptions import GitCommandError
from fork_sync_manager.vcs.git import ORIGIN_REMOTE, GitRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

INTEGRITY_ERRORS = (LifecycleIntegrityError, LifecycleTransitionError, CascadeInvariantError)

# Record labels scanned for SLA escalation, with the kind of record each marks.
ESCALATED_RECORD_KINDS: dict[str, str] = {
    CONFLICT_LABEL: "merge conflict",
    VALIDATION_FAILED_LABEL: "validation failure",
}


class ReconciliationMonitor:
    """Runs the monitor tasks; each is idempotent and independent of the others."""

    def __init__(
        self,
        config: OrchestratorConfig,
        client: GitHubClientBase,
        git: GitRepository,
        cascade_engine: CascadeEngine,
    ) -> None:
        """Initialize the monitor with its collaborators."""
        self.config = config
        self.client = client
        self.git = git
        self.cascade_engine = cascade_engine
        self.tracker = cascade_engine.tracker

    async def run(self) -> MonitorReport:
        """Run every task, logging and reporting failures without stopping the pass."""
        report = MonitorReport()

        async def health(result: MonitorTaskResult) -> None:
            report.health = await build_health_report(self.client)
            result.actions.append(f"status {report.health.status.value}")

        tasks: list[tuple[str, Callable[[MonitorTaskResult], Awaitable[None]]]] = [
            ("missed_trigger", self.detect_missed_trigger),
            ("escalation", self.escalate_stale_records),
            ("recovery", self.recover_failed_cascades),
            ("completion", self.complete_merged_cycles),
            ("health", health),
        ]
        for name, task in tasks:
            result = MonitorTaskResult(name=name)
            try:
                await task(result)
            except INTEGRITY_ERRORS as exc:
                logger.error("Monitor task stopped on an integrity error", task=name, error=str(exc))
                result.error = str(exc)
                result.integrity_error = True
            except Exception as exc:
                logger.exception("Monitor task failed", task=name)
                result.error = f"{type(exc).__name__}: {exc}"
            report.tasks.append(result)
            logger.info("Monitor task finished", task=name, succeeded=result.succeeded, actions=result.actions)
        return report

    async def _tracking_issues(self) -> list[tuple[LifecycleState, Any]]:
        """Open tracking issues with their lifecycle state."""
        issues = await self.client.list_issues(labels=[UPSTREAM_SYNC_LABEL], state="open")
        return [(state_from_labels(issue.labels, issue_number=issue.number), issue) for issue in issues]

    async def detect_missed_trigger(self, result: MonitorTaskResult) -> None:
        """Start the cascade when the upstream-tracking branch moved but nobody triggered it."""
        await self.git.fetch(ORIGIN_REMOTE)
        pending_commits = await self.git.rev_list_count(
            f"{ORIGIN_REMOTE}/{self.config.fork_integration_branch}",
            f"{ORIGIN_REMOTE}/{self.config.fork_upstream_branch}",
        )
        if pending_commits == 0:
            logger.info("No upstream changes awaiting integration")
            return

        candidates: list[tuple[Any, int]] = []
        for state, issue in await self._tracking_issues():
            if state is not LifecycleState.HUMAN_REQUIRED:
                continue
            sync_pr_number = find_marker_number(issue.body, SYNC_PR_MARKER_PATTERN)
            if sync_pr_number is None:
                logger.warning("Tracking issue does not reference its sync PR", issue_number=issue.number)
                continue
            if pull_request_is_merged(await self.client.get_pull_request(sync_pr_number)):
                candidates.append((issue, sync_pr_number))
        if not candidates:
            logger.warning("Upstream changes await integration but no tracking issue is ready for a cascade", pending_commits=pending_commits)
            return

        issue, sync_pr_number = max(candidates, key=lambda candidate: candidate[0].number)
        blocking_pr = await self.cascade_engine.pipeline_blocker(issue.number)
        if blocking_pr is not None:
            logger.info("Missed cascade waits for another cycle to leave the pipeline", issue_number=issue.number, blocking_pr=blocking_pr.number)
            result.actions.append(f"held #{issue.number}")
            return
        await self.tracker.annotate(
            issue.number,
            f"Automatic cascade: sync PR #{sync_pr_number} was merged and {pending_commits} commit(s) in "
            f"`{self.config.fork_upstream_branch}` are not yet in `{self.config.fork_integration_branch}`. "
            "Starting the cascade as a safety net.",
        )
        try:
            run = await self.cascade_engine.run(issue.number)
        except CascadeStartError as exc:
            await self.tracker.annotate(issue.number, f"Automatic cascade could not start: {exc.reason}. Trigger the cascade manually.")
            raise
        result.cascades.append(run)
        result.actions.append(f"cascade #{issue.number}: {run.outcome.value if run.outcome else 'unknown'}")

    async def escalate_stale_records(self, result: MonitorTaskResult) -> None:
        """Open exactly one escalation issue per conflict or validation record past its SLA."""
        now = utc_now()
        sla = timedelta(hours=self.config.conflict_sla_hours)
        escalations = await self.client.list_issues(labels=[ESCALATION_LABEL], state="all")
        escalation_by_record: dict[int, Any] = {}
        for escalation in escalations:
            record_number = find_marker_number(escalation.body, ESCALATES_MARKER_PATTERN)
            if record_number is not None:
                escalation_by_record.setdefault(record_number, escalation)

        for label, kind in ESCALATED_RECORD_KINDS.items():
            for record in await self.client.list_issues(labels=[label], state="open"):
                if CASCADE_ESCALATED_LABEL in extract_label_names(record.labels):
                    continue
                deadline = record.created_at + sla
                if deadline > now:
                    continue
                escalation = escalation_by_record.get(record.number)
                if escalation is None:
                    escalation = await self._open_escalation(record, kind, deadline)
                    escalation_by_record[record.number] = escalation
                    result.actions.append(f"escalated #{record.number} in #{escalation.number}")
                else:
                    logger.info("Escalation issue already exists; restoring marker label", record_issue=record.number, escalation_issue=escalation.number)
                await self.client.edit_issue_labels(record.number, add=[CASCADE_ESCALATED_LABEL])

        for record_number, escalation in escalation_by_record.items():
            if is_closed(escalation):
                continue
            record = await self.client.get_issue(record_number)
            if is_closed(record):
                await self.client.comment_on_issue(escalation.number, f"#{record_number} has been resolved; closing this escalation.")
                await self.client.close_issue(escalation.number)
                result.actions.append(f"closed escalation #{escalation.number}")

    async def _open_escalation(self, record: Any, kind: str, deadline: Any) -> Any:
        """Create the escalation issue for a record and point the record and its tracking issue at it."""
        tracking_issue = find_marker_number(record.body, TRACKING_ISSUE_MARKER_PATTERN)
        body = render_packaged_template(
            "escalation_issue.j2",
            record_number=record.number,
            record_title=record.title,
            record_kind=kind,
            tracking_issue=tracking_issue,
            created_at=format_timestamp(record.created_at),
            sla_deadline=format_timestamp(deadline),
            sla_hours=self.config.conflict_sla_hours,
            escalates_marker=ESCALATES_MARKER.format(number=record.number),
        )
        escalation = await self.client.create_issue(
            title=f"ESCALATION: {kind} unresolved for {self.config.conflict_sla_hours}+ hours (#{record.number})",
            body=fit_body_to_limit(body),
            labels=[ESCALATION_LABEL, HIGH_PRIORITY_LABEL, HUMAN_REQUIRED_LABEL],
        )
        await self.client.comment_on_issue(
            record.number,
            f"This {kind} exceeded the {self.config.conflict_sla_hours}-hour SLA and was escalated in #{escalation.number}.",
        )
        if tracking_issue is not None:
            await self.tracker.annotate(tracking_issue, f"Unresolved {kind} #{record.number} was escalated in #{escalation.number}.")
        logger.warning("Escalated stale record", record_issue=record.number, escalation_issue=escalation.number, kind=kind)
        return escalation

    async def recover_failed_cascades(self, result: MonitorTaskResult) -> None:
        """Retry cascades whose failure a person has marked as resolved."""
        failures: list[str] = []
        for state, issue in await self._tracking_issues():
            if state is not LifecycleState.RECOVERY_READY:
                continue
            blocking_pr = await self.cascade_engine.pipeline_blocker(issue.number)
            if blocking_pr is not None:
                logger.info("Recovery waits for another cycle to leave the pipeline", issue_number=issue.number, blocking_pr=blocking_pr.number)
                result.actions.append(f"held #{issue.number}")
                continue
            await self.tracker.transition(
                issue.number,
                LifecycleState.CASCADE_ACTIVE,
                f"Automatic recovery: the `{HUMAN_REQUIRED_LABEL}` label was removed, retrying the cascade. "
                "A new failure issue is created if it fails again.",
                current=state,
            )
            try:
                run = await self.cascade_engine.run(issue.number)
            except CascadeStartError as exc:
                logger.error("Automatic recovery could not start the cascade", issue_number=issue.number, reason=exc.reason)
                await self.tracker.transition(
                    issue.number,
                    LifecycleState.CASCADE_FAILED,
                    f"Automatic recovery could not start the cascade: {exc.reason}. Trigger it manually or remove "
                    f"`{HUMAN_REQUIRED_LABEL}` again to retry.",
                    current=LifecycleState.CASCADE_ACTIVE,
                )
                failures.append(f"#{issue.number}")
                continue
            result.cascades.append(run)
            result.actions.append(f"recovered #{issue.number}: {run.outcome.value if run.outcome else 'unknown'}")
        if failures:
            result.error = f"recovery could not start for {', '.join(failures)}"

    async def complete_merged_cycles(self, result: MonitorTaskResult) -> None:
        """Close VALIDATED tracking issues whose production PR has been merged."""
        for state, issue in await self._tracking_issues():
            if state is not LifecycleState.VALIDATED:
                continue
            production_pr_number = find_marker_number(issue.body, PRODUCTION_PR_MARKER_PATTERN)
            if production_pr_number is None:
                logger.warning("Validated tracking issue does not reference its production PR", issue_number=issue.number)
                continue
            production_pr = await self.client.get_pull_request(production_pr_number)
            if not (
                pull_request_is_merged(production_pr)
                and base_ref_of(production_pr) == self.config.production_branch
                and references_tracking_issue(production_pr, issue.number)
            ):
                continue
            await self.tracker.close(
                issue.number,
                f"Production PR #{production_pr.number} was merged into `{self.config.production_branch}`. This synchronization cycle is complete.",
                current=LifecycleState.VALIDATED,
            )
            result.actions.append(f"closed #{issue.number}")
            release_branch = head_ref_of(production_pr)
            if release_branch and release_branch.startswith(RELEASE_BRANCH_PREFIX):
                try:
                    await self.git.delete_remote_branch(release_branch)
                except GitCommandError as exc:
                    logger.warning("Could not delete release branch", branch=release_branch, error=exc.stderr.strip())
