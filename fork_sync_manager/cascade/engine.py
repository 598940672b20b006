"""Propagates upstream changes through the integration branch into a production pull request."""

from datetime import timedelta
from typing import Any

import structlog

from fork_sync_manager.cascade.exceptions import CascadeInvariantError, CascadeStartError
from fork_sync_manager.cascade.models import CascadeOutcome, CascadeRun, CascadeStage, ValidationResult
from fork_sync_manager.cascade.validation import ValidationRunner
from fork_sync_manager.configuration.models import OrchestratorConfig
from fork_sync_manager.github.abc import GitHubClientBase
from fork_sync_manager.lifecycle.exceptions import LifecycleIntegrityError, LifecycleTransitionError
from fork_sync_manager.lifecycle.states import LifecycleState
from fork_sync_manager.lifecycle.tracker import LifecycleTracker
from fork_sync_manager.state.exceptions import RepositoryLockTimeoutError
from fork_sync_manager.state.lock import lock_path_for, repository_lock
from fork_sync_manager.utils.constants import (
    BREAKING_CHANGE_PATTERN,
    CASCADE_BLOCKED_LABEL,
    CONFLICT_BRANCH_PREFIX,
    CONFLICT_LABEL,
    HELD_BY_MARKER,
    HELD_BY_MARKER_PATTERN,
    HIGH_PRIORITY_LABEL,
    HUMAN_REQUIRED_LABEL,
    MAX_COMMIT_SUMMARY_LINES,
    PRODUCTION_PR_MARKER,
    PRODUCTION_PR_MARKER_PATTERN,
    RELEASE_BRANCH_PREFIX,
    SYNC_PR_MARKER_PATTERN,
    TRACKING_ISSUE_MARKER,
    UPSTREAM_SYNC_LABEL,
    VALIDATION_FAILED_LABEL,
)
from fork_sync_manager.utils.github import find_marker_number, head_ref_of, pull_request_is_merged, references_tracking_issue, set_marker
from fork_sync_manager.utils.helpers import format_timestamp, generate_timestamped_branch_name, utc_now
from fork_sync_manager.utils.templates import render_packaged_template
from fork_sync_manager.utils.truncation import fit_body_to_limit
from fork_sync_manager.vcs.git import ORIGIN_REMOTE, GitRepository
from fork_sync_manager.vcs.models import MergeResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# Errors that indicate corrupted state; no label is touched after them.
INTEGRITY_ERRORS = (LifecycleIntegrityError, LifecycleTransitionError, CascadeInvariantError)


class CascadeEngine:
    """Runs the production → integration and upstream → integration merges and their gates.

    Runs for a repository are serialized by a lock file. A run is safe to repeat
    for the same tracking issue: the entry gate turns repeats into no-ops.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        client: GitHubClientBase,
        git: GitRepository,
        validation_runner: ValidationRunner,
        lock_poll_interval: float = 5.0,
    ) -> None:
        """Initialize the engine with its collaborators."""
        self.config = config
        self.client = client
        self.git = git
        self.validation_runner = validation_runner
        self.tracker = LifecycleTracker(client)
        self.lock_poll_interval = lock_poll_interval

    @property
    def production_ref(self) -> str:
        """Remote-tracking ref of the production branch."""
        return f"{ORIGIN_REMOTE}/{self.config.production_branch}"

    @property
    def upstream_ref(self) -> str:
        """Remote-tracking ref of the upstream-tracking branch."""
        return f"{ORIGIN_REMOTE}/{self.config.fork_upstream_branch}"

    @property
    def integration_ref(self) -> str:
        """Remote-tracking ref of the integration branch."""
        return f"{ORIGIN_REMOTE}/{self.config.fork_integration_branch}"

    async def run(self, issue_number: int) -> CascadeRun:
        """Run one cascade for a tracking issue while holding the repository lock.

        Raises:
            CascadeStartError: If the lock cannot be acquired in time.
            LifecycleIntegrityError: If the tracking issue's labels are inconsistent.
        """
        lock_path = lock_path_for(self.config.state_dir, self.config.repo)
        try:
            async with repository_lock(
                lock_path,
                command=f"cascade {issue_number}",
                timeout=self.config.lock_timeout_seconds,
                poll_interval=self.lock_poll_interval,
            ):
                return await self._run_locked(issue_number)
        except RepositoryLockTimeoutError as exc:
            raise CascadeStartError(issue_number, str(exc)) from exc

    async def _run_locked(self, issue_number: int) -> CascadeRun:
        """Apply the entry gate, then run the pipeline."""
        run = CascadeRun(tracking_issue=issue_number, integration_branch=self.config.fork_integration_branch)
        state, issue = await self.tracker.read_state(issue_number)
        logger.info("Cascade requested", tracking_issue=issue_number, lifecycle_state=state.value)

        if state is LifecycleState.CLOSED:
            return run.finish(CascadeOutcome.NOOP_CLOSED)
        if state is LifecycleState.VALIDATED:
            return run.finish(CascadeOutcome.NOOP_ALREADY_VALIDATED)
        if state is LifecycleState.CASCADE_FAILED:
            logger.info("Tracking issue still requires a human after a failure; skipping", tracking_issue=issue_number)
            return run.finish(CascadeOutcome.NOOP_AWAITING_HUMAN)
        if state is LifecycleState.CASCADE_BLOCKED and await self._open_conflict_pull_request(issue_number) is not None:
            logger.info("Conflict PR still open; skipping", tracking_issue=issue_number)
            return run.finish(CascadeOutcome.NOOP_CONFLICT_PR_OPEN)
        if state is LifecycleState.HUMAN_REQUIRED and not await self._sync_pull_request_merged(issue):
            logger.info("Sync PR of the tracking issue is not merged yet; skipping", tracking_issue=issue_number)
            return run.finish(CascadeOutcome.NOOP_SYNC_PR_NOT_MERGED)

        production_pr = await self._open_production_pull_request(issue_number)
        if production_pr is not None:
            state = await self._activate(issue_number, state, "A production PR for this cycle is already open.")
            await self._record_production_pull_request(issue_number, production_pr.number)
            await self.tracker.transition(
                issue_number, LifecycleState.VALIDATED, f"Production PR #{production_pr.number} is already open.", current=state
            )
            run.production_pr = production_pr.number
            return run.finish(CascadeOutcome.NOOP_PRODUCTION_PR_EXISTS)

        blocking_pr = await self.pipeline_blocker(issue_number)
        if blocking_pr is not None:
            await self._hold(issue, blocking_pr)
            return run.finish(CascadeOutcome.NOOP_PIPELINE_HELD)

        await self.git.fetch(ORIGIN_REMOTE)
        # Merges use these revisions, never the remote-tracking refs.
        source_revision = await self.git.rev_parse(self.upstream_ref)
        production_revision = await self.git.rev_parse(self.production_ref)
        run.source_revision = source_revision
        run.production_revision = production_revision
        if await self._nothing_to_integrate(source_revision, production_revision):
            await self.tracker.annotate(
                issue_number,
                f"Nothing to integrate: `{self.config.fork_upstream_branch}` at `{source_revision[:12]}` is already part of "
                f"`{self.config.production_branch}`. No cascade was needed.",
            )
            return run.finish(CascadeOutcome.NOOP_NOTHING_TO_INTEGRATE)

        state = await self._activate(issue_number, state, f"Cascade started for `{self.config.fork_upstream_branch}` at `{source_revision[:12]}`.")
        try:
            return await self._propagate(run, production_revision, source_revision)
        except INTEGRITY_ERRORS:
            raise
        except Exception as exc:
            await self._handle_failure(run, exc)
            return run

    async def _activate(self, issue_number: int, state: LifecycleState, message: str) -> LifecycleState:
        """Move the tracking issue into CASCADE_ACTIVE unless it is already there."""
        if state is LifecycleState.CASCADE_ACTIVE:
            logger.warning("Tracking issue already active; resuming an interrupted cascade", tracking_issue=issue_number)
            return state
        await self.tracker.transition(issue_number, LifecycleState.CASCADE_ACTIVE, message, current=state)
        return LifecycleState.CASCADE_ACTIVE

    async def _sync_pull_request_merged(self, issue: Any) -> bool:
        """Whether the sync PR referenced by a tracking issue has been merged."""
        sync_pr_number = find_marker_number(issue.body, SYNC_PR_MARKER_PATTERN)
        if sync_pr_number is None:
            logger.warning("Tracking issue does not reference its sync PR", tracking_issue=issue.number)
            return False
        return pull_request_is_merged(await self.client.get_pull_request(sync_pr_number))

    async def pipeline_blocker(self, issue_number: int) -> Any | None:
        """Open production or conflict PR of another cycle, if any.

        Integration carries at most one cycle between its merge and the
        resolution of that cycle's production PR.
        """
        production_prs = await self.client.find_open_pull_requests(UPSTREAM_SYNC_LABEL, base=self.config.production_branch)
        conflict_prs = await self.client.find_open_pull_requests(CONFLICT_LABEL, base=self.config.fork_integration_branch)
        candidates = [pr for pr in production_prs if (head_ref_of(pr) or "").startswith(RELEASE_BRANCH_PREFIX)] + conflict_prs
        return next((pr for pr in candidates if not references_tracking_issue(pr, issue_number)), None)

    async def _hold(self, issue: Any, blocking_pr: Any) -> None:
        """Annotate the tracking issue once per blocking PR, leaving its state as is."""
        logger.info("Pipeline occupied by another cycle; holding the cascade", tracking_issue=issue.number, blocking_pr=blocking_pr.number)
        if find_marker_number(issue.body, HELD_BY_MARKER_PATTERN) == blocking_pr.number:
            return
        await self.tracker.annotate(
            issue.number,
            f"Cascade held: #{blocking_pr.number} from another synchronization cycle is still open. "
            "The cascade starts once it is merged or closed.",
        )
        await self.client.update_issue(issue.number, set_marker(issue.body, HELD_BY_MARKER_PATTERN, HELD_BY_MARKER.format(number=blocking_pr.number)))

    async def _record_production_pull_request(self, issue_number: int, pull_request_number: int) -> None:
        """Link the tracking issue to its production PR through a hidden body marker."""
        issue = await self.client.get_issue(issue_number)
        if find_marker_number(issue.body, PRODUCTION_PR_MARKER_PATTERN) == pull_request_number:
            return
        body = set_marker(issue.body, PRODUCTION_PR_MARKER_PATTERN, PRODUCTION_PR_MARKER.format(number=pull_request_number))
        await self.client.update_issue(issue_number, body)

    async def _nothing_to_integrate(self, source_revision: str, production_revision: str) -> bool:
        """Whether upstream and integration are both already contained in production."""
        upstream_in_production = await self.git.is_ancestor(source_revision, production_revision)
        integration_ahead = await self.git.rev_list_count(production_revision, self.integration_ref)
        return upstream_in_production and integration_ahead == 0

    async def _open_conflict_pull_request(self, issue_number: int) -> Any | None:
        """Open conflict PR against integration that belongs to this tracking issue, if any."""
        pull_requests = await self.client.find_open_pull_requests(CONFLICT_LABEL, base=self.config.fork_integration_branch)
        return next((pr for pr in pull_requests if references_tracking_issue(pr, issue_number)), None)

    async def _open_production_pull_request(self, issue_number: int) -> Any | None:
        """Open production PR that belongs to this tracking issue, if any."""
        pull_requests = await self.client.find_open_pull_requests(UPSTREAM_SYNC_LABEL, base=self.config.production_branch)
        return next((pr for pr in pull_requests if references_tracking_issue(pr, issue_number)), None)

    async def _open_records(self, issue_number: int, label: str) -> list[Any]:
        """Open conflict or validation failure records that belong to this tracking issue."""
        records = await self.client.list_issues(labels=[label], state="open")
        return [record for record in records if references_tracking_issue(record, issue_number)]

    async def _close_records(self, issue_number: int, label: str, message: str) -> None:
        """Close records of this tracking issue that the current run has resolved."""
        for record in await self._open_records(issue_number, label):
            await self.client.comment_on_issue(record.number, message)
            await self.client.close_issue(record.number)
            logger.info("Closed resolved record", record_issue=record.number, label=label, tracking_issue=issue_number)

    async def _propagate(self, run: CascadeRun, production_revision: str, source_revision: str) -> CascadeRun:
        """Merge the captured revisions into integration, then validate and open the production PR."""
        run.stage = CascadeStage.MERGING_INTEGRATION
        await self.git.create_branch(self.config.fork_integration_branch, self.integration_ref)

        merges = ((self.production_ref, production_revision, "production"), (self.upstream_ref, source_revision, "upstream"))
        for ref, revision, description in merges:
            merged_ref = f"{ref}@{revision[:12]}"
            result = await self.git.merge(
                revision,
                message=f"Merge {description} branch {merged_ref} into {self.config.fork_integration_branch}",
            )
            if not result.clean:
                return await self._block_on_conflicts(run, result, merged_ref)

        await self.git.push(self.config.fork_integration_branch)
        await self._close_records(
            run.tracking_issue,
            CONFLICT_LABEL,
            f"`{self.config.fork_integration_branch}` now merges cleanly; closing this conflict record.",
        )

        run.stage = CascadeStage.VALIDATING
        validation = await self.validation_runner.run(self.git.path)
        run.validation_result = validation
        if not validation.passed:
            return await self._fail_validation(run, validation)

        await self._close_records(
            run.tracking_issue,
            VALIDATION_FAILED_LABEL,
            f"Validation of `{self.config.fork_integration_branch}` now passes; closing this failure record.",
        )
        return await self._open_production_pr(run)

    async def _block_on_conflicts(self, run: CascadeRun, result: MergeResult, merged_ref: str) -> CascadeRun:
        """Publish the conflicted merge for human resolution and block the tracking issue."""
        run.record_conflicts(result.conflict_files)
        conflict_branch = generate_timestamped_branch_name(CONFLICT_BRANCH_PREFIX)
        await self.git.commit_all(f"Conflicted merge of {merged_ref} into {self.config.fork_integration_branch}\n\nResolve the conflict markers in this branch.")
        await self.git.create_branch(conflict_branch, "HEAD")
        await self.git.push(conflict_branch)
        run.conflict_branch = conflict_branch

        tracking_marker = TRACKING_ISSUE_MARKER.format(number=run.tracking_issue)
        pr_body = render_packaged_template(
            "conflict_pr_body.j2",
            tracking_issue=run.tracking_issue,
            merged_ref=merged_ref,
            integration_branch=self.config.fork_integration_branch,
            conflict_branch=conflict_branch,
            conflict_files=list(result.conflict_files),
            tracking_marker=tracking_marker,
        )
        conflict_pr = await self.client.create_pull_request(
            base=self.config.fork_integration_branch,
            head=conflict_branch,
            title=f"Resolve conflicts merging {merged_ref} into {self.config.fork_integration_branch}",
            body=fit_body_to_limit(pr_body),
            labels=[CONFLICT_LABEL, CASCADE_BLOCKED_LABEL, HUMAN_REQUIRED_LABEL],
        )
        run.conflict_pr = conflict_pr.number

        existing_records = await self._open_records(run.tracking_issue, CONFLICT_LABEL)
        if existing_records:
            record_number = existing_records[0].number
            await self.client.comment_on_issue(
                record_number,
                f"Conflicts recurred in {len(result.conflict_files)} file(s); resolve them in conflict PR #{conflict_pr.number}.",
            )
        else:
            sla_deadline = utc_now() + timedelta(hours=self.config.conflict_sla_hours)
            record_body = render_packaged_template(
                "conflict_issue.j2",
                tracking_issue=run.tracking_issue,
                conflict_pr=conflict_pr.number,
                merged_ref=merged_ref,
                integration_branch=self.config.fork_integration_branch,
                conflict_branch=conflict_branch,
                conflict_files=list(result.conflict_files),
                sla_hours=self.config.conflict_sla_hours,
                sla_deadline=format_timestamp(sla_deadline),
                tracking_marker=tracking_marker,
            )
            record = await self.client.create_issue(
                title=f"Merge conflicts blocking upstream sync #{run.tracking_issue}",
                body=fit_body_to_limit(record_body),
                labels=[CONFLICT_LABEL, CASCADE_BLOCKED_LABEL, HIGH_PRIORITY_LABEL, HUMAN_REQUIRED_LABEL],
            )
            record_number = record.number
        run.record_issue = record_number

        await self.tracker.transition(
            run.tracking_issue,
            LifecycleState.CASCADE_BLOCKED,
            f"Merging `{merged_ref}` into `{self.config.fork_integration_branch}` conflicted in {len(result.conflict_files)} file(s). "
            f"Resolve them in #{conflict_pr.number} (details in #{record_number}); the cascade resumes after that PR is merged.",
            current=LifecycleState.CASCADE_ACTIVE,
        )
        logger.info("Cascade blocked on conflicts", tracking_issue=run.tracking_issue, conflict_pr=conflict_pr.number, files=list(result.conflict_files))
        return run.finish(CascadeOutcome.CONFLICT, CascadeStage.CONFLICT_BLOCKED)

    async def _fail_validation(self, run: CascadeRun, validation: ValidationResult) -> CascadeRun:
        """Record a validation failure and hand the tracking issue back to a human."""
        sla_deadline = utc_now() + timedelta(hours=self.config.conflict_sla_hours)
        record_body = render_packaged_template(
            "validation_failure_issue.j2",
            tracking_issue=run.tracking_issue,
            integration_branch=self.config.fork_integration_branch,
            source_revision=run.source_revision or "unknown",
            failed_command=validation.failed_command or "unknown",
            exit_code=validation.exit_code,
            log_path=str(validation.log_path) if validation.log_path else "not recorded",
            log_excerpt=validation.log_excerpt,
            sla_hours=self.config.conflict_sla_hours,
            sla_deadline=format_timestamp(sla_deadline),
            tracking_marker=TRACKING_ISSUE_MARKER.format(number=run.tracking_issue),
        )
        record = await self.client.create_issue(
            title=f"Validation failed for upstream sync #{run.tracking_issue}",
            body=fit_body_to_limit(record_body),
            labels=[VALIDATION_FAILED_LABEL, HIGH_PRIORITY_LABEL, HUMAN_REQUIRED_LABEL],
        )
        run.record_issue = record.number
        await self.tracker.transition(
            run.tracking_issue,
            LifecycleState.CASCADE_FAILED,
            f"Validation failed on `{validation.failed_command}` (see #{record.number}). Fix `{self.config.fork_integration_branch}`, "
            f"then remove the `{HUMAN_REQUIRED_LABEL}` label to let the monitor retry.",
            current=LifecycleState.CASCADE_ACTIVE,
        )
        logger.info("Cascade stopped on validation failure", tracking_issue=run.tracking_issue, record_issue=record.number)
        return run.finish(CascadeOutcome.VALIDATION_FAILED, CascadeStage.VALIDATION_FAILED)

    async def _open_production_pr(self, run: CascadeRun) -> CascadeRun:
        """Branch a release branch off integration and propose it for production."""
        release_branch = generate_timestamped_branch_name(RELEASE_BRANCH_PREFIX)
        await self.git.create_branch(release_branch, "HEAD")
        await self.git.push(release_branch)
        production_base = run.production_revision or self.production_ref

        subjects = await self.git.log_subjects(production_base, release_branch, limit=MAX_COMMIT_SUMMARY_LINES)
        total_commits = await self.git.rev_list_count(production_base, release_branch)
        messages = await self.git.commit_messages(production_base, release_branch)
        breaking_changes = [message.splitlines()[0] for message in messages if BREAKING_CHANGE_PATTERN.search(message)]
        body = render_packaged_template(
            "production_pr_body.j2",
            tracking_issue=run.tracking_issue,
            source_revision=run.source_revision or "unknown",
            integration_branch=self.config.fork_integration_branch,
            production_branch=self.config.production_branch,
            release_branch=release_branch,
            commit_subjects=subjects,
            total_commits=total_commits,
            max_commit_lines=MAX_COMMIT_SUMMARY_LINES,
            diff_summary=await self.git.diff_summary(production_base, release_branch),
            breaking_changes=breaking_changes,
            validation_duration=run.validation_result.duration_seconds if run.validation_result else 0.0,
            tracking_marker=TRACKING_ISSUE_MARKER.format(number=run.tracking_issue),
        )
        production_pr = await self.client.create_pull_request(
            base=self.config.production_branch,
            head=release_branch,
            title=f"Promote upstream sync #{run.tracking_issue} to {self.config.production_branch}",
            body=fit_body_to_limit(body),
            labels=[UPSTREAM_SYNC_LABEL, HUMAN_REQUIRED_LABEL],
        )
        run.record_production_pr(production_pr.number, release_branch)
        await self._record_production_pull_request(run.tracking_issue, production_pr.number)
        await self.tracker.transition(
            run.tracking_issue,
            LifecycleState.VALIDATED,
            f"Validation passed. Production PR #{production_pr.number} is ready for review; "
            "this issue closes once it is merged.",
            current=LifecycleState.CASCADE_ACTIVE,
        )
        logger.info("Production PR opened", tracking_issue=run.tracking_issue, production_pr=production_pr.number, release_branch=release_branch)
        return run.finish(CascadeOutcome.PRODUCTION_PR_CREATED)

    async def _handle_failure(self, run: CascadeRun, exc: Exception) -> None:
        """Surface an unexpected error through a failure issue and the CASCADE_FAILED state."""
        logger.exception("Cascade failed unexpectedly", tracking_issue=run.tracking_issue, stage=run.stage.value)
        await self.git.abort_merge()
        run.error = f"{type(exc).__name__}: {exc}"
        body = render_packaged_template(
            "cascade_failure_issue.j2",
            tracking_issue=run.tracking_issue,
            stage=run.stage.value,
            error=run.error,
            source_revision=run.source_revision or "unknown",
            tracking_marker=TRACKING_ISSUE_MARKER.format(number=run.tracking_issue),
        )
        record = await self.client.create_issue(
            title=f"Cascade failed for upstream sync #{run.tracking_issue}",
            body=fit_body_to_limit(body),
            labels=[HIGH_PRIORITY_LABEL, HUMAN_REQUIRED_LABEL],
        )
        run.record_issue = record.number
        state, _ = await self.tracker.read_state(run.tracking_issue)
        if state is not LifecycleState.CASCADE_ACTIVE:
            # The run already handed the issue to a human before failing.
            await self.tracker.annotate(run.tracking_issue, f"The cascade failed after reaching `{state.value}`; see #{record.number}.")
            run.finish(CascadeOutcome.FAILED)
            return
        await self.tracker.transition(
            run.tracking_issue,
            LifecycleState.CASCADE_FAILED,
            f"The cascade failed during `{run.stage.value}` (see #{record.number}). Remove the `{HUMAN_REQUIRED_LABEL}` label once "
            "the cause is fixed to let the monitor retry.",
            current=state,
        )
        run.finish(CascadeOutcome.FAILED)
