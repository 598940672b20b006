"""Runs the sync decision engine against the upstream repository and GitHub."""

from datetime import timedelta
from typing import Any

import structlog

from fork_sync_manager.configuration.models import OrchestratorConfig
from fork_sync_manager.github.abc import GitHubClientBase
from fork_sync_manager.lifecycle.tracker import LifecycleTracker
from fork_sync_manager.state.models import SyncAction, SyncState
from fork_sync_manager.state.store import SyncStateStore
from fork_sync_manager.synchronize.decision import decide_sync_action
from fork_sync_manager.synchronize.descriptions import DescriptionGenerator, generate_description
from fork_sync_manager.synchronize.models import DescriptionContext, SyncAttempt
from fork_sync_manager.synchronize.results import UpstreamSyncResult
from fork_sync_manager.utils.constants import (
    HUMAN_REQUIRED_LABEL,
    MAX_COMMIT_SUMMARY_LINES,
    SYNC_BRANCH_PREFIX,
    SYNC_PR_MARKER,
    TRACKING_ISSUE_MARKER,
    TRACKING_ISSUE_MARKER_PATTERN,
    UPSTREAM_REVISION_MARKER,
    UPSTREAM_REVISION_MARKER_PATTERN,
    UPSTREAM_SYNC_LABEL,
)
from fork_sync_manager.utils.github import find_marker_number, find_marker_value, head_ref_of, is_closed, pull_request_is_merged
from fork_sync_manager.utils.helpers import generate_timestamped_branch_name, parse_branch_timestamp, utc_now
from fork_sync_manager.utils.templates import render_packaged_template
from fork_sync_manager.utils.truncation import fit_body_to_limit
from fork_sync_manager.vcs.exceptions import GitCommandError
from fork_sync_manager.vcs.git import ORIGIN_REMOTE, UPSTREAM_REMOTE, GitRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def sync_pr_body(description: str, upstream_head: str, tracking_issue: int | None) -> str:
    """Assemble a sync PR body from its description and hidden markers."""
    markers = [UPSTREAM_REVISION_MARKER.format(revision=upstream_head)]
    if tracking_issue is not None:
        markers.insert(0, f"Tracking issue: #{tracking_issue}")
        markers.append(TRACKING_ISSUE_MARKER.format(number=tracking_issue))
    return fit_body_to_limit(description.rstrip() + "\n\n---\n" + "\n".join(markers) + "\n")


class UpstreamSyncEngine:
    """Decides whether the fork needs a sync PR and performs exactly one action.

    GitHub is re-queried on every run; the stored state is reconciled against
    it before deciding, so a run is safe to repeat after a crash.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        client: GitHubClientBase,
        git: GitRepository,
        store: SyncStateStore,
        description_generator: DescriptionGenerator,
    ) -> None:
        """Initialize the engine with its collaborators."""
        self.config = config
        self.client = client
        self.git = git
        self.store = store
        self.description_generator = description_generator
        self.tracker = LifecycleTracker(client)

    async def run(self) -> UpstreamSyncResult:
        """Run one sync decision and execute the selected action."""
        state = self.store.load()
        await self.git.ensure_remote(UPSTREAM_REMOTE, self.config.upstream_repo_url)
        upstream_head = await self.git.fetch(UPSTREAM_REMOTE, self.config.upstream_branch)
        if upstream_head is None:
            raise GitCommandError(["fetch", UPSTREAM_REMOTE, self.config.upstream_branch], 1, "", "upstream head could not be resolved")
        await self.git.fetch(ORIGIN_REMOTE)

        open_sync_prs = await self.client.find_open_pull_requests(UPSTREAM_SYNC_LABEL, base=self.config.fork_upstream_branch)
        if len(open_sync_prs) > 1:
            logger.warning("More than one open sync PR found", pull_requests=sorted(pr.number for pr in open_sync_prs))

        state, reconciled = await self.reconcile_state(state, open_sync_prs)
        attempt = decide_sync_action(upstream_head, state, open_sync_prs)
        logger.info(
            "Sync decision",
            action=attempt.action.value,
            upstream_head=upstream_head,
            tracked_revision=attempt.tracked_revision,
            existing_pr=attempt.existing_pr,
        )

        if attempt.action is SyncAction.CREATE_NEW:
            if await self.git.rev_list_count(f"{ORIGIN_REMOTE}/{self.config.fork_upstream_branch}", upstream_head) == 0:
                return self._already_contained(attempt, state)
            return await self._create_new(attempt, state)
        if attempt.action is SyncAction.UPDATE_EXISTING:
            return await self._update_existing(attempt, state, open_sync_prs)
        if attempt.action is SyncAction.REMIND:
            return await self._remind(attempt, state, open_sync_prs, reconciled)

        if reconciled:
            self.store.save(state)
        return UpstreamSyncResult(attempt=attempt, state=state, state_written=reconciled)

    async def reconcile_state(self, state: SyncState, open_sync_prs: list[Any]) -> tuple[SyncState, bool]:
        """Bring the stored state in line with GitHub.

        Returns:
            The reconciled state and whether it differs from the stored one.
        """
        original = state
        open_numbers = {pull_request.number for pull_request in open_sync_prs}

        if state.open_sync_pr is not None and state.open_sync_pr not in open_numbers:
            recorded = await self.client.get_pull_request(state.open_sync_pr)
            if pull_request_is_merged(recorded):
                logger.info("Recorded sync PR was merged", sync_pr=state.open_sync_pr, pending_upstream_revision=state.pending_upstream_revision)
                state = state.model_copy(update={"open_sync_pr": None})
            else:
                logger.warning("Recorded sync PR was closed without merging", sync_pr=state.open_sync_pr)
                if state.open_tracking_issue is not None:
                    await self.tracker.annotate(
                        state.open_tracking_issue,
                        f"Sync PR #{state.open_sync_pr} was closed without merging. This cycle is abandoned; "
                        "a new sync PR will be proposed when upstream differs from the last synced revision.",
                    )
                state = state.model_copy(update={"open_sync_pr": None, "pending_upstream_revision": None, "open_tracking_issue": None})

        if state.open_sync_pr is None and open_sync_prs:
            adopted = min(open_sync_prs, key=lambda pull_request: pull_request.number)
            revision = find_marker_value(adopted.body, UPSTREAM_REVISION_MARKER_PATTERN)
            tracking_issue = find_marker_number(adopted.body, TRACKING_ISSUE_MARKER_PATTERN)
            logger.info("Adopting open sync PR unknown to the stored state", sync_pr=adopted.number, revision=revision, tracking_issue=tracking_issue)
            state = state.model_copy(
                update={
                    "open_sync_pr": adopted.number,
                    "pending_upstream_revision": revision or state.pending_upstream_revision,
                    "open_tracking_issue": tracking_issue if tracking_issue is not None else state.open_tracking_issue,
                }
            )

        if state.open_sync_pr is None and state.open_tracking_issue is not None:
            tracking_issue = await self.client.get_issue(state.open_tracking_issue)
            if is_closed(tracking_issue):
                logger.info(
                    "Sync cycle completed",
                    tracking_issue=state.open_tracking_issue,
                    last_synced_upstream_revision=state.pending_upstream_revision or state.last_synced_upstream_revision,
                )
                state = state.model_copy(
                    update={
                        "last_synced_upstream_revision": state.pending_upstream_revision or state.last_synced_upstream_revision,
                        "pending_upstream_revision": None,
                        "open_tracking_issue": None,
                    }
                )

        return state, state != original

    async def _describe(self, upstream_head: str, previous_revision: str | None) -> str:
        """Collect the change summary and generate a PR description."""
        base_ref = f"{ORIGIN_REMOTE}/{self.config.fork_upstream_branch}"
        total_commits = await self.git.rev_list_count(base_ref, upstream_head)
        subjects = await self.git.log_subjects(base_ref, upstream_head, limit=MAX_COMMIT_SUMMARY_LINES)
        changed_files = await self.git.diff_stat(base_ref, upstream_head)
        diff_summary = await self.git.diff_summary(base_ref, upstream_head)
        context = DescriptionContext(
            upstream_repo_url=self.config.upstream_repo_url,
            upstream_branch=self.config.upstream_branch,
            fork_upstream_branch=self.config.fork_upstream_branch,
            upstream_head=upstream_head,
            previous_revision=previous_revision,
            commit_subjects=tuple(subjects),
            total_commits=total_commits,
            changed_files=tuple(changed_files),
            diff_summary=diff_summary,
        )
        return await generate_description(context, self.description_generator, timeout=self.config.description_timeout_seconds)

    async def _create_tracking_issue(self, upstream_head: str, sync_pr: int) -> int:
        """Open the tracking issue for a sync cycle."""
        body = render_packaged_template(
            "tracking_issue.j2",
            upstream_repo_url=self.config.upstream_repo_url,
            upstream_branch=self.config.upstream_branch,
            upstream_head=upstream_head,
            sync_pr=sync_pr,
            fork_upstream_branch=self.config.fork_upstream_branch,
            fork_integration_branch=self.config.fork_integration_branch,
            production_branch=self.config.production_branch,
            upstream_revision_marker=UPSTREAM_REVISION_MARKER.format(revision=upstream_head),
            sync_pr_marker=SYNC_PR_MARKER.format(number=sync_pr),
        )
        issue = await self.client.create_issue(
            title=f"Upstream sync: {self.config.upstream_branch} @ {upstream_head[:12]}",
            body=fit_body_to_limit(body),
            labels=[UPSTREAM_SYNC_LABEL, HUMAN_REQUIRED_LABEL],
        )
        return issue.number

    def _already_contained(self, attempt: SyncAttempt, state: SyncState) -> UpstreamSyncResult:
        """Record an upstream head that the upstream-tracking branch already has.

        A sync PR for it would have no commits. The head becomes the last synced
        revision unless a cycle is still in progress.
        """
        logger.info(
            "Upstream head already contained in the upstream-tracking branch",
            upstream_head=attempt.upstream_head,
            fork_upstream_branch=self.config.fork_upstream_branch,
        )
        noop = SyncAttempt(upstream_head=attempt.upstream_head, tracked_revision=attempt.tracked_revision, action=SyncAction.NOOP)
        if state.open_tracking_issue is not None:
            return UpstreamSyncResult(attempt=noop, state=state)

        state = state.model_copy(
            update={
                "last_synced_upstream_revision": attempt.upstream_head,
                "pending_upstream_revision": None,
                "last_attempt_timestamp": utc_now(),
                "last_action": SyncAction.NOOP,
            }
        )
        self.store.save(state)
        return UpstreamSyncResult(attempt=noop, state=state, state_written=True)

    async def _create_new(self, attempt: SyncAttempt, state: SyncState) -> UpstreamSyncResult:
        """Propose the upstream head through a new sync branch, PR and tracking issue."""
        branch = generate_timestamped_branch_name(SYNC_BRANCH_PREFIX)
        await self.git.create_branch(branch, attempt.upstream_head)
        await self.git.push(branch)

        description = await self._describe(attempt.upstream_head, attempt.tracked_revision)
        # The PR is created before the issue so that a crash in between leaves
        # a PR that the next run adopts and completes with a tracking issue.
        pull_request = await self.client.create_pull_request(
            base=self.config.fork_upstream_branch,
            head=branch,
            title=f"Sync upstream {self.config.upstream_branch} @ {attempt.upstream_head[:12]}",
            body=sync_pr_body(description, attempt.upstream_head, None),
            labels=[UPSTREAM_SYNC_LABEL, HUMAN_REQUIRED_LABEL],
        )
        tracking_issue = await self._create_tracking_issue(attempt.upstream_head, pull_request.number)
        await self.client.update_pull_request(pull_request.number, body=sync_pr_body(description, attempt.upstream_head, tracking_issue))

        state = state.model_copy(
            update={
                "pending_upstream_revision": attempt.upstream_head,
                "open_sync_pr": pull_request.number,
                "open_tracking_issue": tracking_issue,
                "last_attempt_timestamp": utc_now(),
                "last_action": SyncAction.CREATE_NEW,
            }
        )
        self.store.save(state)
        deleted = await self.delete_abandoned_branches(keep={branch})
        logger.info("Created sync PR and tracking issue", sync_pr=pull_request.number, tracking_issue=tracking_issue, branch=branch)
        return UpstreamSyncResult(
            attempt=attempt,
            state=state,
            sync_pr=pull_request.number,
            tracking_issue=tracking_issue,
            state_written=True,
            deleted_branches=deleted,
        )

    async def _update_existing(self, attempt: SyncAttempt, state: SyncState, open_sync_prs: list[Any]) -> UpstreamSyncResult:
        """Move the existing sync branch to the new upstream head and refresh the PR."""
        if attempt.existing_pr is None:
            raise ValueError(f"{attempt.action.value} requires an existing sync PR")
        pull_request = await self.client.get_pull_request(attempt.existing_pr)
        branch = head_ref_of(pull_request)
        if branch is None:
            raise ValueError(f"Sync PR #{attempt.existing_pr} has no head branch")
        previous_head = getattr(pull_request.head, "sha", None)

        await self.git.create_branch(branch, attempt.upstream_head)
        await self.git.push(branch, force=True, expected_revision=previous_head)

        tracking_issue = state.open_tracking_issue or find_marker_number(pull_request.body, TRACKING_ISSUE_MARKER_PATTERN)
        description = await self._describe(attempt.upstream_head, state.last_synced_upstream_revision)
        await self.client.update_pull_request(
            attempt.existing_pr,
            title=f"Sync upstream {self.config.upstream_branch} @ {attempt.upstream_head[:12]}",
            body=sync_pr_body(description, attempt.upstream_head, tracking_issue),
        )
        if tracking_issue is not None:
            await self.tracker.annotate(
                tracking_issue,
                f"Upstream advanced from `{(attempt.tracked_revision or 'unknown')[:12]}` to `{attempt.upstream_head[:12]}`. "
                f"Sync PR #{attempt.existing_pr} now proposes the new head.",
            )

        state = state.model_copy(
            update={
                "pending_upstream_revision": attempt.upstream_head,
                "open_sync_pr": attempt.existing_pr,
                "open_tracking_issue": tracking_issue,
                "last_attempt_timestamp": utc_now(),
                "last_action": SyncAction.UPDATE_EXISTING,
            }
        )
        self.store.save(state)
        open_heads = {head for head in (head_ref_of(pr) for pr in open_sync_prs) if head}
        deleted = await self.delete_abandoned_branches(keep=open_heads | {branch})
        logger.info("Updated sync PR", sync_pr=attempt.existing_pr, branch=branch, upstream_head=attempt.upstream_head)
        return UpstreamSyncResult(
            attempt=attempt,
            state=state,
            sync_pr=attempt.existing_pr,
            tracking_issue=tracking_issue,
            state_written=True,
            deleted_branches=deleted,
        )

    async def _remind(self, attempt: SyncAttempt, state: SyncState, open_sync_prs: list[Any], reconciled: bool) -> UpstreamSyncResult:
        """Nudge reviewers about the open sync PR, repairing a missing tracking issue."""
        if attempt.existing_pr is None:
            raise ValueError(f"{attempt.action.value} requires an existing sync PR")
        sync_pr = next(pr for pr in open_sync_prs if pr.number == attempt.existing_pr)
        tracking_issue = state.open_tracking_issue or find_marker_number(sync_pr.body, TRACKING_ISSUE_MARKER_PATTERN)
        write_state = reconciled

        if tracking_issue is None:
            logger.warning("Open sync PR has no tracking issue, creating one", sync_pr=attempt.existing_pr)
            tracking_issue = await self._create_tracking_issue(attempt.upstream_head, attempt.existing_pr)
            body = sync_pr.body or ""
            await self.client.update_pull_request(
                attempt.existing_pr,
                body=fit_body_to_limit(body.rstrip() + f"\nTracking issue: #{tracking_issue}\n{TRACKING_ISSUE_MARKER.format(number=tracking_issue)}\n"),
            )
            state = state.model_copy(update={"open_tracking_issue": tracking_issue})
            write_state = True

        reminder = (
            f"Reminder: sync PR #{attempt.existing_pr} proposing upstream `{attempt.upstream_head[:12]}` "
            f"into `{self.config.fork_upstream_branch}` is still awaiting review."
        )
        await self.client.comment_on_issue(attempt.existing_pr, reminder)
        await self.tracker.annotate(tracking_issue, reminder)

        if write_state:
            self.store.save(state)
        return UpstreamSyncResult(
            attempt=attempt,
            state=state,
            sync_pr=attempt.existing_pr,
            tracking_issue=tracking_issue,
            state_written=write_state,
        )

    async def delete_abandoned_branches(self, keep: set[str]) -> list[str]:
        """Delete sync branches older than the configured age that no open PR uses.

        Failures are logged and skipped; cleanup never fails a run.
        """
        open_pull_requests = await self.client.list_pull_requests(state="open")
        in_use = keep | {head for head in (head_ref_of(pr) for pr in open_pull_requests) if head}
        cutoff = utc_now() - timedelta(hours=self.config.abandoned_branch_hours)
        deleted: list[str] = []
        for branch in await self.git.list_remote_branches(SYNC_BRANCH_PREFIX):
            created = parse_branch_timestamp(branch)
            if branch in in_use or created is None or created > cutoff:
                continue
            try:
                await self.git.delete_remote_branch(branch)
            except GitCommandError as exc:
                logger.warning("Could not delete abandoned sync branch", branch=branch, error=str(exc))
                continue
            deleted.append(branch)
        if deleted:
            logger.info("Deleted abandoned sync branches", branches=deleted)
        return deleted
