"""Drives the label-encoded lifecycle of tracking issues through the hosting API."""

from typing import Any

import structlog

from fork_sync_manager.github.abc import GitHubClientBase
from fork_sync_manager.lifecycle.exceptions import LifecycleTransitionError
from fork_sync_manager.lifecycle.states import (
    LifecycleState,
    can_transition,
    label_changes,
    state_from_labels,
)
from fork_sync_manager.utils.github import is_closed
from fork_sync_manager.utils.helpers import format_timestamp, utc_now

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

STATE_DESCRIPTIONS: dict[LifecycleState, str] = {
    LifecycleState.HUMAN_REQUIRED: "awaiting human action",
    LifecycleState.CASCADE_ACTIVE: "cascade running",
    LifecycleState.CASCADE_BLOCKED: "cascade blocked on merge conflicts",
    LifecycleState.CASCADE_FAILED: "cascade failed, awaiting human action",
    LifecycleState.RECOVERY_READY: "failure resolved, ready for retry",
    LifecycleState.VALIDATED: "validated, production PR open",
    LifecycleState.CLOSED: "closed",
}


def progress_comment(current: LifecycleState, target: LifecycleState, message: str) -> str:
    """Render the audit comment appended to a tracking issue on every transition."""
    return (
        f"**{format_timestamp(utc_now())}**: lifecycle moved from `{current.value}` ({STATE_DESCRIPTIONS[current]}) "
        f"to `{target.value}` ({STATE_DESCRIPTIONS[target]}).\n\n{message}"
    )


class LifecycleTracker:
    """Reads and advances the lifecycle state of tracking issues.

    GitHub labels are the only record of the state. Every transition edits the
    labels and appends a timestamped comment.
    """

    def __init__(self, client: GitHubClientBase) -> None:
        """Initialize the tracker with a hosting API client."""
        self.client = client

    async def read_state(self, issue_number: int) -> tuple[LifecycleState, Any]:
        """Fetch a tracking issue and deserialize its lifecycle state.

        Raises:
            LifecycleIntegrityError: If the labels on an open issue do not map to exactly one state.
        """
        issue = await self.client.get_issue(issue_number)
        state = state_from_labels(issue.labels, is_closed=is_closed(issue), issue_number=issue_number)
        return state, issue

    async def transition(
        self,
        issue_number: int,
        target: LifecycleState,
        message: str,
        current: LifecycleState | None = None,
    ) -> LifecycleState:
        """Move a tracking issue to ``target``.

        Args:
            issue_number: The tracking issue.
            target: The state to move to; CLOSED must go through close().
            message: Human-readable explanation appended to the progress comment.
            current: The state the caller already read; re-read from GitHub when omitted.

        Returns:
            The state the issue was in before the transition.

        Raises:
            LifecycleIntegrityError: If the issue's labels are inconsistent.
            LifecycleTransitionError: If the lifecycle does not allow the transition.
        """
        if target is LifecycleState.CLOSED:
            raise LifecycleTransitionError(issue_number, current.value if current else "unknown", target.value)
        if current is None:
            current, _ = await self.read_state(issue_number)
        if not can_transition(current, target):
            logger.error("Refusing lifecycle transition", issue_number=issue_number, current=current.value, target=target.value)
            raise LifecycleTransitionError(issue_number, current.value, target.value)
        add, remove = label_changes(current, target)
        await self.client.edit_issue_labels(issue_number, add=add, remove=remove)
        await self.client.comment_on_issue(issue_number, progress_comment(current, target, message))
        logger.info("Lifecycle transition", issue_number=issue_number, current=current.value, target=target.value, added=add, removed=remove)
        return current

    async def close(self, issue_number: int, message: str, current: LifecycleState | None = None) -> None:
        """Close a tracking issue once its production PR has been merged.

        Raises:
            LifecycleTransitionError: If the issue is not VALIDATED.
        """
        if current is None:
            current, _ = await self.read_state(issue_number)
        if current is not LifecycleState.VALIDATED:
            logger.error("Refusing to close tracking issue", issue_number=issue_number, current=current.value)
            raise LifecycleTransitionError(issue_number, current.value, LifecycleState.CLOSED.value)
        await self.client.comment_on_issue(issue_number, progress_comment(current, LifecycleState.CLOSED, message))
        await self.client.close_issue(issue_number)
        logger.info("Closed tracking issue", issue_number=issue_number)

    async def annotate(self, issue_number: int, message: str) -> None:
        """Append a timestamped comment without changing the lifecycle state."""
        await self.client.comment_on_issue(issue_number, f"**{format_timestamp(utc_now())}**: {message}")
