"""Pure decision logic selecting the action of a sync run."""

from typing import Any, Sequence

from fork_sync_manager.state.models import SyncAction, SyncState
from fork_sync_manager.synchronize.models import SyncAttempt


def select_existing_pull_request(state: SyncState, open_sync_prs: Sequence[Any]) -> int | None:
    """Pick the open sync PR the run should act on.

    Prefers the PR recorded in the state, then the oldest open sync PR.
    """
    numbers = sorted(pull_request.number for pull_request in open_sync_prs)
    if not numbers:
        return None
    if state.open_sync_pr in numbers:
        return state.open_sync_pr
    return numbers[0]


def decide_sync_action(upstream_head: str, state: SyncState, open_sync_prs: Sequence[Any]) -> SyncAttempt:
    """Select exactly one action for the current upstream head.

    The head is compared against the tracked revision: the revision of the
    cycle in progress when there is one, otherwise the last fully synced one.

    Args:
        upstream_head: Current head revision of the upstream branch.
        state: Sync state after reconciliation against GitHub.
        open_sync_prs: Open pull requests labeled as sync PRs, as reported by GitHub.

    Returns:
        The attempt describing the chosen action.
    """
    tracked_revision = state.tracked_revision
    existing_pr = select_existing_pull_request(state, open_sync_prs)
    head_is_tracked = tracked_revision is not None and upstream_head == tracked_revision

    if existing_pr is None and not head_is_tracked:
        action = SyncAction.CREATE_NEW
    elif existing_pr is not None and head_is_tracked:
        action = SyncAction.REMIND
    elif existing_pr is not None:
        action = SyncAction.UPDATE_EXISTING
    else:
        action = SyncAction.NOOP

    return SyncAttempt(upstream_head=upstream_head, tracked_revision=tracked_revision, action=action, existing_pr=existing_pr)
