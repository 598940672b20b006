"""Unit tests for the sync decision engine."""

from types import SimpleNamespace

import pytest

from fork_sync_manager.state.models import SyncAction, SyncState
from fork_sync_manager.synchronize.decision import decide_sync_action, select_existing_pull_request

HEAD = "1" * 40
OLD = "0" * 40


def open_prs(*numbers: int) -> list[SimpleNamespace]:
    """Open sync PRs with the given numbers."""
    return [SimpleNamespace(number=number) for number in numbers]


@pytest.mark.parametrize(
    "state,prs,expected_action,expected_pr",
    [
        pytest.param(SyncState(repository="octo/fork"), [], SyncAction.CREATE_NEW, None, id="first_run"),
        pytest.param(SyncState(repository="octo/fork", last_synced_upstream_revision=OLD), [], SyncAction.CREATE_NEW, None, id="upstream_moved"),
        pytest.param(SyncState(repository="octo/fork", last_synced_upstream_revision=HEAD), [], SyncAction.NOOP, None, id="already_synced"),
        pytest.param(
            SyncState(repository="octo/fork", pending_upstream_revision=HEAD, open_sync_pr=5),
            open_prs(5),
            SyncAction.REMIND,
            5,
            id="open_pr_for_head",
        ),
        pytest.param(
            SyncState(repository="octo/fork", pending_upstream_revision=OLD, open_sync_pr=5),
            open_prs(5),
            SyncAction.UPDATE_EXISTING,
            5,
            id="open_pr_for_older_head",
        ),
        pytest.param(
            SyncState(repository="octo/fork", pending_upstream_revision=HEAD),
            [],
            SyncAction.NOOP,
            None,
            id="pending_cycle_merged",
        ),
        pytest.param(
            SyncState(repository="octo/fork", last_synced_upstream_revision=HEAD),
            open_prs(8),
            SyncAction.REMIND,
            8,
            id="untracked_open_pr_for_head",
        ),
    ],
)
def test_decide_sync_action(state: SyncState, prs: list[SimpleNamespace], expected_action: SyncAction, expected_pr: int | None) -> None:
    """Each combination of tracked revision and open sync PR selects exactly one action."""
    attempt = decide_sync_action(HEAD, state, prs)

    assert attempt.action is expected_action
    assert attempt.existing_pr == expected_pr
    assert attempt.upstream_head == HEAD
    assert attempt.tracked_revision == state.tracked_revision


def test_pending_revision_takes_precedence_over_last_synced() -> None:
    """The cycle in progress is what upstream head is compared against."""
    state = SyncState(repository="octo/fork", last_synced_upstream_revision=OLD, pending_upstream_revision=HEAD)

    assert state.tracked_revision == HEAD
    assert decide_sync_action(HEAD, state, []).action is SyncAction.NOOP


@pytest.mark.parametrize(
    "recorded,numbers,expected",
    [
        pytest.param(None, (), None, id="none_open"),
        pytest.param(None, (9, 4), 4, id="oldest_when_unrecorded"),
        pytest.param(9, (4, 9), 9, id="recorded_wins"),
        pytest.param(3, (4, 9), 4, id="recorded_closed"),
    ],
)
def test_select_existing_pull_request(recorded: int | None, numbers: tuple[int, ...], expected: int | None) -> None:
    """The recorded PR is preferred, then the oldest open one."""
    state = SyncState(repository="octo/fork", open_sync_pr=recorded)

    assert select_existing_pull_request(state, open_prs(*numbers)) == expected
