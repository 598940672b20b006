"""Contains results of the upstream synchronization workflow."""

from fork_sync_manager.state.models import SyncState
from fork_sync_manager.synchronize.models import SyncAttempt


class UpstreamSyncResult:
    """Contains results of one upstream synchronization run."""

    def __init__(
        self,
        attempt: SyncAttempt,
        state: SyncState,
        sync_pr: int | None = None,
        tracking_issue: int | None = None,
        state_written: bool = False,
        deleted_branches: list[str] | None = None,
    ) -> None:
        """Initialize the result with the attempt, the resulting state and the artifacts touched."""
        self.attempt = attempt
        self.state = state
        self.sync_pr = sync_pr
        self.tracking_issue = tracking_issue
        self.state_written = state_written
        self.deleted_branches = deleted_branches or []
