"""Pydantic model of the persisted per-repository sync state."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class SyncAction(str, Enum):
    """Action selected by the sync decision engine for one invocation."""

    CREATE_NEW = "create_new"
    UPDATE_EXISTING = "update_existing"
    REMIND = "remind"
    NOOP = "noop"


class SyncState(BaseModel):
    """Durable record of the synchronization cycle for one repository instance.

    ``pending_upstream_revision`` is the revision proposed by the open (or
    merged but not yet completed) sync cycle. ``last_synced_upstream_revision``
    only moves once that cycle's tracking issue has been closed.
    """

    model_config = ConfigDict(extra="forbid")

    repository: str
    last_synced_upstream_revision: str | None = None
    pending_upstream_revision: str | None = None
    open_sync_pr: int | None = None
    open_tracking_issue: int | None = None
    last_attempt_timestamp: datetime | None = None
    last_action: SyncAction | None = None

    @property
    def tracked_revision(self) -> str | None:
        """Revision that upstream head is compared against."""
        return self.pending_upstream_revision or self.last_synced_upstream_revision
