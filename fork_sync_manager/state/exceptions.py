"""Contains exceptions raised by the sync state store and the repository lock."""

from pathlib import Path


class SyncStateCorruptError(Exception):
    """Raised when a persisted sync state document cannot be parsed or validated.

    The document is never reset automatically; an operator has to inspect it.
    """

    def __init__(self, path: Path, reason: str) -> None:
        """Initializes the exception with the offending path and the reason."""
        super().__init__(f"Sync state at {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason


class RepositoryLockTimeoutError(Exception):
    """Raised when the repository lock could not be acquired within the timeout."""

    def __init__(self, lock_path: Path, timeout: float, owner_detail: str) -> None:
        """Initializes the exception with the lock path and its current owner."""
        super().__init__(f"Timed out after {timeout} seconds waiting for {lock_path}{owner_detail}")
        self.lock_path = lock_path
        self.timeout = timeout
