"""Persists one SyncState document per repository instance."""

from pathlib import Path

import structlog
from pydantic import ValidationError
from ruamel.yaml.error import YAMLError

from fork_sync_manager.state.exceptions import SyncStateCorruptError
from fork_sync_manager.state.models import SyncState
from fork_sync_manager.utils.yaml import dump_yaml_to_file_atomically, load_yaml_file

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class SyncStateStore:
    """Reads and atomically overwrites the YAML sync state of a repository.

    Documents are never deleted. Concurrent writers follow last-writer-wins.
    """

    def __init__(self, state_dir: Path, repository: str) -> None:
        """Initialize the store for ``repository`` ('owner/repo') under ``state_dir``."""
        self.state_dir = state_dir
        self.repository = repository.strip("/")
        self.path = state_dir / f"{self.repository.replace('/', '__')}.state.yaml"

    def load(self) -> SyncState:
        """Load the persisted state, or an empty state when none has been written yet.

        Raises:
            SyncStateCorruptError: If the document cannot be parsed, fails validation, or belongs to another repository.
        """
        if not self.path.exists():
            logger.info("No sync state recorded yet", path=str(self.path), repository=self.repository)
            return SyncState(repository=self.repository)
        try:
            content = load_yaml_file(self.path)
        except (YAMLError, UnicodeDecodeError) as exc:
            logger.error("Sync state is not valid YAML", path=str(self.path), error=str(exc))
            raise SyncStateCorruptError(self.path, f"unparseable YAML: {exc}") from exc
        if not isinstance(content, dict):
            logger.error("Sync state is not a mapping", path=str(self.path), content_type=type(content).__name__)
            raise SyncStateCorruptError(self.path, "document is not a mapping")
        try:
            state = SyncState.model_validate(content)
        except ValidationError as exc:
            logger.error("Sync state failed validation", path=str(self.path), error=str(exc))
            raise SyncStateCorruptError(self.path, f"invalid fields: {exc}") from exc
        if state.repository != self.repository:
            raise SyncStateCorruptError(self.path, f"recorded repository {state.repository!r} does not match {self.repository!r}")
        return state

    def save(self, state: SyncState) -> None:
        """Overwrite the persisted state atomically."""
        if state.repository != self.repository:
            raise ValueError(f"Cannot save state for {state.repository!r} in the store for {self.repository!r}")
        dump_yaml_to_file_atomically(state.model_dump(mode="json"), self.path)
        logger.info(
            "Saved sync state",
            path=str(self.path),
            last_synced_upstream_revision=state.last_synced_upstream_revision,
            pending_upstream_revision=state.pending_upstream_revision,
            open_sync_pr=state.open_sync_pr,
            open_tracking_issue=state.open_tracking_issue,
            last_action=state.last_action.value if state.last_action else None,
        )
