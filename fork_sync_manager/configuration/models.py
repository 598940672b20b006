"""Models for configuration between CLI arguments and environment variables."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from fork_sync_manager.utils.constants import DEFAULT_ABANDONED_BRANCH_HOURS, DEFAULT_CONFLICT_SLA_HOURS


class GitHubAuthenticationType(str, Enum):
    """Enum for GitHub authentication types."""

    PAT = "pat"
    APP = "app"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Resolved configuration for one repository instance.

    A single instance is built by the CLI and passed explicitly into every
    engine; nothing reads configuration from module-level state.
    """

    repo: str
    upstream_repo_url: str
    workspace_dir: Path
    state_dir: Path
    origin_repo_url: str | None = None
    upstream_branch: str = "main"
    fork_upstream_branch: str = "fork_upstream"
    fork_integration_branch: str = "fork_integration"
    production_branch: str = "main"
    validation_commands: tuple[str, ...] = ()
    git_timeout_seconds: float = 600.0
    api_timeout_seconds: float = 30.0
    validation_timeout_seconds: float = 3600.0
    description_timeout_seconds: float = 60.0
    lock_timeout_seconds: float = 1800.0
    conflict_sla_hours: int = DEFAULT_CONFLICT_SLA_HOURS
    abandoned_branch_hours: int = DEFAULT_ABANDONED_BRANCH_HOURS
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-3-5-haiku-20241022"
    git_user_name: str = "fork-sync-manager"
    git_user_email: str = "fork-sync-manager@users.noreply.github.com"

    @property
    def repository_key(self) -> str:
        """Filesystem-safe key identifying the repository instance."""
        return self.repo.strip("/").replace("/", "__")

    @property
    def repository_workspace(self) -> Path:
        """Working copy used for git operations on this repository."""
        return self.workspace_dir / self.repository_key
