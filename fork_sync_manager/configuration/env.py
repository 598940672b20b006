"""Pydantic Settings model for application configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from fork_sync_manager.utils.constants import DEFAULT_ABANDONED_BRANCH_HOURS, DEFAULT_CONFLICT_SLA_HOURS


class Settings(BaseSettings):
    """Environment variable settings for the application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Generic application-wide settings
    DEBUG: bool = False

    # GitHub API settings
    GITHUB_API_URL: str = "https://api.github.com"
    REPO: str | None = None

    # GitHub PAT settings
    GITHUB_PAT_TOKEN: str | None = None

    # GitHub App settings
    GITHUB_APP_ID: str | None = None
    GITHUB_APP_PRIVATE_KEY_PATH: Path | None = None
    GITHUB_APP_INSTALLATION_ID: str | None = None

    # Branch pipeline settings
    UPSTREAM_REPO_URL: str | None = None
    ORIGIN_REPO_URL: str | None = None
    UPSTREAM_BRANCH: str = "main"
    FORK_UPSTREAM_BRANCH: str = "fork_upstream"
    FORK_INTEGRATION_BRANCH: str = "fork_integration"
    PRODUCTION_BRANCH: str = "main"

    # Local directories
    WORKSPACE_DIR: Path = Path(".fork-sync/workspace")
    STATE_DIR: Path = Path(".fork-sync/state")

    # Validation pipeline, one shell-style command per line or separated by ';;'
    VALIDATION_COMMANDS: str = ""

    # Timeouts in seconds
    GIT_TIMEOUT_SECONDS: float = 600.0
    API_TIMEOUT_SECONDS: float = 30.0
    VALIDATION_TIMEOUT_SECONDS: float = 3600.0
    DESCRIPTION_TIMEOUT_SECONDS: float = 60.0
    LOCK_TIMEOUT_SECONDS: float = 1800.0

    # Deadlines in hours
    CONFLICT_SLA_HOURS: int = DEFAULT_CONFLICT_SLA_HOURS
    ABANDONED_BRANCH_HOURS: int = DEFAULT_ABANDONED_BRANCH_HOURS

    # Optional PR description generation
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-20241022"


def get_settings() -> Settings:
    """Load settings from the environment and any .env file."""
    return Settings()
