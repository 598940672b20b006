"""Reconcile command line options, environment settings and GitHub authentication configuration."""

from pathlib import Path
from urllib.parse import urlparse

from fork_sync_manager.configuration.exceptions import (
    GitHubAuthenticationConfigurationUndefinedError,
    InvalidConfigurationValueError,
    RequiredConfigurationElementError,
)
from fork_sync_manager.configuration.models import GitHubAuthenticationType, OrchestratorConfig
from fork_sync_manager.utils.github import split_repository_in_configuration


async def validate_github_authentication_configuration(
    github_pat_token: str | None,
    github_app_id: int | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: int | None,
) -> GitHubAuthenticationType:
    """Validates the GitHub authentication configuration.

    Args:
        github_pat_token (str | None): The GitHub PAT token.
        github_app_id (int | None): The GitHub App ID.
        github_app_private_key_path (str | None): The path to the GitHub App private key.
        github_app_installation_id (int | None): The GitHub App installation ID.

    Raises:
        GitHubAuthenticationConfigurationUndefinedError: If both PAT and App configurations are defined, or neither is complete.

    Returns:
        GitHubAuthenticationType: The type of GitHub authentication used.
    """
    if github_pat_token and (github_app_id or github_app_private_key_path or github_app_installation_id):
        raise GitHubAuthenticationConfigurationUndefinedError("Both PAT and GitHub App configurations are defined. Please use one or the other.")

    if github_pat_token:
        return GitHubAuthenticationType.PAT

    if github_app_id and github_app_private_key_path and github_app_installation_id:
        return GitHubAuthenticationType.APP
    elif github_app_id or github_app_private_key_path or github_app_installation_id:
        missing_settings: list[dict[str, str]] = []
        if not github_app_id:
            missing_settings.append({"name": "GitHub App ID", "cli_name": "github_app_id", "env_name": "GITHUB_APP_ID"})
        if not github_app_private_key_path:
            missing_settings.append(
                {"name": "GitHub App private key path", "cli_name": "github_app_private_key_path", "env_name": "GITHUB_APP_PRIVATE_KEY_PATH"}
            )
        if not github_app_installation_id:
            missing_settings.append(
                {"name": "GitHub App installation ID", "cli_name": "github_app_installation_id", "env_name": "GITHUB_APP_INSTALLATION_ID"}
            )
        msg = "Incomplete GitHub App configuration - missing settings include " + ", ".join(
            f"{setting['name']} (command line option {setting['cli_name']}, environment variable {setting['env_name']})"
            for setting in missing_settings
        )
        raise GitHubAuthenticationConfigurationUndefinedError(msg)
    else:
        raise GitHubAuthenticationConfigurationUndefinedError(
            "No GitHub authentication configuration provided. Please provide either a PAT or a GitHub App configuration."
        )


def parse_validation_commands(raw_commands: str | None) -> tuple[str, ...]:
    """Split the configured validation pipeline into individual commands.

    Commands are separated by newlines or by ``;;``. Blank entries and lines
    starting with ``#`` are ignored.
    """
    if not raw_commands:
        return ()
    commands: list[str] = []
    for line in raw_commands.splitlines():
        for command in line.split(";;"):
            command = command.strip()
            if command and not command.startswith("#"):
                commands.append(command)
    return tuple(commands)


def default_origin_repo_url(github_api_url: str, repo: str) -> str:
    """Derive the clone URL of the fork from the GitHub API URL.

    ``https://api.github.com`` maps to ``https://github.com``; GitHub Enterprise
    Server API URLs such as ``https://ghe.example.com/api/v3`` map to their host.
    """
    parsed = urlparse(github_api_url)
    host = parsed.netloc
    if host.startswith("api."):
        host = host.removeprefix("api.")
    return f"{parsed.scheme or 'https'}://{host}/{repo.strip('/')}.git"


async def reconcile_orchestrator_configuration(
    repo: str,
    upstream_repo_url: str | None,
    workspace_dir: Path,
    state_dir: Path,
    origin_repo_url: str | None = None,
    github_api_url: str = "https://api.github.com",
    upstream_branch: str = "main",
    fork_upstream_branch: str = "fork_upstream",
    fork_integration_branch: str = "fork_integration",
    production_branch: str = "main",
    validation_commands: str | None = None,
    git_timeout_seconds: float = 600.0,
    api_timeout_seconds: float = 30.0,
    validation_timeout_seconds: float = 3600.0,
    description_timeout_seconds: float = 60.0,
    lock_timeout_seconds: float = 1800.0,
    conflict_sla_hours: int = 48,
    abandoned_branch_hours: int = 24,
    anthropic_api_key: str | None = None,
    anthropic_model: str = "claude-3-5-haiku-20241022",
) -> OrchestratorConfig:
    """Build the resolved configuration for one repository instance.

    Raises:
        RequiredConfigurationElementError: If the upstream repository URL is missing.
        InvalidConfigurationValueError: If branch names collide or a timeout is not positive.
    """
    await split_repository_in_configuration(repo=repo)

    if not upstream_repo_url:
        raise RequiredConfigurationElementError(name="Upstream repository URL", cli_name="--upstream-repo-url", env_name="UPSTREAM_REPO_URL")

    if len({fork_upstream_branch, fork_integration_branch, production_branch}) != 3:
        raise InvalidConfigurationValueError(
            "The upstream-tracking, integration and production branches must be distinct: "
            f"{fork_upstream_branch!r}, {fork_integration_branch!r}, {production_branch!r}"
        )

    timeouts = {
        "GIT_TIMEOUT_SECONDS": git_timeout_seconds,
        "API_TIMEOUT_SECONDS": api_timeout_seconds,
        "VALIDATION_TIMEOUT_SECONDS": validation_timeout_seconds,
        "DESCRIPTION_TIMEOUT_SECONDS": description_timeout_seconds,
        "LOCK_TIMEOUT_SECONDS": lock_timeout_seconds,
    }
    for env_name, value in timeouts.items():
        if value <= 0:
            raise InvalidConfigurationValueError(f"{env_name} must be positive, got {value}")

    if conflict_sla_hours <= 0 or abandoned_branch_hours <= 0:
        raise InvalidConfigurationValueError("CONFLICT_SLA_HOURS and ABANDONED_BRANCH_HOURS must be positive")

    return OrchestratorConfig(
        repo=repo.strip("/"),
        upstream_repo_url=upstream_repo_url,
        workspace_dir=workspace_dir,
        state_dir=state_dir,
        origin_repo_url=origin_repo_url or default_origin_repo_url(github_api_url, repo),
        upstream_branch=upstream_branch,
        fork_upstream_branch=fork_upstream_branch,
        fork_integration_branch=fork_integration_branch,
        production_branch=production_branch,
        validation_commands=parse_validation_commands(validation_commands),
        git_timeout_seconds=git_timeout_seconds,
        api_timeout_seconds=api_timeout_seconds,
        validation_timeout_seconds=validation_timeout_seconds,
        description_timeout_seconds=description_timeout_seconds,
        lock_timeout_seconds=lock_timeout_seconds,
        conflict_sla_hours=conflict_sla_hours,
        abandoned_branch_hours=abandoned_branch_hours,
        anthropic_api_key=anthropic_api_key or None,
        anthropic_model=anthropic_model,
    )
