"""Sets up the authenticated githubkit client used for one repository instance."""

from pathlib import Path
from typing import Any, TypeAlias

import structlog
from githubkit import GitHub
from githubkit.auth import AppAuthStrategy, AppInstallationAuthStrategy, TokenAuthStrategy

from fork_sync_manager.configuration.models import GitHubAuthenticationType
from fork_sync_manager.utils.github import split_repository_in_configuration

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

GitHubClient: TypeAlias = GitHub[AppInstallationAuthStrategy] | GitHub[TokenAuthStrategy]

USER_AGENT = "fork-sync-manager"


def _client_options(github_api_url: str, timeout: float) -> dict[str, Any]:
    """Options shared by every client.

    Responses are never cached, since labels and PR states must be re-read on
    every run. githubkit's own retries are disabled because the adapter retries
    with a bounded budget.
    """
    return {"base_url": github_api_url, "http_cache": False, "auto_retry": False, "timeout": timeout, "user_agent": USER_AGENT}


async def get_github_app_client(
    repo: str,
    github_app_id: int,
    github_app_private_key_path: Path,
    github_api_url: str,
    timeout: float,
) -> GitHub[AppInstallationAuthStrategy]:
    """Returns a client authenticated as the GitHub App installation on the fork."""
    try:
        private_key = github_app_private_key_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Cannot read GitHub App private key {github_app_private_key_path}: {exc}") from exc

    app_client = GitHub(AppAuthStrategy(app_id=github_app_id, private_key=private_key), **_client_options(github_api_url, timeout))
    owner, repository = await split_repository_in_configuration(repo=repo)
    try:
        response = await app_client.rest.apps.async_get_repo_installation(owner=owner, repo=repository)
    except Exception as exc:
        raise ValueError(f"Failed to get GitHub App installation for {repo}: {exc}") from exc
    installation_id = response.parsed_data.id
    logger.debug("Resolved GitHub App installation", repo=repo, installation_id=installation_id)
    return app_client.with_auth(app_client.auth.as_installation(installation_id))


async def get_github_client(
    repo: str,
    github_auth_type: GitHubAuthenticationType,
    github_pat_token: str | None,
    github_app_id: int | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: int | None,
    github_api_url: str,
    timeout: float = 30.0,
) -> GitHubClient:
    """Returns an authenticated GitHub client using either GitHub App or PAT credentials.

    Supports custom base URL for GitHub Enterprise Server (GHES). Every request
    made through the client is bounded by ``timeout`` seconds. The installation
    is looked up from the repository, so ``github_app_installation_id`` is only
    checked for presence.
    """
    if github_auth_type == GitHubAuthenticationType.APP:
        if not (github_app_id and github_app_private_key_path and github_app_installation_id):
            raise RuntimeError("GitHub App authentication requires app_id, private_key_path, and installation_id in config.")
        return await get_github_app_client(repo, github_app_id, github_app_private_key_path, github_api_url, timeout)
    if github_auth_type == GitHubAuthenticationType.PAT:
        if not github_pat_token:
            raise RuntimeError("GitHub PAT authentication requires github_pat_token in config.")
        return GitHub(TokenAuthStrategy(github_pat_token), **_client_options(github_api_url, timeout))
    raise RuntimeError(f"Unsupported GitHub authentication type: {github_auth_type}")
