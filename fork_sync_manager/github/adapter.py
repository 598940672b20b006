"""GitHub client adapter for the githubkit library."""

from functools import wraps
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Self, TypeVar

import structlog
from githubkit import Response
from githubkit.exception import RequestFailed
from githubkit.versions.latest.models import (
    Issue,
    IssueComment,
    PullRequest,
    PullRequestSimple,
)

from fork_sync_manager.configuration.models import GitHubAuthenticationType
from fork_sync_manager.utils.github import extract_label_names, split_repository_in_configuration
from fork_sync_manager.utils.retry import retry_on_github_error

from .abc import GitHubClientBase
from .client import GitHubClient, get_github_client

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def handle_github_422(func: F) -> F:
    """Decorator to handle GitHub 422 Unprocessable Entity errors, logging and raising with details."""

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except RequestFailed as exc:
            if exc.response.status_code == 422:
                try:
                    error_data = exc.response.json()
                except Exception:
                    error_data = {}
                message = error_data.get("message", "Unprocessable Entity")
                errors = error_data.get("errors", [])
                logger.error(
                    "GitHub 422 Unprocessable Entity",
                    function=func.__name__,
                    message=message,
                    errors=errors,
                    url=getattr(exc.response, "url", None),
                    status_code=422,
                )
                raise ValueError(
                    f"GitHub 422 error in {func.__name__}: {message} | errors: {errors} | url: {getattr(exc.response, 'url', None)}"
                ) from exc
            raise

    return wrapper  # type: ignore


class GitHubKitAdapter(GitHubClientBase):
    """GitHub client adapter for the githubkit library."""

    def __init__(self, client: GitHubClient, owner: str, repo_name: str) -> None:
        """Initialize the GitHub client adapter with an already-initialized client."""
        self.client = client
        self.owner = owner
        self.repo_name = repo_name

    def _omit_null_parameters(self, **kwargs: Any) -> dict[str, Any]:
        """Omit parameters that are None."""
        return {k: v for k, v in kwargs.items() if v is not None}

    @classmethod
    async def create(
        cls,
        repo: str,
        github_auth_type: GitHubAuthenticationType,
        github_pat_token: str | None = None,
        github_app_id: int | None = None,
        github_app_private_key_path: Path | None = None,
        github_app_installation_id: int | None = None,
        github_api_url: str = "https://api.github.com",
        timeout: float = 30.0,
    ) -> Self:
        """Create a new GitHub client adapter.

        Args:
            repo: Repository in 'owner/repo' format
            github_auth_type: Type of authentication (PAT or APP)
            github_pat_token: Personal access token (required for PAT auth)
            github_app_id: GitHub App ID (required for APP auth)
            github_app_private_key_path: Path to private key file (required for APP auth)
            github_app_installation_id: Installation ID (required for APP auth)
            github_api_url: GitHub API URL (defaults to https://api.github.com)
            timeout: Per-request timeout in seconds

        Returns:
            Configured GitHubKitAdapter instance
        """
        owner, repo_name = await split_repository_in_configuration(repo=repo)
        logger.info(
            "Creating client for GitHub instance and repository",
            github_api_url=github_api_url,
            owner=owner,
            repo_name=repo_name,
        )
        client = await get_github_client(
            repo=repo,
            github_auth_type=github_auth_type,
            github_pat_token=github_pat_token,
            github_app_id=github_app_id,
            github_app_private_key_path=github_app_private_key_path,
            github_app_installation_id=github_app_installation_id,
            github_api_url=github_api_url,
            timeout=timeout,
        )
        return cls(client, owner, repo_name)

    # Issue operations
    @handle_github_422
    @retry_on_github_error()
    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> Issue:
        """Create an issue for a repository."""
        params = self._omit_null_parameters(title=title, body=body, labels=labels)
        response: Response[Issue] = await self.client.rest.issues.async_create(
            owner=self.owner,
            repo=self.repo_name,
            **params,
        )
        logger.info("Created issue", issue_number=response.parsed_data.number, title=title, labels=labels)
        return response.parsed_data

    @retry_on_github_error()
    async def get_issue(self, issue_number: int) -> Issue:
        """Get an issue for a repository."""
        response: Response[Issue] = await self.client.rest.issues.async_get(owner=self.owner, repo=self.repo_name, issue_number=issue_number)
        return response.parsed_data

    @retry_on_github_error()
    async def list_issues(
        self, labels: list[str] | None = None, state: Literal["open", "closed", "all"] = "open", per_page: int = 100
    ) -> list[Issue]:
        """List all issues carrying every given label, handling pagination and excluding pull requests."""
        all_issues: list[Issue] = []
        page: int = 1
        params = self._omit_null_parameters(labels=",".join(labels) if labels else None)
        while True:
            response: Response[list[Issue]] = await self.client.rest.issues.async_list_for_repo(
                owner=self.owner,
                repo=self.repo_name,
                state=state,
                per_page=per_page,
                page=page,
                **params,
            )
            issues: list[Issue] = response.parsed_data
            if not issues:
                break
            # The issues endpoint also returns pull requests.
            all_issues.extend(issue for issue in issues if not getattr(issue, "pull_request", None))
            if len(issues) < per_page:
                break
            page += 1
        return all_issues

    @handle_github_422
    @retry_on_github_error()
    async def edit_issue_labels(self, issue_number: int, add: list[str] | None = None, remove: list[str] | None = None) -> None:
        """Add and remove labels on an issue or pull request, leaving unrelated labels untouched."""
        if add:
            await self.client.rest.issues.async_add_labels(
                owner=self.owner,
                repo=self.repo_name,
                issue_number=issue_number,
                labels=add,
            )
        for label in remove or []:
            try:
                await self.client.rest.issues.async_remove_label(
                    owner=self.owner,
                    repo=self.repo_name,
                    issue_number=issue_number,
                    name=label,
                )
            except RequestFailed as exc:
                if exc.response.status_code != 404:
                    raise
                logger.debug("Label already absent from issue", issue_number=issue_number, label=label)
        logger.info("Edited issue labels", issue_number=issue_number, added=add or [], removed=remove or [])

    @handle_github_422
    @retry_on_github_error()
    async def comment_on_issue(self, issue_number: int, body: str) -> IssueComment:
        """Append a comment to an issue or pull request."""
        response: Response[IssueComment] = await self.client.rest.issues.async_create_comment(
            owner=self.owner,
            repo=self.repo_name,
            issue_number=issue_number,
            body=body,
        )
        return response.parsed_data

    @handle_github_422
    @retry_on_github_error()
    async def update_issue(self, issue_number: int, body: str) -> Issue:
        """Replace the body of an issue for a repository."""
        response: Response[Issue] = await self.client.rest.issues.async_update(
            owner=self.owner,
            repo=self.repo_name,
            issue_number=issue_number,
            body=body,
        )
        return response.parsed_data

    @handle_github_422
    @retry_on_github_error()
    async def close_issue(self, issue_number: int) -> Issue:
        """Close an issue for a repository."""
        response: Response[Issue] = await self.client.rest.issues.async_update(
            owner=self.owner,
            repo=self.repo_name,
            issue_number=issue_number,
            state="closed",
        )
        logger.info("Closed issue", issue_number=issue_number)
        return response.parsed_data

    # Pull request operations
    @handle_github_422
    @retry_on_github_error()
    async def create_pull_request(self, base: str, head: str, title: str, body: str, labels: list[str] | None = None) -> PullRequest:
        """Create a pull request for a repository and apply labels to it."""
        response: Response[PullRequest] = await self.client.rest.pulls.async_create(
            owner=self.owner,
            repo=self.repo_name,
            title=title,
            head=head,
            base=base,
            body=body,
        )
        pull_request = response.parsed_data
        if labels:
            await self.client.rest.issues.async_add_labels(
                owner=self.owner,
                repo=self.repo_name,
                issue_number=pull_request.number,
                labels=labels,
            )
        logger.info("Created pull request", pull_request_number=pull_request.number, base=base, head=head, labels=labels)
        return pull_request

    @retry_on_github_error()
    async def get_pull_request(self, pull_request_number: int) -> PullRequest:
        """Get a pull request from the repository."""
        response: Response[PullRequest] = await self.client.rest.pulls.async_get(
            owner=self.owner, repo=self.repo_name, pull_number=pull_request_number
        )
        return response.parsed_data

    @handle_github_422
    @retry_on_github_error()
    async def update_pull_request(
        self,
        pull_number: int,
        title: str | None = None,
        body: str | None = None,
        state: Literal["open", "closed"] | None = None,
    ) -> PullRequest:
        """Update a pull request for a repository."""
        params = self._omit_null_parameters(title=title, body=body, state=state)
        response: Response[PullRequest] = await self.client.rest.pulls.async_update(
            owner=self.owner,
            repo=self.repo_name,
            pull_number=pull_number,
            **params,
        )
        return response.parsed_data

    @retry_on_github_error()
    async def list_pull_requests(
        self,
        state: Literal["open", "closed", "all"] = "open",
        base: str | None = None,
        head: str | None = None,
        per_page: int = 100,
    ) -> list[PullRequestSimple]:
        """List all pull requests for a repository, handling pagination."""
        all_pull_requests: list[PullRequestSimple] = []
        page: int = 1
        # The API expects head in 'owner:branch' form.
        params = self._omit_null_parameters(base=base, head=f"{self.owner}:{head}" if head else None)
        while True:
            response: Response[list[PullRequestSimple]] = await self.client.rest.pulls.async_list(
                owner=self.owner,
                repo=self.repo_name,
                state=state,
                per_page=per_page,
                page=page,
                **params,
            )
            pull_requests: list[PullRequestSimple] = response.parsed_data
            if not pull_requests:
                break
            all_pull_requests.extend(pull_requests)
            if len(pull_requests) < per_page:
                break
            page += 1
        return all_pull_requests

    async def find_open_pull_requests(self, label: str, base: str | None = None) -> list[PullRequestSimple]:
        """List open pull requests carrying a label, optionally filtered by base branch."""
        pull_requests = await self.list_pull_requests(state="open", base=base)
        return [pull_request for pull_request in pull_requests if label in extract_label_names(pull_request.labels)]
