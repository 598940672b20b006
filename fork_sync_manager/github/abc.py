"""Base ABC for GitHub clients."""

from abc import ABC, abstractmethod
from typing import Any, Literal


class GitHubClientBase(ABC):
    """Base ABC for the hosting operations the orchestrator consumes.

    The interface is deliberately narrow so that engines can be exercised
    against an in-memory implementation in tests.
    """

    # Issue operations
    @abstractmethod
    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> Any:
        """Create an issue for a repository."""
        pass

    @abstractmethod
    async def get_issue(self, issue_number: int) -> Any:
        """Get an issue for a repository."""
        pass

    @abstractmethod
    async def list_issues(self, labels: list[str] | None = None, state: Literal["open", "closed", "all"] = "open") -> list[Any]:
        """List issues (excluding pull requests) carrying all of the given labels."""
        pass

    @abstractmethod
    async def edit_issue_labels(self, issue_number: int, add: list[str] | None = None, remove: list[str] | None = None) -> None:
        """Add and remove labels on an issue or pull request."""
        pass

    @abstractmethod
    async def comment_on_issue(self, issue_number: int, body: str) -> Any:
        """Append a comment to an issue or pull request."""
        pass

    @abstractmethod
    async def update_issue(self, issue_number: int, body: str) -> Any:
        """Replace the body of an issue."""
        pass

    @abstractmethod
    async def close_issue(self, issue_number: int) -> Any:
        """Close an issue for a repository."""
        pass

    # Pull request operations
    @abstractmethod
    async def create_pull_request(self, base: str, head: str, title: str, body: str, labels: list[str] | None = None) -> Any:
        """Create a pull request and apply labels to it."""
        pass

    @abstractmethod
    async def get_pull_request(self, pull_request_number: int) -> Any:
        """Get a pull request for a repository."""
        pass

    @abstractmethod
    async def update_pull_request(
        self,
        pull_number: int,
        title: str | None = None,
        body: str | None = None,
        state: Literal["open", "closed"] | None = None,
    ) -> Any:
        """Update a pull request for a repository."""
        pass

    @abstractmethod
    async def list_pull_requests(
        self,
        state: Literal["open", "closed", "all"] = "open",
        base: str | None = None,
        head: str | None = None,
    ) -> list[Any]:
        """List pull requests for a repository."""
        pass

    @abstractmethod
    async def find_open_pull_requests(self, label: str, base: str | None = None) -> list[Any]:
        """List open pull requests carrying a label, optionally filtered by base branch."""
        pass
