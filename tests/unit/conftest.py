"""Fixtures for unit tests."""

from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Generator, Literal

import pytest
import structlog

from fork_sync_manager.cascade.models import ValidationResult
from fork_sync_manager.configuration.models import OrchestratorConfig
from fork_sync_manager.github.abc import GitHubClientBase
from fork_sync_manager.utils.constants import SYNC_PR_MARKER
from fork_sync_manager.utils.github import extract_label_names
from fork_sync_manager.utils.helpers import utc_now
from fork_sync_manager.vcs.models import MergeResult

UPSTREAM_HEAD = "a" * 40
PRODUCTION_HEAD = "d" * 40


@pytest.fixture(autouse=True)
def configure_structlog_for_caplog() -> Generator[None, None, None]:
    """Configure structlog for use with caplog."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    yield
    structlog.reset_defaults()


class FakeGitHubClient(GitHubClientBase):
    """In-memory stand-in for the hosting API.

    Issues and pull requests share one number sequence, like on GitHub, and
    are returned as SimpleNamespace objects shaped like githubkit models.
    """

    def __init__(self) -> None:
        """Start with an empty repository."""
        self.issues: dict[int, SimpleNamespace] = {}
        self.pulls: dict[int, SimpleNamespace] = {}
        self.comments: list[tuple[int, str]] = []
        self.next_number = 1

    def _allocate(self) -> int:
        number = self.next_number
        self.next_number += 1
        return number

    # Test helpers
    def add_issue(
        self,
        title: str = "Upstream sync",
        body: str = "",
        labels: list[str] | None = None,
        state: str = "open",
        created_at: datetime | None = None,
    ) -> SimpleNamespace:
        """Seed an issue directly."""
        number = self._allocate()
        issue = SimpleNamespace(
            number=number,
            title=title,
            body=body,
            labels=[SimpleNamespace(name=label) for label in labels or []],
            state=state,
            created_at=created_at or utc_now(),
            pull_request=None,
        )
        self.issues[number] = issue
        return issue

    def add_pull_request(
        self,
        base: str,
        head: str,
        body: str = "",
        labels: list[str] | None = None,
        state: str = "open",
        merged: bool = False,
        head_sha: str = "b" * 40,
        title: str = "Pull request",
    ) -> SimpleNamespace:
        """Seed a pull request directly."""
        number = self._allocate()
        pull_request = SimpleNamespace(
            number=number,
            title=title,
            body=body,
            labels=[SimpleNamespace(name=label) for label in labels or []],
            state=state,
            merged=merged,
            merged_at=utc_now() if merged else None,
            head=SimpleNamespace(ref=head, sha=head_sha),
            base=SimpleNamespace(ref=base),
            created_at=utc_now(),
        )
        self.pulls[number] = pull_request
        return pull_request

    def merge_pull_request(self, number: int) -> None:
        """Mark a pull request as merged."""
        pull_request = self.pulls[number]
        pull_request.state = "closed"
        pull_request.merged = True
        pull_request.merged_at = utc_now()

    def set_labels(self, number: int, labels: list[str]) -> None:
        """Replace the labels of an issue, the way a person editing labels would."""
        self._item(number).labels = [SimpleNamespace(name=label) for label in labels]

    def labels_of(self, number: int) -> set[str]:
        """Label names of an issue or pull request."""
        return extract_label_names(self._item(number).labels)

    def comments_on(self, number: int) -> list[str]:
        """Bodies of the comments posted on an issue or pull request."""
        return [body for target, body in self.comments if target == number]

    def issues_labeled(self, label: str, state: str = "open") -> list[SimpleNamespace]:
        """Issues carrying a label."""
        return [issue for issue in self.issues.values() if label in extract_label_names(issue.labels) and (state == "all" or issue.state == state)]

    def _item(self, number: int) -> SimpleNamespace:
        if number in self.issues:
            return self.issues[number]
        return self.pulls[number]

    # GitHubClientBase
    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> Any:
        """Create an issue."""
        return self.add_issue(title=title, body=body, labels=labels)

    async def get_issue(self, issue_number: int) -> Any:
        """Get an issue."""
        return self.issues[issue_number]

    async def list_issues(self, labels: list[str] | None = None, state: Literal["open", "closed", "all"] = "open") -> list[Any]:
        """List issues carrying every given label."""
        wanted = set(labels or [])
        return [
            issue
            for issue in self.issues.values()
            if wanted <= extract_label_names(issue.labels) and (state == "all" or issue.state == state)
        ]

    async def edit_issue_labels(self, issue_number: int, add: list[str] | None = None, remove: list[str] | None = None) -> None:
        """Add and remove labels."""
        item = self._item(issue_number)
        names = [label.name for label in item.labels]
        for label in add or []:
            if label not in names:
                names.append(label)
        names = [name for name in names if name not in set(remove or [])]
        item.labels = [SimpleNamespace(name=name) for name in names]

    async def comment_on_issue(self, issue_number: int, body: str) -> Any:
        """Record a comment."""
        self._item(issue_number)
        self.comments.append((issue_number, body))
        return SimpleNamespace(body=body)

    async def update_issue(self, issue_number: int, body: str) -> Any:
        """Replace the body of an issue."""
        issue = self.issues[issue_number]
        issue.body = body
        return issue

    async def close_issue(self, issue_number: int) -> Any:
        """Close an issue."""
        issue = self.issues[issue_number]
        issue.state = "closed"
        return issue

    async def create_pull_request(self, base: str, head: str, title: str, body: str, labels: list[str] | None = None) -> Any:
        """Create a pull request."""
        return self.add_pull_request(base=base, head=head, body=body, labels=labels, title=title)

    async def get_pull_request(self, pull_request_number: int) -> Any:
        """Get a pull request."""
        return self.pulls[pull_request_number]

    async def update_pull_request(
        self,
        pull_number: int,
        title: str | None = None,
        body: str | None = None,
        state: Literal["open", "closed"] | None = None,
    ) -> Any:
        """Update a pull request."""
        pull_request = self.pulls[pull_number]
        if title is not None:
            pull_request.title = title
        if body is not None:
            pull_request.body = body
        if state is not None:
            pull_request.state = state
        return pull_request

    async def list_pull_requests(
        self,
        state: Literal["open", "closed", "all"] = "open",
        base: str | None = None,
        head: str | None = None,
    ) -> list[Any]:
        """List pull requests."""
        return [
            pull_request
            for pull_request in self.pulls.values()
            if (state == "all" or pull_request.state == state)
            and (base is None or pull_request.base.ref == base)
            and (head is None or pull_request.head.ref == head)
        ]

    async def find_open_pull_requests(self, label: str, base: str | None = None) -> list[Any]:
        """List open pull requests carrying a label."""
        return [pull_request for pull_request in await self.list_pull_requests(state="open", base=base) if label in extract_label_names(pull_request.labels)]


class FakeGitRepository:
    """Scripted stand-in for GitRepository that records what the engines asked for."""

    def __init__(self, path: Path) -> None:
        """Start with a fork whose upstream-tracking branch is one commit ahead of integration."""
        self.path = path
        self.upstream_head: str | None = UPSTREAM_HEAD
        self.revisions: dict[str, str] = {"origin/main": PRODUCTION_HEAD}
        self.ancestors: set[tuple[str, str]] = set()
        self.counts: dict[tuple[str, str], int] = {}
        self.default_count = 1
        self.conflicts: dict[str, tuple[str, ...]] = {}
        self.merge_errors: dict[str, Exception] = {}
        self.remote_branches: list[str] = []
        self.subjects = ["abc1234 Add upstream feature"]
        self.messages = ["Add upstream feature"]
        self.remotes: dict[str, str] = {}
        self.fetched: list[tuple[str, str | None]] = []
        self.created_branches: list[tuple[str, str]] = []
        self.pushed: list[tuple[str, bool, str | None]] = []
        self.deleted: list[str] = []
        self.merged: list[str] = []
        self.commits: list[str] = []
        self.aborted = 0

    async def ensure_clone(self, url: str | None) -> None:
        """Nothing to clone."""

    async def ensure_remote(self, name: str, url: str) -> None:
        """Record the remote."""
        self.remotes[name] = url

    async def fetch(self, remote: str, branch: str | None = None) -> str | None:
        """Return the scripted upstream head for branch fetches."""
        self.fetched.append((remote, branch))
        return self.upstream_head if branch is not None else None

    async def push(self, branch: str, force: bool = False, expected_revision: str | None = None, remote: str = "origin") -> None:
        """Record the push."""
        self.pushed.append((branch, force, expected_revision))

    async def delete_remote_branch(self, branch: str, remote: str = "origin") -> None:
        """Record the deletion."""
        self.deleted.append(branch)

    async def rev_parse(self, ref: str) -> str:
        """Return the scripted revision of a ref."""
        return self.revisions.get(ref, UPSTREAM_HEAD)

    async def create_branch(self, name: str, start_point: str) -> None:
        """Record the branch."""
        self.created_branches.append((name, start_point))

    async def list_remote_branches(self, prefix: str = "", remote: str = "origin") -> list[str]:
        """Return the scripted remote branches with the prefix."""
        return [branch for branch in self.remote_branches if branch.startswith(prefix)]

    async def rev_list_count(self, base: str, head: str) -> int:
        """Return the scripted commit count."""
        return self.counts.get((base, head), self.default_count)

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Return the scripted ancestry."""
        return (ancestor, descendant) in self.ancestors

    async def log_subjects(self, base: str, head: str, limit: int | None = None) -> list[str]:
        """Return the scripted subjects."""
        return self.subjects[:limit] if limit is not None else list(self.subjects)

    async def commit_messages(self, base: str, head: str) -> list[str]:
        """Return the scripted messages."""
        return list(self.messages)

    async def diff_stat(self, base: str, head: str) -> list[str]:
        """Return a fixed file list."""
        return ["src/feature.py"]

    async def diff_summary(self, base: str, head: str) -> str:
        """Return a fixed summary."""
        return "1 file changed, 10 insertions(+)"

    async def merge(self, ref: str, message: str | None = None) -> MergeResult:
        """Merge cleanly unless the ref is scripted to conflict or fail."""
        if ref in self.merge_errors:
            raise self.merge_errors[ref]
        self.merged.append(ref)
        if ref in self.conflicts:
            return MergeResult(ref=ref, clean=False, conflict_files=self.conflicts[ref])
        return MergeResult(ref=ref, clean=True)

    async def abort_merge(self) -> None:
        """Record the abort."""
        self.aborted += 1

    async def commit_all(self, message: str) -> bool:
        """Record the commit."""
        self.commits.append(message)
        return True


class FakeValidationRunner:
    """Validation runner returning a scripted result."""

    def __init__(self, result: ValidationResult | None = None) -> None:
        """Pass by default."""
        self.result = result or ValidationResult(passed=True, log_excerpt="ok", duration_seconds=1.5)
        self.runs: list[Path] = []

    async def run(self, workdir: Path) -> ValidationResult:
        """Record the run and return the scripted result."""
        self.runs.append(workdir)
        return self.result


def hours_ago(hours: float) -> datetime:
    """A UTC moment ``hours`` in the past."""
    return utc_now() - timedelta(hours=hours)


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    """Configuration of a fork rooted in a temporary directory."""
    return OrchestratorConfig(
        repo="octo/fork",
        upstream_repo_url="https://github.com/upstream/project.git",
        workspace_dir=tmp_path / "workspace",
        state_dir=tmp_path / "state",
        origin_repo_url="https://github.com/octo/fork.git",
        lock_timeout_seconds=0.3,
    )


@pytest.fixture
def github_client() -> FakeGitHubClient:
    """Empty in-memory hosting API."""
    return FakeGitHubClient()


@pytest.fixture
def git_repository(tmp_path: Path) -> FakeGitRepository:
    """Scripted git gateway."""
    return FakeGitRepository(tmp_path / "checkout")


@pytest.fixture
def validation_runner() -> FakeValidationRunner:
    """Validation runner that passes."""
    return FakeValidationRunner()


def seed_tracking_issue(client: FakeGitHubClient, labels: list[str] | None = None, sync_pr_merged: bool = True) -> SimpleNamespace:
    """Create a tracking issue awaiting the cascade, referencing its sync PR."""
    sync_pr = client.add_pull_request(
        base="fork_upstream",
        head="sync/upstream-20240101-000000",
        labels=["upstream-sync"],
        merged=sync_pr_merged,
        state="closed" if sync_pr_merged else "open",
    )
    return client.add_issue(
        body=f"Tracking\n{SYNC_PR_MARKER.format(number=sync_pr.number)}",
        labels=labels if labels is not None else ["upstream-sync", "human-required"],
    )
