"""Value types produced by the sync decision engine."""

from dataclasses import dataclass, field

from fork_sync_manager.state.models import SyncAction


@dataclass(frozen=True)
class SyncAttempt:
    """One invocation of the decision engine."""

    upstream_head: str
    tracked_revision: str | None
    action: SyncAction
    existing_pr: int | None = None


@dataclass(frozen=True)
class DescriptionContext:
    """Facts about an upstream change used to describe a sync pull request."""

    upstream_repo_url: str
    upstream_branch: str
    fork_upstream_branch: str
    upstream_head: str
    previous_revision: str | None
    commit_subjects: tuple[str, ...] = field(default_factory=tuple)
    total_commits: int = 0
    changed_files: tuple[str, ...] = field(default_factory=tuple)
    diff_summary: str = ""
