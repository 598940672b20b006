"""Contains utility functions for GitHub interactions."""

import re
from typing import Any, Sequence

from fork_sync_manager.utils.constants import TRACKING_ISSUE_MARKER_PATTERN
from fork_sync_manager.utils.types import HasName, LabelType


async def split_repository_in_configuration(repo: str | None) -> tuple[str, str]:
    """Splits the repository in the configuration into owner and repository."""
    if repo is None:
        raise ValueError("A repository in 'owner/repo' format is required.")
    repo = repo.strip("/")
    parts = repo.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError("Repository must be in the format 'owner/repo' with no leading/trailing slashes or extra parts.")
    owner, repository = parts
    return owner, repository


def extract_label_names(labels: Sequence[LabelType] | None) -> set[str]:
    """Extract label names from a list of GitHub label objects, strings, or dicts."""
    names: set[str] = set()
    for label in labels or []:
        if isinstance(label, str):
            names.add(label)
        elif isinstance(label, dict) and "name" in label:
            names.add(label["name"])
        elif isinstance(label, HasName):
            names.add(label.name)
    return names


def find_marker_value(body: str | None, pattern: re.Pattern[str]) -> str | None:
    """Return the first captured value of a hidden body marker, if present."""
    if not body:
        return None
    match = pattern.search(body)
    if match is None:
        return None
    return match.group(1)


def find_marker_number(body: str | None, pattern: re.Pattern[str]) -> int | None:
    """Return the issue or pull request number recorded by a hidden body marker, if present."""
    value = find_marker_value(body, pattern)
    return int(value) if value is not None else None


def set_marker(body: str | None, pattern: re.Pattern[str], marker: str) -> str:
    """Return ``body`` with the marker matching ``pattern`` replaced by ``marker``, or appended."""
    body = body or ""
    if pattern.search(body):
        return pattern.sub(lambda _: marker, body, count=1)
    return f"{body.rstrip()}\n{marker}\n" if body.strip() else f"{marker}\n"


def head_ref_of(pull_request: Any) -> str | None:
    """Return the head branch name of a githubkit pull request object."""
    head = getattr(pull_request, "head", None)
    return getattr(head, "ref", None)


def base_ref_of(pull_request: Any) -> str | None:
    """Return the base branch name of a githubkit pull request object."""
    base = getattr(pull_request, "base", None)
    return getattr(base, "ref", None)


def pull_request_is_merged(pull_request: Any) -> bool:
    """Whether a githubkit pull request object has been merged."""
    return bool(getattr(pull_request, "merged", False) or getattr(pull_request, "merged_at", None))


def is_closed(issue_or_pull_request: Any) -> bool:
    """Whether a githubkit issue or pull request object is closed."""
    return getattr(issue_or_pull_request, "state", "open") == "closed"


def references_tracking_issue(issue_or_pull_request: Any, tracking_issue: int) -> bool:
    """Whether a body carries the hidden marker linking it to ``tracking_issue``."""
    return find_marker_number(getattr(issue_or_pull_request, "body", None), TRACKING_ISSUE_MARKER_PATTERN) == tracking_issue
