"""General utility functions and helper classes."""

from datetime import datetime, timezone

from fork_sync_manager.utils.constants import BRANCH_TIMESTAMP_FORMAT, BRANCH_TIMESTAMP_PATTERN


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def timestamp_slug(now: datetime | None = None) -> str:
    """Format a moment as a sortable slug like '20240101-120000'."""
    if now is None:
        now = utc_now()
    return now.strftime(BRANCH_TIMESTAMP_FORMAT)


def generate_timestamped_branch_name(prefix: str, now: datetime | None = None) -> str:
    """Generate an ephemeral branch name like 'release/upstream-20240101-120000'."""
    return f"{prefix}{timestamp_slug(now)}"


def parse_branch_timestamp(branch_name: str) -> datetime | None:
    """Parse the UTC creation time from a timestamped branch name.

    Returns None when the branch name carries no parseable timestamp suffix.
    """
    match = BRANCH_TIMESTAMP_PATTERN.search(branch_name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), BRANCH_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def format_timestamp(moment: datetime) -> str:
    """Format a datetime for human-readable comments and issue bodies."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
