"""Unit tests for the helpers module."""

from datetime import datetime, timedelta, timezone

import pytest

from fork_sync_manager.utils.constants import CONFLICT_BRANCH_PREFIX, RELEASE_BRANCH_PREFIX, SYNC_BRANCH_PREFIX
from fork_sync_manager.utils.helpers import (
    format_timestamp,
    generate_timestamped_branch_name,
    parse_branch_timestamp,
    timestamp_slug,
    utc_now,
)

MOMENT = datetime(2024, 3, 5, 7, 8, 9, tzinfo=timezone.utc)


def test_utc_now_is_timezone_aware() -> None:
    """The current time carries UTC as its zone."""
    assert utc_now().tzinfo == timezone.utc


def test_timestamp_slug_is_sortable() -> None:
    """Slugs sort in chronological order."""
    assert timestamp_slug(MOMENT) == "20240305-070809"
    assert timestamp_slug(MOMENT) < timestamp_slug(MOMENT + timedelta(seconds=1))


@pytest.mark.parametrize(
    "prefix,expected",
    [
        pytest.param(SYNC_BRANCH_PREFIX, "sync/upstream-20240305-070809", id="sync"),
        pytest.param(RELEASE_BRANCH_PREFIX, "release/upstream-20240305-070809", id="release"),
        pytest.param(CONFLICT_BRANCH_PREFIX, "conflict/upstream-20240305-070809", id="conflict"),
    ],
)
def test_generate_timestamped_branch_name(prefix: str, expected: str) -> None:
    """Ephemeral branch names combine a prefix and a timestamp slug."""
    assert generate_timestamped_branch_name(prefix, MOMENT) == expected


def test_parse_branch_timestamp_round_trip() -> None:
    """A generated branch name yields its creation time back."""
    assert parse_branch_timestamp(generate_timestamped_branch_name(RELEASE_BRANCH_PREFIX, MOMENT)) == MOMENT


@pytest.mark.parametrize(
    "branch_name",
    [
        pytest.param("release/upstream-latest", id="no_timestamp"),
        pytest.param("release/upstream-20241399-000000", id="invalid_month"),
        pytest.param("feature/login", id="unrelated"),
    ],
)
def test_parse_branch_timestamp_rejects_unparseable(branch_name: str) -> None:
    """Branches without a valid timestamp suffix have no age."""
    assert parse_branch_timestamp(branch_name) is None


def test_format_timestamp_converts_to_utc() -> None:
    """Human-readable timestamps are always shown in UTC."""
    eastern = MOMENT.astimezone(timezone(timedelta(hours=-5)))

    assert format_timestamp(eastern) == "2024-03-05 07:08:09 UTC"
