"""Utilities for truncating issue and pull request body content to fit within GitHub's character limits."""

import structlog

from fork_sync_manager.utils.constants import DEFAULT_MAX_ISSUE_BODY_LENGTH, TRUNCATION_PREFIX, TRUNCATION_SUFFIX

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def truncate_string_at_end(
    content: str,
    max_length: int,
    truncation_suffix: str = TRUNCATION_SUFFIX,
) -> tuple[str, bool]:
    """Truncate a string at the end if it exceeds max_length.

    Args:
        content: The string to potentially truncate.
        max_length: Maximum allowed length for the result (including truncation suffix).
        truncation_suffix: Template for truncation indicator with {remaining} placeholder.

    Returns:
        Tuple of (truncated_content, was_truncated).
        If truncation occurs, the result includes the truncation suffix.
    """
    if not content or len(content) <= max_length:
        return content, False

    remaining_chars = len(content) - max_length
    suffix = truncation_suffix.format(remaining=remaining_chars)

    truncate_at = max_length - len(suffix)
    if truncate_at <= 0:
        # max_length is smaller than the suffix itself
        return content[:max_length], True

    return content[:truncate_at] + suffix, True


def truncate_string_at_start(
    content: str,
    max_length: int,
    truncation_prefix: str = TRUNCATION_PREFIX,
) -> tuple[str, bool]:
    """Truncate a string at the start if it exceeds max_length, keeping the tail.

    Build and test logs report failures at the end, so the tail is the part
    worth keeping in an issue body.

    Args:
        content: The string to potentially truncate.
        max_length: Maximum allowed length for the result (including truncation prefix).
        truncation_prefix: Template for truncation indicator with {remaining} placeholder.

    Returns:
        Tuple of (truncated_content, was_truncated).
    """
    if not content or len(content) <= max_length:
        return content, False

    remaining_chars = len(content) - max_length
    prefix = truncation_prefix.format(remaining=remaining_chars)

    keep = max_length - len(prefix)
    if keep <= 0:
        return content[-max_length:], True

    return prefix + content[-keep:], True


def fit_body_to_limit(body: str, max_length: int = DEFAULT_MAX_ISSUE_BODY_LENGTH) -> str:
    """Ensure a rendered issue or PR body fits within the configured limit."""
    truncated_body, was_truncated = truncate_string_at_end(body, max_length)
    if was_truncated:
        logger.warning(
            "Body exceeded maximum length and was truncated",
            original_length=len(body),
            max_length=max_length,
        )
    return truncated_body
