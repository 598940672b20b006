"""Utility modules for shared functionality."""

from .constants import (
    CASCADE_ACTIVE_LABEL,
    CASCADE_BLOCKED_LABEL,
    CASCADE_FAILED_LABEL,
    HUMAN_REQUIRED_LABEL,
    UPSTREAM_SYNC_LABEL,
    VALIDATED_LABEL,
)
from .retry import retry_on_exception, retry_on_github_error

__all__ = [
    "HUMAN_REQUIRED_LABEL",
    "CASCADE_ACTIVE_LABEL",
    "CASCADE_BLOCKED_LABEL",
    "CASCADE_FAILED_LABEL",
    "VALIDATED_LABEL",
    "UPSTREAM_SYNC_LABEL",
    "retry_on_github_error",
    "retry_on_exception",
]
