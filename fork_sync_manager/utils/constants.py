"""Shared constants used across the application."""

# This file is intended to hold shared constants.

import re

# Lifecycle Labels
# ----------------

HUMAN_REQUIRED_LABEL = "human-required"
"""Awaiting a human: review of the sync PR, or action after a failure."""

CASCADE_ACTIVE_LABEL = "cascade-active"
"""The cascade is propagating changes for this tracking issue."""

CASCADE_BLOCKED_LABEL = "cascade-blocked"
"""The cascade halted on merge conflicts."""

CASCADE_FAILED_LABEL = "cascade-failed"
"""The cascade halted on a validation failure or an infrastructure error."""

VALIDATED_LABEL = "validated"
"""A production PR has been opened for validated changes."""

# Marker Labels
# -------------

UPSTREAM_SYNC_LABEL = "upstream-sync"
"""Marks sync PRs, production PRs and tracking issues."""

CONFLICT_LABEL = "conflict"
"""Marks conflict PRs and conflict record issues."""

VALIDATION_FAILED_LABEL = "validation-failed"
"""Marks validation failure record issues."""

HIGH_PRIORITY_LABEL = "high-priority"
"""Marks issues that need prompt human attention."""

ESCALATION_LABEL = "escalation"
"""Marks escalation issues created by the monitor."""

CASCADE_ESCALATED_LABEL = "cascade-escalated"
"""Marks records that already have an escalation issue."""

# Branch Prefixes
# ---------------

SYNC_BRANCH_PREFIX = "sync/upstream-"
"""Prefix of the branches proposed into the upstream-tracking branch."""

RELEASE_BRANCH_PREFIX = "release/upstream-"
"""Prefix of the temporary branches proposed into the production branch."""

CONFLICT_BRANCH_PREFIX = "conflict/upstream-"
"""Prefix of the branches carrying conflict markers for human resolution."""

BRANCH_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
"""Timestamp suffix used for ephemeral branch names."""

BRANCH_TIMESTAMP_PATTERN = re.compile(r"(\d{8}-\d{6})$")
"""Pattern to extract the timestamp suffix from an ephemeral branch name."""

# Body Markers
# ------------

TRACKING_ISSUE_MARKER = "<!-- fork-sync:tracking-issue={number} -->"
"""Hidden marker linking a PR or record issue to its tracking issue."""

TRACKING_ISSUE_MARKER_PATTERN = re.compile(r"<!-- fork-sync:tracking-issue=(\d+) -->")
"""Pattern to read the tracking issue marker back from a body."""

UPSTREAM_REVISION_MARKER = "<!-- fork-sync:upstream-revision={revision} -->"
"""Hidden marker recording the upstream revision a sync PR proposes."""

UPSTREAM_REVISION_MARKER_PATTERN = re.compile(r"<!-- fork-sync:upstream-revision=([0-9a-fA-F]{7,40}) -->")
"""Pattern to read the upstream revision marker back from a body."""

SYNC_PR_MARKER = "<!-- fork-sync:sync-pr={number} -->"
"""Hidden marker linking a tracking issue to its sync PR."""

SYNC_PR_MARKER_PATTERN = re.compile(r"<!-- fork-sync:sync-pr=(\d+) -->")
"""Pattern to read the sync PR marker back from a body."""

PRODUCTION_PR_MARKER = "<!-- fork-sync:production-pr={number} -->"
"""Hidden marker linking a tracking issue to its production PR."""

PRODUCTION_PR_MARKER_PATTERN = re.compile(r"<!-- fork-sync:production-pr=(\d+) -->")
"""Pattern to read the production PR marker back from a body."""

HELD_BY_MARKER = "<!-- fork-sync:held-by={number} -->"
"""Hidden marker naming the other cycle's PR a tracking issue is waiting for."""

HELD_BY_MARKER_PATTERN = re.compile(r"<!-- fork-sync:held-by=(\d+) -->")
"""Pattern to read the held-by marker back from a body."""

ESCALATES_MARKER = "<!-- fork-sync:escalates={number} -->"
"""Hidden marker linking an escalation issue to the record it escalates."""

ESCALATES_MARKER_PATTERN = re.compile(r"<!-- fork-sync:escalates=(\d+) -->")
"""Pattern to read the escalation marker back from a body."""

BREAKING_CHANGE_PATTERN = re.compile(r"BREAKING[ -]CHANGE|^\w+(\([^)]*\))?!:", re.MULTILINE)
"""Pattern to detect breaking changes in commit subjects."""

# Timing Defaults
# ---------------

DEFAULT_CONFLICT_SLA_HOURS = 48
"""Hours after which an unresolved conflict or validation failure is escalated."""

DEFAULT_ABANDONED_BRANCH_HOURS = 24
"""Hours after which a sync branch with no open PR is deleted."""

# Issue Body Truncation Constants
# -------------------------------

DEFAULT_MAX_ISSUE_BODY_LENGTH = 60000
"""Default maximum length for issue bodies (leaves margin for GitHub's 65,536 limit)."""

DEFAULT_LOG_EXCERPT_LENGTH = 20000
"""Characters of a validation log kept in a failure issue."""

TRUNCATION_SUFFIX = "\n... [truncated - {remaining} characters removed]"
"""Suffix template appended to truncated content. Use .format(remaining=N) to fill in count."""

TRUNCATION_PREFIX = "[truncated - {remaining} characters removed] ...\n"
"""Prefix template prepended when the start of content is dropped."""

MAX_COMMIT_SUMMARY_LINES = 20
"""Commit subjects listed in a PR body before summarizing the rest."""
