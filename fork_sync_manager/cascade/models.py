"""Value types describing one run of the branch propagation engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from fork_sync_manager.cascade.exceptions import CascadeInvariantError
from fork_sync_manager.utils.helpers import utc_now


class CascadeStage(str, Enum):
    """Stage reached by a cascade run."""

    STARTED = "started"
    MERGING_INTEGRATION = "merging_integration"
    CONFLICT_BLOCKED = "conflict_blocked"
    VALIDATING = "validating"
    VALIDATION_FAILED = "validation_failed"
    PRODUCTION_PR_CREATED = "production_pr_created"
    CLOSED = "closed"


class CascadeOutcome(str, Enum):
    """How a cascade run ended."""

    NOOP_CLOSED = "noop_closed"
    NOOP_ALREADY_VALIDATED = "noop_already_validated"
    NOOP_AWAITING_HUMAN = "noop_awaiting_human"
    NOOP_CONFLICT_PR_OPEN = "noop_conflict_pr_open"
    NOOP_PRODUCTION_PR_EXISTS = "noop_production_pr_exists"
    NOOP_NOTHING_TO_INTEGRATE = "noop_nothing_to_integrate"
    NOOP_SYNC_PR_NOT_MERGED = "noop_sync_pr_not_merged"
    NOOP_PIPELINE_HELD = "noop_pipeline_held"
    CONFLICT = "conflict"
    VALIDATION_FAILED = "validation_failed"
    PRODUCTION_PR_CREATED = "production_pr_created"
    FAILED = "failed"

    @property
    def requires_human(self) -> bool:
        """Whether the run stopped on something a person has to resolve."""
        return self in (CascadeOutcome.CONFLICT, CascadeOutcome.VALIDATION_FAILED, CascadeOutcome.FAILED)

    @property
    def is_noop(self) -> bool:
        """Whether the run returned at the entry gate without touching any branch."""
        return self.value.startswith("noop_")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of the validation pipeline run against the integration branch."""

    passed: bool
    log_excerpt: str
    log_path: Path | None = None
    failed_command: str | None = None
    exit_code: int | None = None
    duration_seconds: float = 0.0


@dataclass
class CascadeRun:
    """One execution of the branch propagation engine for a tracking issue.

    A production PR can only be recorded for a run without conflicts whose
    validation passed.
    """

    tracking_issue: int
    integration_branch: str
    source_revision: str | None = None
    production_revision: str | None = None
    stage: CascadeStage = CascadeStage.STARTED
    outcome: CascadeOutcome | None = None
    conflict_files: tuple[str, ...] = field(default_factory=tuple)
    validation_result: ValidationResult | None = None
    production_pr: int | None = None
    release_branch: str | None = None
    conflict_pr: int | None = None
    conflict_branch: str | None = None
    record_issue: int | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=utc_now)

    def finish(self, outcome: CascadeOutcome, stage: CascadeStage | None = None) -> "CascadeRun":
        """Record how the run ended."""
        self.outcome = outcome
        if stage is not None:
            self.stage = stage
        return self

    def record_conflicts(self, conflict_files: tuple[str, ...]) -> None:
        """Record the files left conflicted by the integration merge."""
        if self.production_pr is not None:
            raise CascadeInvariantError(f"Run for #{self.tracking_issue} already opened production PR #{self.production_pr}")
        self.conflict_files = conflict_files
        self.stage = CascadeStage.CONFLICT_BLOCKED

    def record_production_pr(self, pull_request_number: int, release_branch: str) -> None:
        """Record the production PR, enforcing that the run was clean and validated."""
        if self.conflict_files:
            raise CascadeInvariantError(f"Run for #{self.tracking_issue} has conflicts and cannot open a production PR")
        if self.validation_result is None or not self.validation_result.passed:
            raise CascadeInvariantError(f"Run for #{self.tracking_issue} did not pass validation and cannot open a production PR")
        self.production_pr = pull_request_number
        self.release_branch = release_branch
        self.stage = CascadeStage.PRODUCTION_PR_CREATED
