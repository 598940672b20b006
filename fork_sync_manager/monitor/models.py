"""Contains result objects returned by the reconciliation monitor."""

from dataclasses import dataclass, field

from fork_sync_manager.cascade.models import CascadeRun
from fork_sync_manager.monitor.health import HealthReport


@dataclass
class MonitorTaskResult:
    """Outcome of one independent monitor task."""

    name: str
    actions: list[str] = field(default_factory=list)
    cascades: list[CascadeRun] = field(default_factory=list)
    error: str | None = None
    integrity_error: bool = False

    @property
    def succeeded(self) -> bool:
        """Whether the task ran to completion."""
        return self.error is None

    @property
    def requires_human(self) -> bool:
        """Whether a cascade started by this task stopped on something a person has to resolve."""
        return any(run.outcome is not None and run.outcome.requires_human for run in self.cascades)


@dataclass
class MonitorReport:
    """Outcome of a full reconciliation pass."""

    tasks: list[MonitorTaskResult] = field(default_factory=list)
    health: HealthReport | None = None

    @property
    def failed_tasks(self) -> list[MonitorTaskResult]:
        """Tasks that raised instead of completing."""
        return [task for task in self.tasks if not task.succeeded]

    @property
    def integrity_error(self) -> bool:
        """Whether any task stopped on corrupted state."""
        return any(task.integrity_error for task in self.tasks)

    @property
    def requires_human(self) -> bool:
        """Whether a task failed or a cascade it started needs a person."""
        return bool(self.failed_tasks) or any(task.requires_human for task in self.tasks)
