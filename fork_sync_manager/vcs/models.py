"""Value types returned by the git gateway."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class GitResult:
    """Outcome of a single git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Whether the command exited successfully."""
        return self.returncode == 0


@dataclass(frozen=True)
class MergeResult:
    """Outcome of merging a ref into the checked-out branch.

    ``conflict_files`` is ordered as git reports it and is empty for a clean merge.
    """

    ref: str
    clean: bool
    conflict_files: tuple[str, ...] = field(default_factory=tuple)
    already_up_to_date: bool = False
