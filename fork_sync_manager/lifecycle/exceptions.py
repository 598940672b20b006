"""Contains exceptions raised by the lifecycle tracker."""


class LifecycleIntegrityError(Exception):
    """Raised when a tracking issue's labels do not map to exactly one lifecycle state.

    No label mutation is attempted after this error; a human has to repair the labels.
    """

    def __init__(self, issue_number: int | None, labels: set[str], reason: str) -> None:
        """Initializes the exception with the offending issue and its labels."""
        target = f"issue #{issue_number}" if issue_number is not None else "lifecycle definition"
        super().__init__(f"Lifecycle integrity error on {target}: {reason} (labels: {sorted(labels)})")
        self.issue_number = issue_number
        self.labels = labels
        self.reason = reason


class LifecycleTransitionError(Exception):
    """Raised when a transition that the lifecycle does not allow is requested."""

    def __init__(self, issue_number: int, current: str, target: str) -> None:
        """Initializes the exception with the requested transition."""
        super().__init__(f"Issue #{issue_number} cannot move from {current} to {target}")
        self.issue_number = issue_number
        self.current = current
        self.target = target
