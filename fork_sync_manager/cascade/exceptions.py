"""Contains exceptions raised by the branch propagation engine."""


class CascadeStartError(Exception):
    """Raised when a cascade cannot even start, for example because the repository lock timed out."""

    def __init__(self, issue_number: int, reason: str) -> None:
        """Initializes the exception with the tracking issue and the reason."""
        super().__init__(f"Cascade for tracking issue #{issue_number} could not start: {reason}")
        self.issue_number = issue_number
        self.reason = reason


class CascadeInvariantError(Exception):
    """Raised when a cascade run would violate one of its own invariants."""

    pass
