"""Contains exceptions raised by the git gateway."""


class GitError(Exception):
    """Base class for errors raised by the git gateway."""

    pass


class GitCommandError(GitError):
    """Raised when a git command exits with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stdout: str, stderr: str) -> None:
        """Initializes the exception with the failed command and its output."""
        super().__init__(f"git {' '.join(args)} exited with status {returncode}: {stderr.strip() or stdout.strip()}")
        self.args_list = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class GitTransientError(GitCommandError):
    """Raised when a network git operation fails in a way that is worth retrying."""

    pass


class GitTimeoutError(GitTransientError):
    """Raised when a git command does not complete within its timeout."""

    def __init__(self, args: list[str], timeout: float) -> None:
        """Initializes the exception with the command that timed out."""
        super().__init__(args, -1, "", f"timed out after {timeout} seconds")
        self.timeout = timeout
