"""Asynchronous wrapper around the git command line for one working copy."""

import asyncio
import os
from pathlib import Path

import structlog

from fork_sync_manager.utils.retry import retry_on_exception
from fork_sync_manager.vcs.exceptions import GitCommandError, GitError, GitTimeoutError, GitTransientError
from fork_sync_manager.vcs.models import GitResult, MergeResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ORIGIN_REMOTE = "origin"
UPSTREAM_REMOTE = "upstream"

# Fragments of git stderr output that indicate a network failure rather than a rejected operation.
TRANSIENT_ERROR_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection reset",
    "connection refused",
    "failed to connect",
    "unable to access",
    "early eof",
    "rpc failed",
    "the remote end hung up unexpectedly",
    "operation timed out",
    "http 5",
    "502",
    "503",
    "504",
)


def _is_transient_failure(stderr: str) -> bool:
    """Whether git stderr output describes a failure worth retrying."""
    lowered = stderr.lower()
    return any(marker in lowered for marker in TRANSIENT_ERROR_MARKERS)


class GitRepository:
    """Runs git commands against a single working copy.

    Every invocation is bounded by ``timeout`` seconds. Commands that talk to a
    remote are retried with exponential backoff when they fail transiently.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = 600.0,
        user_name: str = "fork-sync-manager",
        user_email: str = "fork-sync-manager@users.noreply.github.com",
    ) -> None:
        """Initialize the gateway for the working copy at ``path``."""
        self.path = path
        self.timeout = timeout
        self.user_name = user_name
        self.user_email = user_email

    async def run(self, *args: str, check: bool = True, cwd: Path | None = None) -> GitResult:
        """Run a git command in the working copy.

        Args:
            *args: Arguments passed to git after the identity options.
            check: Raise GitCommandError on a non-zero exit status.
            cwd: Directory to run in instead of the working copy (used for cloning).

        Returns:
            The captured result of the command.

        Raises:
            GitTimeoutError: If the command does not finish within the timeout.
            GitCommandError: If ``check`` is set and the command fails.
        """
        argv = ["git", "-c", f"user.name={self.user_name}", "-c", f"user.email={self.user_email}"]
        if cwd is None:
            argv.extend(["-C", str(self.path)])
        argv.extend(args)
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}
        logger.debug("Running git command", args=list(args), path=str(self.path))
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("Git command timed out", args=list(args), timeout=self.timeout)
            raise GitTimeoutError(list(args), self.timeout) from None
        result = GitResult(
            args=tuple(args),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            logger.error("Git command failed", args=list(args), returncode=result.returncode, stderr=result.stderr.strip())
            raise GitCommandError(list(args), result.returncode, result.stdout, result.stderr)
        return result

    async def _run_network(self, *args: str, cwd: Path | None = None) -> GitResult:
        """Run a command that talks to a remote, classifying network failures as transient."""
        result = await self.run(*args, check=False, cwd=cwd)
        if result.ok:
            return result
        if _is_transient_failure(result.stderr):
            logger.warning("Git network operation failed transiently", args=list(args), stderr=result.stderr.strip())
            raise GitTransientError(list(args), result.returncode, result.stdout, result.stderr)
        logger.error("Git network operation failed", args=list(args), returncode=result.returncode, stderr=result.stderr.strip())
        raise GitCommandError(list(args), result.returncode, result.stdout, result.stderr)

    # Working copy setup
    @retry_on_exception((GitTransientError,))
    async def ensure_clone(self, url: str | None) -> None:
        """Clone ``url`` into the working copy path unless a repository already exists there."""
        if (self.path / ".git").exists():
            if url:
                await self.ensure_remote(ORIGIN_REMOTE, url)
            return
        if not url:
            raise GitError(f"No git repository at {self.path} and no origin URL configured to clone from")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning repository", path=str(self.path))
        await self._run_network("clone", "--no-checkout", url, str(self.path), cwd=self.path.parent)

    async def ensure_remote(self, name: str, url: str) -> None:
        """Add a remote, or repoint it when it already exists with another URL."""
        existing = await self.run("remote", "get-url", name, check=False)
        if not existing.ok:
            await self.run("remote", "add", name, url)
        elif existing.stdout.strip() != url:
            await self.run("remote", "set-url", name, url)

    # Remote operations
    @retry_on_exception((GitTransientError,))
    async def fetch(self, remote: str, branch: str | None = None) -> str | None:
        """Fetch from a remote and return the head revision of ``branch`` if one was given."""
        if branch is None:
            await self._run_network("fetch", "--prune", remote)
            return None
        await self._run_network("fetch", "--prune", remote, f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}")
        head = await self.rev_parse(f"{remote}/{branch}")
        logger.info("Fetched remote branch", remote=remote, branch=branch, head=head)
        return head

    @retry_on_exception((GitTransientError,))
    async def push(self, branch: str, force: bool = False, expected_revision: str | None = None, remote: str = ORIGIN_REMOTE) -> None:
        """Push a local branch to the same name on the remote.

        When ``force`` is set the push uses a lease, so it only overwrites the
        remote branch if it still points at ``expected_revision`` (or at the
        last fetched value when no revision is given).
        """
        args = ["push", remote, f"refs/heads/{branch}:refs/heads/{branch}"]
        if force:
            lease = f"--force-with-lease=refs/heads/{branch}:{expected_revision}" if expected_revision else f"--force-with-lease=refs/heads/{branch}"
            args.insert(1, lease)
        await self._run_network(*args)
        logger.info("Pushed branch", remote=remote, branch=branch, force=force)

    @retry_on_exception((GitTransientError,))
    async def delete_remote_branch(self, branch: str, remote: str = ORIGIN_REMOTE) -> None:
        """Delete a branch on the remote."""
        await self._run_network("push", remote, "--delete", branch)
        logger.info("Deleted remote branch", remote=remote, branch=branch)

    # Revisions and branches
    async def rev_parse(self, ref: str) -> str:
        """Resolve a ref to a full commit identifier."""
        result = await self.run("rev-parse", "--verify", f"{ref}^{{commit}}")
        return result.stdout.strip()

    async def ref_exists(self, ref: str) -> bool:
        """Whether a ref resolves to a commit."""
        result = await self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        return result.ok

    async def create_branch(self, name: str, start_point: str) -> None:
        """Create (or reset) a local branch at ``start_point`` and check it out with a clean tree."""
        await self.run("checkout", "--force", "-B", name, start_point)
        await self.run("clean", "-ffd")

    async def current_branch(self) -> str:
        """Name of the checked-out branch."""
        result = await self.run("rev-parse", "--abbrev-ref", "HEAD")
        return result.stdout.strip()

    async def list_remote_branches(self, prefix: str = "", remote: str = ORIGIN_REMOTE) -> list[str]:
        """List branch names on a remote (as of the last fetch) that start with ``prefix``."""
        result = await self.run("for-each-ref", "--format=%(refname:lstrip=3)", f"refs/remotes/{remote}/{prefix}*")
        return [line.strip() for line in result.stdout.splitlines() if line.strip() and line.strip() != "HEAD"]

    async def rev_list_count(self, base: str, head: str) -> int:
        """Number of commits reachable from ``head`` but not from ``base``."""
        result = await self.run("rev-list", "--count", f"{base}..{head}")
        return int(result.stdout.strip() or "0")

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Whether ``ancestor`` is reachable from ``descendant``."""
        result = await self.run("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        if result.returncode in (0, 1):
            return result.returncode == 0
        raise GitCommandError(list(result.args), result.returncode, result.stdout, result.stderr)

    async def log_subjects(self, base: str, head: str, limit: int | None = None) -> list[str]:
        """Subjects of the commits in ``base..head``, newest first."""
        args = ["log", "--no-merges", "--format=%h %s", f"{base}..{head}"]
        if limit is not None:
            args.insert(1, f"--max-count={limit}")
        result = await self.run(*args)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def commit_messages(self, base: str, head: str) -> list[str]:
        """Full messages of the commits in ``base..head``, newest first."""
        result = await self.run("log", "--format=%B%x00", f"{base}..{head}")
        return [message.strip() for message in result.stdout.split("\x00") if message.strip()]

    # Diffs and merges
    async def diff_stat(self, base: str, head: str) -> list[str]:
        """Names of the files that differ between two revisions."""
        result = await self.run("diff", "--name-only", base, head)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def diff_summary(self, base: str, head: str) -> str:
        """One-line summary of the size of the diff between two revisions."""
        result = await self.run("diff", "--shortstat", base, head)
        return result.stdout.strip() or "no changes"

    async def conflicted_files(self) -> list[str]:
        """Files with unresolved merge conflicts in the working tree."""
        result = await self.run("diff", "--name-only", "--diff-filter=U")
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def merge(self, ref: str, message: str | None = None) -> MergeResult:
        """Merge ``ref`` into the checked-out branch with a merge commit.

        A conflicted merge is left in progress so that the caller can either
        commit the conflict markers or abort it.

        Raises:
            GitCommandError: If the merge fails for a reason other than conflicts.
        """
        args = ["merge", "--no-ff", "--no-edit"]
        if message:
            args.extend(["-m", message])
        args.append(ref)
        result = await self.run(*args, check=False)
        if result.ok:
            up_to_date = "already up to date" in result.stdout.lower()
            logger.info("Merged cleanly", ref=ref, already_up_to_date=up_to_date)
            return MergeResult(ref=ref, clean=True, already_up_to_date=up_to_date)
        conflict_files = await self.conflicted_files()
        if not conflict_files:
            logger.error("Merge failed without conflicts", ref=ref, returncode=result.returncode, stderr=result.stderr.strip())
            raise GitCommandError(list(result.args), result.returncode, result.stdout, result.stderr)
        logger.info("Merge produced conflicts", ref=ref, conflict_files=conflict_files)
        return MergeResult(ref=ref, clean=False, conflict_files=tuple(conflict_files))

    async def abort_merge(self) -> None:
        """Abort an in-progress merge, if any."""
        await self.run("merge", "--abort", check=False)

    async def commit_all(self, message: str) -> bool:
        """Stage every change (including conflict markers) and commit it.

        Returns:
            False when there was nothing to commit.
        """
        await self.run("add", "--all")
        staged = await self.run("diff", "--cached", "--quiet", check=False)
        if staged.ok and not (self.path / ".git" / "MERGE_HEAD").exists():
            return False
        await self.run("commit", "--no-verify", "-m", message)
        return True
