"""Exclusive per-repository lock file that serializes cascade runs across processes."""

import asyncio
import errno
import json
import os
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import structlog

from fork_sync_manager.state.exceptions import RepositoryLockTimeoutError
from fork_sync_manager.utils.helpers import utc_now

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class LockOwner:
    """Contents of a lock file as written by its owner."""

    pid: int | None = None
    command: str | None = None
    started_at: str | None = None
    token: str | None = None

    def describe(self) -> str:
        """Human-readable description of the owner for error messages."""
        parts: list[str] = []
        if self.pid is not None:
            parts.append(f"pid={self.pid}")
        if self.command:
            parts.append(f"command={self.command}")
        if self.started_at:
            parts.append(f"started_at={self.started_at}")
        return f" (held by {', '.join(parts)})" if parts else ""


def lock_path_for(state_dir: Path, repository: str) -> Path:
    """Path of the cascade lock file for a repository."""
    return state_dir / f"{repository.strip('/').replace('/', '__')}.cascade.lock"


def read_lock_owner(lock_path: Path) -> LockOwner:
    """Read the owner record of a lock file, tolerating missing or malformed content."""
    try:
        payload_text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockOwner()
    if not payload_text:
        return LockOwner()
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return LockOwner()
    if not isinstance(payload, dict):
        return LockOwner()
    raw_pid = payload.get("pid")
    raw_command = payload.get("command")
    raw_started_at = payload.get("started_at")
    raw_token = payload.get("token")
    return LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) else None,
        command=raw_command if isinstance(raw_command, str) else None,
        started_at=raw_started_at if isinstance(raw_started_at, str) else None,
        token=raw_token if isinstance(raw_token, str) else None,
    )


def pid_is_running(pid: int) -> bool:
    """Whether a process with the given id exists."""
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True


class RepositoryLock:
    """An O_EXCL lock file carrying a JSON owner record.

    A lock left behind by a process that no longer exists is reclaimed.
    Release only removes the file if it is still the one this instance created.
    """

    def __init__(self, lock_path: Path, command: str) -> None:
        """Initialize the lock for ``lock_path`` on behalf of ``command``."""
        self.lock_path = lock_path
        self.command = command
        self._inode: int | None = None
        self._token: str | None = None

    @property
    def held(self) -> bool:
        """Whether this instance currently holds the lock."""
        return self._token is not None

    def try_acquire(self) -> bool:
        """Attempt to take the lock once without waiting."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_stale_lock():
                    continue
                return False
            token = secrets.token_hex(16)
            try:
                self._inode = os.fstat(fd).st_ino
                payload = {"pid": os.getpid(), "command": self.command, "started_at": utc_now().isoformat(), "token": token}
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except BaseException:
                os.close(fd)
                try:
                    os.unlink(self.lock_path)
                except FileNotFoundError:
                    pass
                self._inode = None
                raise
            os.close(fd)
            self._token = token
            return True
        return False

    def release(self) -> None:
        """Remove the lock file if this instance still owns it."""
        if self._inode is None or self._token is None:
            self._inode = None
            self._token = None
            return
        try:
            try:
                current = self.lock_path.stat()
            except FileNotFoundError:
                return
            if current.st_ino != self._inode or read_lock_owner(self.lock_path).token != self._token:
                logger.warning("Lock file was replaced by another owner; leaving it in place", lock_path=str(self.lock_path))
                return
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                pass
        finally:
            self._inode = None
            self._token = None

    def _clear_stale_lock(self) -> bool:
        """Remove the lock file if its owner process is gone."""
        owner = read_lock_owner(self.lock_path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        logger.warning("Reclaiming stale repository lock", lock_path=str(self.lock_path), stale_pid=owner.pid, command=owner.command)
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True


@asynccontextmanager
async def repository_lock(
    lock_path: Path,
    command: str,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> AsyncIterator[RepositoryLock]:
    """Hold the repository lock for the duration of the block.

    Waiters poll until the lock is free, so overlapping triggers queue rather
    than run concurrently or get dropped.

    Raises:
        RepositoryLockTimeoutError: If the lock is still held by another process after ``timeout`` seconds.
    """
    lock = RepositoryLock(lock_path, command)
    deadline = time.monotonic() + timeout
    waited = False
    while not lock.try_acquire():
        if time.monotonic() >= deadline:
            raise RepositoryLockTimeoutError(lock_path, timeout, read_lock_owner(lock_path).describe())
        if not waited:
            logger.info("Waiting for repository lock", lock_path=str(lock_path), owner=read_lock_owner(lock_path).describe().strip())
            waited = True
        await asyncio.sleep(min(poll_interval, max(deadline - time.monotonic(), 0.0)))
    logger.info("Acquired repository lock", lock_path=str(lock_path), command=command)
    try:
        yield lock
    finally:
        lock.release()
        logger.info("Released repository lock", lock_path=str(lock_path))
