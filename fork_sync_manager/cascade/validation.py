"""Runs the configured build, test and lint commands against a working copy."""

import asyncio
import os
import shlex
import time
from pathlib import Path

import structlog

from fork_sync_manager.cascade.models import ValidationResult
from fork_sync_manager.utils.constants import DEFAULT_LOG_EXCERPT_LENGTH
from fork_sync_manager.utils.helpers import format_timestamp, timestamp_slug, utc_now
from fork_sync_manager.utils.truncation import truncate_string_at_start

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class ValidationRunner:
    """Runs validation commands one after another, stopping at the first failure.

    Output of every command is appended to a single log file; the tail of
    that log becomes the excerpt placed in failure issues.
    """

    def __init__(
        self,
        commands: tuple[str, ...],
        log_dir: Path,
        timeout: float,
        excerpt_length: int = DEFAULT_LOG_EXCERPT_LENGTH,
    ) -> None:
        """Initialize the runner.

        Args:
            commands: Shell-style command lines, split with shlex and run without a shell.
            log_dir: Directory receiving one log file per run.
            timeout: Maximum seconds allowed for each command.
            excerpt_length: Characters of the log tail kept in the result.
        """
        self.commands = commands
        self.log_dir = log_dir
        self.timeout = timeout
        self.excerpt_length = excerpt_length

    async def run(self, workdir: Path) -> ValidationResult:
        """Run every command in ``workdir`` and report whether all of them passed."""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"validation-{timestamp_slug()}.log"
        started = time.monotonic()
        sections: list[str] = [f"Validation started {format_timestamp(utc_now())} in {workdir}\n"]

        if not self.commands:
            logger.warning("No validation commands configured; treating validation as passed")
            sections.append("No validation commands configured.\n")
            return self._finish(log_path, sections, started, passed=True)

        for command in self.commands:
            sections.append(f"\n$ {command}\n")
            exit_code, output = await self._run_command(command, workdir)
            sections.append(output)
            if exit_code != 0:
                sections.append(f"\n[exit status {exit_code}]\n")
                logger.warning("Validation command failed", command=command, exit_code=exit_code)
                return self._finish(log_path, sections, started, passed=False, failed_command=command, exit_code=exit_code)
            logger.info("Validation command passed", command=command)

        return self._finish(log_path, sections, started, passed=True)

    async def _run_command(self, command: str, workdir: Path) -> tuple[int, str]:
        """Run one command, returning its exit status and combined output."""
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            return 2, f"Could not parse command: {exc}\n"
        if not argv:
            return 0, ""
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workdir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, "CI": "true"},
            )
        except OSError as exc:
            return 127, f"Could not start command: {exc}\n"
        try:
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return 124, f"Command timed out after {self.timeout} seconds\n"
        return process.returncode if process.returncode is not None else 1, stdout_bytes.decode("utf-8", errors="replace")

    def _finish(
        self,
        log_path: Path,
        sections: list[str],
        started: float,
        passed: bool,
        failed_command: str | None = None,
        exit_code: int | None = None,
    ) -> ValidationResult:
        """Write the log file and build the result."""
        log_text = "".join(sections)
        log_path.write_text(log_text, encoding="utf-8")
        excerpt, _ = truncate_string_at_start(log_text, self.excerpt_length)
        return ValidationResult(
            passed=passed,
            log_excerpt=excerpt,
            log_path=log_path,
            failed_command=failed_command,
            exit_code=exit_code,
            duration_seconds=round(time.monotonic() - started, 2),
        )
