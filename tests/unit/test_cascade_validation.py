"""Unit tests for the validation pipeline runner."""

import shlex
import sys
from pathlib import Path

import pytest

from fork_sync_manager.cascade.validation import ValidationRunner


def python_command(code: str) -> str:
    """Command line running a snippet with the current interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    """Directory receiving validation logs."""
    return tmp_path / "logs"


@pytest.mark.asyncio
async def test_all_commands_pass(tmp_path: Path, log_dir: Path) -> None:
    """Every command runs and the combined output is logged."""
    runner = ValidationRunner((python_command("print('build ok')"), python_command("print('tests ok')")), log_dir, timeout=30.0)

    result = await runner.run(tmp_path)

    assert result.passed
    assert result.failed_command is None
    assert result.exit_code is None
    assert result.log_path is not None and result.log_path.parent == log_dir
    log_text = result.log_path.read_text(encoding="utf-8")
    assert "build ok" in log_text and "tests ok" in log_text
    assert result.duration_seconds >= 0


@pytest.mark.asyncio
async def test_stops_at_first_failure(tmp_path: Path, log_dir: Path) -> None:
    """The first failing command ends the run and is reported with its exit status."""
    failing = python_command("import sys; print('3 tests failed'); sys.exit(3)")
    never_run = python_command("print('should not run')")
    runner = ValidationRunner((python_command("print('lint ok')"), failing, never_run), log_dir, timeout=30.0)

    result = await runner.run(tmp_path)

    assert not result.passed
    assert result.failed_command == failing
    assert result.exit_code == 3
    assert "3 tests failed" in result.log_excerpt
    assert "should not run" not in result.log_path.read_text(encoding="utf-8")  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_commands_run_in_working_copy(tmp_path: Path, log_dir: Path) -> None:
    """Commands see the working copy as their current directory."""
    (tmp_path / "marker.txt").write_text("present", encoding="utf-8")
    runner = ValidationRunner((python_command("print(open('marker.txt').read())"),), log_dir, timeout=30.0)

    result = await runner.run(tmp_path)

    assert result.passed
    assert "present" in result.log_excerpt


@pytest.mark.asyncio
async def test_timeout_fails_validation(tmp_path: Path, log_dir: Path) -> None:
    """A command exceeding the timeout is killed and counts as a failure."""
    runner = ValidationRunner((python_command("import time; time.sleep(10)"),), log_dir, timeout=0.5)

    result = await runner.run(tmp_path)

    assert not result.passed
    assert result.exit_code == 124
    assert "timed out" in result.log_excerpt


@pytest.mark.asyncio
async def test_missing_executable_fails_validation(tmp_path: Path, log_dir: Path) -> None:
    """A command that cannot be started is a failure, not an exception."""
    runner = ValidationRunner(("definitely-not-a-real-command --check",), log_dir, timeout=5.0)

    result = await runner.run(tmp_path)

    assert not result.passed
    assert result.exit_code == 127
    assert "Could not start command" in result.log_excerpt


@pytest.mark.asyncio
async def test_no_commands_passes(tmp_path: Path, log_dir: Path) -> None:
    """Without configured commands validation passes and says so in the log."""
    result = await ValidationRunner((), log_dir, timeout=5.0).run(tmp_path)

    assert result.passed
    assert "No validation commands configured." in result.log_excerpt


@pytest.mark.asyncio
async def test_log_excerpt_keeps_the_tail(tmp_path: Path, log_dir: Path) -> None:
    """Long logs are cut from the start so the failure at the end stays visible."""
    noisy = python_command("import sys; print('x' * 5000); print('FINAL ERROR'); sys.exit(1)")
    runner = ValidationRunner((noisy,), log_dir, timeout=30.0, excerpt_length=500)

    result = await runner.run(tmp_path)

    assert len(result.log_excerpt) <= 500
    assert "FINAL ERROR" in result.log_excerpt
    assert "truncated" in result.log_excerpt
