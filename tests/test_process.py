"""
Tests for the process runner.

Tests cover:
- ProcessResult.ok and check_returncode
- Running real commands (the current Python interpreter)
- Error mapping: missing executable, non-zero exit, timeout
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from selfupdate.errors import ExecutionError, ValidationError
from selfupdate.process import ProcessResult, ProcessRunner

# =============================================================================
# ProcessResult
# =============================================================================


class TestProcessResult:
    """Tests for ProcessResult."""

    def test_ok(self) -> None:
        """Test the ok property."""
        assert ProcessResult(returncode=0).ok
        assert not ProcessResult(returncode=2).ok

    def test_check_returncode_returns_self(self) -> None:
        """Test that check_returncode returns the result on success."""
        result = ProcessResult(returncode=0, stdout="x")
        assert result.check_returncode() is result

    def test_check_returncode_raises(self) -> None:
        """Test that a nonzero exit raises ExecutionError with details."""
        result = ProcessResult(
            returncode=128, stderr="fatal: not a git repository", argv=["git", "status"]
        )

        with pytest.raises(ExecutionError) as exc_info:
            result.check_returncode()

        assert exc_info.value.details["returncode"] == 128
        assert exc_info.value.details["command"] == "git status"
        assert "not a git repository" in exc_info.value.details["stderr"]


# =============================================================================
# ProcessRunner
# =============================================================================


class TestProcessRunner:
    """Tests for ProcessRunner.run with real processes."""

    @pytest.mark.asyncio
    async def test_captures_output(self) -> None:
        """Test that stdout and stderr are captured."""
        runner = ProcessRunner()

        result = await runner.run(
            sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"
        )

        assert result.ok
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert result.argv[0] == sys.executable

    @pytest.mark.asyncio
    async def test_cwd(self, tmp_path: Path) -> None:
        """Test that the command runs in cwd."""
        runner = ProcessRunner()

        result = await runner.run(
            sys.executable, "-c", "import os; print(os.getcwd())", cwd=tmp_path
        )

        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_when_checked(self) -> None:
        """Test that a nonzero exit raises when checked."""
        runner = ProcessRunner()

        with pytest.raises(ExecutionError) as exc_info:
            await runner.run(sys.executable, "-c", "import sys; sys.exit(3)")

        assert exc_info.value.details["returncode"] == 3

    @pytest.mark.asyncio
    async def test_nonzero_exit_unchecked(self) -> None:
        """Test that a nonzero exit is returned when unchecked."""
        runner = ProcessRunner()

        result = await runner.run(
            sys.executable, "-c", "import sys; sys.exit(3)", check=False
        )

        assert result.returncode == 3
        assert not result.ok

    @pytest.mark.asyncio
    async def test_missing_executable(self) -> None:
        """Test that a missing executable raises ValidationError."""
        runner = ProcessRunner()

        with pytest.raises(ValidationError, match="not found"):
            await runner.run("definitely-not-a-real-command-xyz")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self) -> None:
        """Test that a timed out command is killed and reported."""
        runner = ProcessRunner(default_timeout=0.2)

        with pytest.raises(ExecutionError, match="timed out") as exc_info:
            await runner.run(sys.executable, "-c", "import time; time.sleep(10)")

        assert exc_info.value.details["timeout"] == 0.2

    @pytest.mark.asyncio
    async def test_spawn_os_error(self) -> None:
        """Test that an OSError on spawn raises ExecutionError."""
        runner = ProcessRunner()

        with (
            patch(
                "selfupdate.process.asyncio.create_subprocess_exec",
                side_effect=PermissionError("denied"),
            ),
            pytest.raises(ExecutionError, match="Failed to execute"),
        ):
            await runner.run("git", "status")

    def test_which(self) -> None:
        """Test executable lookup on PATH."""
        runner = ProcessRunner()

        with patch("selfupdate.process.shutil.which", return_value="/usr/bin/git"):
            assert runner.which("git") == "/usr/bin/git"
        assert runner.which("definitely-not-a-real-command-xyz") is None
