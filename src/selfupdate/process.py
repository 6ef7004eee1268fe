"""
External process execution.

ProcessRunner is the only place the orchestrator spawns external CLIs (git,
docker, test commands). Every invocation has a timeout; failures are mapped
onto the UpdateError taxonomy:

- executable not found: ValidationError
- other OS-level spawn failure, timeout, non-zero exit (when checked):
  ExecutionError
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from selfupdate.errors import ExecutionError, ValidationError
from selfupdate.logging import get_logger

logger = get_logger(__name__)

# Output kept in error details
_DETAIL_OUTPUT_LIMIT = 2000


@dataclass
class ProcessResult:
    """Outcome of a finished external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    argv: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check_returncode(self) -> ProcessResult:
        """
        Raise ExecutionError when the command exited non-zero.

        Returns:
            self, so calls can be chained.
        """
        if self.returncode != 0:
            raise ExecutionError(
                f"Command failed with exit code {self.returncode}: {' '.join(self.argv)}",
                details={
                    "command": " ".join(self.argv),
                    "returncode": self.returncode,
                    "stderr": self.stderr[-_DETAIL_OUTPUT_LIMIT:],
                },
            )
        return self


class ProcessRunner:
    """
    Runs external commands asynchronously with a timeout.

    Example:
        >>> runner = ProcessRunner(default_timeout=60)
        >>> result = await runner.run("git", "rev-parse", "HEAD", cwd="/srv/app")
        >>> result.stdout.strip()
    """

    def __init__(self, default_timeout: float = 120.0) -> None:
        """
        Initialize the runner.

        Args:
            default_timeout: Timeout in seconds for commands without an
                explicit timeout.
        """
        self.default_timeout = default_timeout

    def which(self, command: str) -> str | None:
        """Return the absolute path of ``command`` on PATH, or None."""
        return shutil.which(command)

    async def run(
        self,
        command: str,
        *args: str,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        """
        Run a command and capture its output.

        Args:
            command: Executable name or path.
            *args: Arguments.
            cwd: Working directory.
            timeout: Timeout in seconds (defaults to ``default_timeout``).
            check: Raise ExecutionError on a non-zero exit code.
            env: Optional environment for the child process.

        Returns:
            ProcessResult with decoded stdout/stderr.

        Raises:
            ValidationError: If the executable does not exist.
            ExecutionError: If the command cannot be spawned, times out, or
                (with ``check``) exits non-zero.
        """
        argv = [command, *args]
        effective_timeout = timeout if timeout is not None else self.default_timeout
        logger.debug(
            "Running command",
            extra={"command": " ".join(argv), "cwd": str(cwd) if cwd else None},
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
            )
        except FileNotFoundError as e:
            raise ValidationError(
                f"Required command not found: {command}",
                details={"command": " ".join(argv), "error": str(e)},
            ) from e
        except OSError as e:
            raise ExecutionError(
                f"Failed to execute command: {e}",
                details={"command": " ".join(argv), "error": str(e)},
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=effective_timeout
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise ExecutionError(
                f"Command timed out after {effective_timeout}s",
                details={"command": " ".join(argv), "timeout": effective_timeout},
            ) from e

        result = ProcessResult(
            returncode=process.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            argv=argv,
        )

        if check:
            result.check_returncode()
        return result
