"""
Regression test runner built on shell-style command lines.

Each phase is a list of commands from the ``tests`` config section, e.g.:

    tests:
      pre_update: ["pytest -q tests/smoke"]
      post_update: ["pytest -q tests/smoke", "./scripts/check_api.sh"]

A phase passes when every command exits with code 0. An empty phase passes.
"""

from __future__ import annotations

import shlex
from collections.abc import Sequence
from pathlib import Path

from selfupdate.errors import UpdateError
from selfupdate.logging import get_logger
from selfupdate.process import ProcessRunner
from selfupdate.updates.collaborators import TestRunner, TestRunResult

logger = get_logger(__name__)

_OUTPUT_TAIL = 4000


class CommandTestRunner(TestRunner):
    """Runs configured test commands through a ProcessRunner."""

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        pre_update: Sequence[str] = (),
        post_update: Sequence[str] = (),
        post_rollback: Sequence[str] = (),
        cwd: Path | str | None = None,
        timeout: float = 600.0,
    ) -> None:
        self.runner = runner
        self.phases = {
            "pre_update": list(pre_update),
            "post_update": list(post_update),
            "post_rollback": list(post_rollback),
        }
        self.cwd = cwd
        self.timeout = timeout

    async def run_phase(self, phase: str) -> TestRunResult:
        """
        Run every command of ``phase`` in order.

        Commands keep running after a failure so the result lists every
        failing command.
        """
        commands = self.phases[phase]
        failed: list[str] = []
        output: list[str] = []

        for command in commands:
            argv = shlex.split(command)
            if not argv:
                continue
            try:
                result = await self.runner.run(
                    *argv, cwd=self.cwd, timeout=self.timeout, check=False
                )
            except UpdateError as e:
                failed.append(command)
                output.append(f"$ {command}\n{e.message}")
                continue
            if not result.ok:
                failed.append(command)
                output.append(f"$ {command}\n{result.stdout}{result.stderr}")

        test_result = TestRunResult(
            success=not failed,
            phase=phase,
            total=len(commands),
            failed=failed,
            output="\n".join(output)[-_OUTPUT_TAIL:],
        )
        if failed:
            logger.warning(
                "Regression tests failed",
                extra={"phase": phase, "failed": failed, "total": len(commands)},
            )
        else:
            logger.info("Regression tests passed", extra={"phase": phase, "total": len(commands)})
        return test_result

    async def run_pre_update_tests(self) -> TestRunResult:
        return await self.run_phase("pre_update")

    async def run_post_update_tests(self) -> TestRunResult:
        return await self.run_phase("post_update")

    async def run_post_rollback_tests(self) -> TestRunResult:
        return await self.run_phase("post_rollback")
