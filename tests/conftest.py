"""
Pytest configuration and shared fakes for the selfupdate tests.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pytest

from selfupdate.process import ProcessResult
from selfupdate.updates.models import UpdateInfo, UpdateOptions, UpdateResult
from selfupdate.updates.participant import UpdateParticipant

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Fake process runner
# =============================================================================


class FakeRunner:
    """
    Scripted stand-in for ProcessRunner.

    Responses are registered per argv prefix; the longest matching prefix
    wins. Several responses for the same prefix are returned in order, the
    last one repeating. Unscripted commands succeed with empty output.
    """

    def __init__(self, available: Iterable[str] = ("git", "docker")) -> None:
        self.available = set(available)
        self.calls: list[list[str]] = []
        self.kwargs: list[dict[str, Any]] = []
        self._responses: dict[tuple[str, ...], list[ProcessResult | Exception]] = {}

    def script(
        self,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        raises: Exception | None = None,
    ) -> FakeRunner:
        response: ProcessResult | Exception
        if raises is not None:
            response = raises
        else:
            response = ProcessResult(returncode=returncode, stdout=stdout, stderr=stderr)
        self._responses.setdefault(tuple(prefix), []).append(response)
        return self

    def which(self, command: str) -> str | None:
        return f"/usr/bin/{command}" if command in self.available else None

    def _lookup(self, argv: list[str]) -> ProcessResult | Exception:
        matches = [
            prefix for prefix in self._responses if tuple(argv[: len(prefix)]) == prefix
        ]
        if not matches:
            return ProcessResult(returncode=0)
        queue = self._responses[max(matches, key=len)]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def run(
        self,
        command: str,
        *args: str,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        argv = [command, *args]
        self.calls.append(argv)
        self.kwargs.append({"cwd": cwd, "timeout": timeout, "check": check})
        response = self._lookup(argv)
        if isinstance(response, Exception):
            raise response
        result = ProcessResult(
            returncode=response.returncode,
            stdout=response.stdout,
            stderr=response.stderr,
            argv=argv,
        )
        if check:
            result.check_returncode()
        return result

    def called(self, *prefix: str) -> bool:
        return any(tuple(call[: len(prefix)]) == prefix for call in self.calls)

    def index_of(self, *prefix: str) -> int:
        for i, call in enumerate(self.calls):
            if tuple(call[: len(prefix)]) == prefix:
                return i
        raise AssertionError(f"{' '.join(prefix)} was not called")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A FakeRunner with git and docker available."""
    return FakeRunner()


# =============================================================================
# Recording participant
# =============================================================================


class RecordingParticipant(UpdateParticipant):
    """
    Participant that records every call into a shared journal.

    Failures are injected per operation via ``fail_on``.
    """

    def __init__(
        self,
        name: str,
        journal: list[tuple[str, str]] | None = None,
        *,
        has_update: bool = True,
        triggers_update: bool = True,
        fail_on: dict[str, Exception] | None = None,
    ) -> None:
        self.name = name
        self.triggers_update = triggers_update
        super().__init__()
        self.journal = journal if journal is not None else []
        self.has_update = has_update
        self.fail_on = fail_on or {}
        self.prepared: list[UpdateOptions] = []
        self.backups: list[str] = []

    def _record(self, operation: str) -> None:
        self.journal.append((self.name, operation))
        error = self.fail_on.get(operation)
        if error is not None:
            raise error

    def prepare(self, options: UpdateOptions) -> None:
        self.prepared.append(options)

    async def list_backups(self) -> list[str]:
        return sorted(self.backups)

    async def check_for_updates(self) -> UpdateInfo:
        self._record("check")
        return UpdateInfo(participant=self.name, has_update=self.has_update)

    async def pre_update_check(self) -> None:
        self._record("precheck")

    async def backup(self) -> None:
        self._record("backup")

    async def update(self, options: UpdateOptions) -> UpdateResult:
        self._record("update")
        return UpdateResult(participant=self.name, updated=True, message="applied")

    async def rollback(self) -> None:
        self._record("rollback")


@pytest.fixture
def journal() -> list[tuple[str, str]]:
    return []
