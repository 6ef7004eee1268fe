"""
Tests for the update orchestrator.

Tests cover:
- PipelineState values and the transition table
- check_for_updates aggregation (concurrent, errors, triggering participants)
- No-op runs, forced runs, full successful runs and their ordering
- Failure at participant k rolls back 1..k-1 in reverse order
- Rollback failures are recorded without stopping the remaining rollbacks
- Precheck, backup and verification failures
- Collaborators: store, test runner, resource monitor
- Skip options
- Explicit rollback, repeated rollback and backup listing
- Run options bound before check and precheck
- Single-flight guard and cancellation shielding
- Update history recording
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from conftest import FakeRunner, RecordingParticipant

from selfupdate.errors import (
    ExecutionError,
    OrchestratorBusyError,
    StateError,
    ValidationError,
    VerificationError,
)
from selfupdate.updates.collaborators import (
    IntegrityReport,
    MonitoringSession,
    PersistentStore,
    ResourceCheck,
    ResourceMonitor,
    StoreStatus,
    TestRunner,
    TestRunResult,
)
from selfupdate.updates.git_participant import SourceSyncParticipant
from selfupdate.updates.history import UpdateHistory
from selfupdate.updates.models import UpdateOptions, UpdateResult
from selfupdate.updates.state_machine import (
    _VALID_TRANSITIONS,
    PipelineState,
    UpdateOrchestrator,
)

OLD = "a" * 40
NEW = "b" * 40


# =============================================================================
# Fakes
# =============================================================================


class FakeTestRunner(TestRunner):
    def __init__(self, journal: list[tuple[str, str]], failing: set[str] | None = None) -> None:
        self.journal = journal
        self.failing = failing or set()

    def _run(self, phase: str) -> TestRunResult:
        self.journal.append(("tests", phase))
        ok = phase not in self.failing
        return TestRunResult(success=ok, phase=phase, total=1, failed=[] if ok else ["suite"])

    async def run_pre_update_tests(self) -> TestRunResult:
        return self._run("pre_update")

    async def run_post_update_tests(self) -> TestRunResult:
        return self._run("post_update")

    async def run_post_rollback_tests(self) -> TestRunResult:
        return self._run("post_rollback")


class FakeStore(PersistentStore):
    def __init__(
        self,
        journal: list[tuple[str, str]],
        healthy: bool = True,
        integrity_ok: bool = True,
    ) -> None:
        self.journal = journal
        self.healthy = healthy
        self.integrity_ok = integrity_ok

    async def check_status(self) -> StoreStatus:
        self.journal.append(("store", "status"))
        return StoreStatus(healthy=self.healthy, message="ok" if self.healthy else "locked")

    async def create_backup(self) -> Path:
        self.journal.append(("store", "backup"))
        return Path("/backups/db/app-1.db")

    async def verify_integrity(self) -> IntegrityReport:
        self.journal.append(("store", "integrity"))
        return IntegrityReport(ok=self.integrity_ok)


class FakeSession(MonitoringSession):
    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True

    def get_results(self) -> dict[str, Any]:
        return {"operation": self.operation, "sample_count": 3}


class FakeMonitor(ResourceMonitor):
    def __init__(self, sufficient: bool = True) -> None:
        self.sufficient = sufficient
        self.sessions: list[FakeSession] = []

    async def check_system_resources(self) -> ResourceCheck:
        reasons = [] if self.sufficient else ["free disk 10 MB below 500 MB"]
        return ResourceCheck(sufficient=self.sufficient, reasons=reasons)

    async def start_update_monitoring(self) -> FakeSession:
        self.sessions.append(FakeSession("update"))
        return self.sessions[-1]

    async def start_rollback_monitoring(self) -> FakeSession:
        self.sessions.append(FakeSession("rollback"))
        return self.sessions[-1]


class BlockingParticipant(RecordingParticipant):
    """Participant whose update waits until ``release`` is set."""

    def __init__(self, name: str, journal: list[tuple[str, str]]) -> None:
        super().__init__(name, journal)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def update(self, options: UpdateOptions) -> UpdateResult:
        self.started.set()
        await self.release.wait()
        return await super().update(options)


class CommitResult(UpdateResult):
    previous_commit: str | None = None
    new_commit: str | None = None


class CommitParticipant(RecordingParticipant):
    async def update(self, options: UpdateOptions) -> UpdateResult:
        self._record("update")
        return CommitResult(
            participant=self.name, updated=True, previous_commit="aaa", new_commit="bbb"
        )


def _ops(journal: list[tuple[str, str]], operation: str) -> list[str]:
    return [name for name, op in journal if op == operation]


def _participants(
    journal: list[tuple[str, str]], *names: str, **fail_on: dict[str, Exception]
) -> list[RecordingParticipant]:
    return [RecordingParticipant(n, journal, fail_on=fail_on.get(n)) for n in names]


async def _wait_idle(orchestrator: UpdateOrchestrator) -> None:
    for _ in range(200):
        if not orchestrator.is_busy:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("orchestrator still busy")


# =============================================================================
# States and transitions
# =============================================================================


class TestPipelineState:
    """Tests for PipelineState and the transition table."""

    def test_state_values(self) -> None:
        """Test that states have the expected string values."""
        assert PipelineState.IDLE.value == "idle"
        assert PipelineState.ROLLING_BACK.value == "rolling_back"
        assert PipelineState("rolled_back") == PipelineState.ROLLED_BACK

    def test_every_state_has_transitions(self) -> None:
        """Test that every state has an entry in the transition table."""
        assert set(_VALID_TRANSITIONS) == set(PipelineState)

    def test_precheck_cannot_roll_back(self) -> None:
        """Test that precheck and backup failures never lead to rollback."""
        assert PipelineState.ROLLING_BACK not in _VALID_TRANSITIONS[PipelineState.PRECHECK]
        assert PipelineState.ROLLING_BACK not in _VALID_TRANSITIONS[PipelineState.BACKUP]

    def test_terminal_states_return_to_idle(self) -> None:
        """Test that terminal states only return to idle."""
        for state in (PipelineState.DONE, PipelineState.FAILED, PipelineState.ROLLED_BACK):
            assert _VALID_TRANSITIONS[state] == {PipelineState.IDLE}

    def test_invalid_transition_raises(self, journal: list[tuple[str, str]]) -> None:
        """Test that an invalid transition raises StateError and keeps the state."""
        orchestrator = UpdateOrchestrator(_participants(journal, "a"))

        with pytest.raises(StateError, match="Invalid state transition") as exc_info:
            orchestrator._transition_to(PipelineState.DONE)

        assert exc_info.value.details["current_state"] == "idle"
        assert orchestrator.state == PipelineState.IDLE

    def test_duplicate_participants_rejected(self, journal: list[tuple[str, str]]) -> None:
        """Test that two participants with one name are rejected."""
        with pytest.raises(ValueError):
            UpdateOrchestrator(_participants(journal, "a", "a"))


# =============================================================================
# check_for_updates
# =============================================================================


class TestCheckForUpdates:
    """Tests for the check phase."""

    @pytest.mark.asyncio
    async def test_aggregates_and_stays_read_only(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that check aggregates every participant and mutates nothing."""
        participants = [
            RecordingParticipant("git", journal, has_update=True),
            RecordingParticipant("docker", journal, has_update=True, triggers_update=False),
        ]
        orchestrator = UpdateOrchestrator(participants)

        summary = await orchestrator.check_for_updates()

        assert summary.has_updates is True
        assert summary.available == ["git", "docker"]
        assert set(summary.infos) == {"git", "docker"}
        assert {op for _, op in journal} == {"check"}
        assert orchestrator.state == PipelineState.IDLE

    @pytest.mark.asyncio
    async def test_non_triggering_work_is_not_an_update(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that work of non-triggering participants alone is no update."""
        participants = [
            RecordingParticipant("snapshot", journal, triggers_update=False),
            RecordingParticipant("git", journal, has_update=False),
            RecordingParticipant("docker", journal, triggers_update=False),
        ]

        summary = await UpdateOrchestrator(participants).check_for_updates()

        assert summary.has_updates is False
        assert summary.available == ["snapshot", "docker"]

    @pytest.mark.asyncio
    async def test_all_non_triggering(self, journal: list[tuple[str, str]]) -> None:
        """Test that work counts when no participant triggers updates."""
        participants = [RecordingParticipant("docker", journal, triggers_update=False)]

        summary = await UpdateOrchestrator(participants).check_for_updates()

        assert summary.has_updates is True

    @pytest.mark.asyncio
    async def test_errors_collected(self, journal: list[tuple[str, str]]) -> None:
        """Test that check errors are collected per participant."""
        participants = [
            RecordingParticipant("git", journal, fail_on={"check": StateError("no ref")}),
            RecordingParticipant("other", journal, fail_on={"check": RuntimeError("boom")}),
            RecordingParticipant("docker", journal, has_update=False),
        ]

        summary = await UpdateOrchestrator(participants).check_for_updates()

        assert summary.errors["git"].error_code == "invalid_state"
        assert summary.errors["git"].participant == "git"
        assert summary.errors["other"].error_code == "execution_failed"
        assert summary.errors["other"].details["exception"] == "RuntimeError"
        assert list(summary.infos) == ["docker"]

    @pytest.mark.asyncio
    async def test_checks_run_concurrently(self) -> None:
        """Test that participant checks run concurrently."""
        entered: list[str] = []
        both_started = asyncio.Event()

        class Waiting(RecordingParticipant):
            async def check_for_updates(self):  # type: ignore[override]
                entered.append(self.name)
                if len(entered) == 2:
                    both_started.set()
                await asyncio.wait_for(both_started.wait(), timeout=1.0)
                return await super().check_for_updates()

        summary = await UpdateOrchestrator(
            [Waiting("a"), Waiting("b")]
        ).check_for_updates()

        assert summary.available == ["a", "b"]

    @pytest.mark.asyncio
    async def test_options_bound_before_check(self, journal: list[tuple[str, str]]) -> None:
        """Test that check binds the given options on every participant."""
        participants = _participants(journal, "git", "docker")

        await UpdateOrchestrator(participants).check_for_updates(
            UpdateOptions(branch="release")
        )

        for participant in participants:
            assert [o.branch for o in participant.prepared] == ["release"]

    @pytest.mark.asyncio
    async def test_default_options_bound(self, journal: list[tuple[str, str]]) -> None:
        """Test that check binds default options when none are given."""
        participants = _participants(journal, "git")

        await UpdateOrchestrator(participants).check_for_updates()

        assert participants[0].prepared == [UpdateOptions()]


# =============================================================================
# update: happy paths
# =============================================================================


class TestUpdateSuccess:
    """Tests for successful and no-op runs."""

    @pytest.mark.asyncio
    async def test_no_op_when_nothing_pending(self, journal: list[tuple[str, str]]) -> None:
        """Test that a run without pending work stops after the check."""
        participants = [RecordingParticipant("git", journal, has_update=False)]
        orchestrator = UpdateOrchestrator(participants)

        result = await orchestrator.update()

        assert result.success is True
        assert result.updated is False
        assert result.state == "done"
        assert result.message == "No updates available"
        assert _ops(journal, "precheck") == []
        assert _ops(journal, "update") == []

    @pytest.mark.asyncio
    async def test_force_runs_without_pending_work(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that force runs the pipeline without pending work."""
        participants = [RecordingParticipant("git", journal, has_update=False)]

        result = await UpdateOrchestrator(participants).update(UpdateOptions(force=True))

        assert result.success is True
        assert _ops(journal, "update") == ["git"]

    @pytest.mark.asyncio
    async def test_check_error_prevents_no_op(self, journal: list[tuple[str, str]]) -> None:
        """Test that a failed check does not count as up to date."""
        participants = [
            RecordingParticipant(
                "git", journal, has_update=False, fail_on={"check": ExecutionError("offline")}
            )
        ]

        result = await UpdateOrchestrator(participants).update()

        assert result.check is not None and "git" in result.check.errors
        assert _ops(journal, "precheck") == ["git"]

    @pytest.mark.asyncio
    async def test_full_run_order(self, journal: list[tuple[str, str]]) -> None:
        """Test the phase order of a successful run."""
        orchestrator = UpdateOrchestrator(_participants(journal, "snapshot", "git", "docker"))

        result = await orchestrator.update()

        assert result.success is True
        assert result.updated is True
        assert result.state == "done"
        assert orchestrator.state == PipelineState.DONE
        assert [op for _, op in journal] == ["check"] * 3 + ["precheck"] * 3 + [
            "backup"
        ] * 3 + ["update"] * 3
        for op in ("precheck", "backup", "update"):
            assert _ops(journal, op) == ["snapshot", "git", "docker"]
        assert [r.participant for r in result.results] == ["snapshot", "git", "docker"]
        assert result.started_at is not None and result.finished_at is not None

    @pytest.mark.asyncio
    async def test_without_check(self, journal: list[tuple[str, str]]) -> None:
        """Test that check_first=False skips the check phase."""
        result = await UpdateOrchestrator(_participants(journal, "git")).update(
            UpdateOptions(check_first=False)
        )

        assert result.success is True
        assert result.check is None
        assert _ops(journal, "check") == []

    @pytest.mark.asyncio
    async def test_consecutive_runs(self, journal: list[tuple[str, str]]) -> None:
        """Test that the orchestrator can run twice in a row."""
        orchestrator = UpdateOrchestrator(_participants(journal, "git"))

        first = await orchestrator.update()
        second = await orchestrator.update()

        assert first.success and second.success
        assert _ops(journal, "update") == ["git", "git"]


# =============================================================================
# update: failures and rollback
# =============================================================================


class TestUpdateFailures:
    """Tests for failures during a run."""

    @pytest.mark.asyncio
    async def test_failure_rolls_back_applied_in_reverse(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a failure rolls back applied participants in reverse order."""
        participants = _participants(
            journal, "a", "b", "c", "d", c={"update": ExecutionError("build failed")}
        )
        orchestrator = UpdateOrchestrator(participants)

        result = await orchestrator.update()

        assert result.success is False
        assert result.state == "rolled_back"
        assert result.failed_participant == "c"
        assert result.error is not None and result.error.error_code == "execution_failed"
        assert _ops(journal, "update") == ["a", "b", "c"]
        assert _ops(journal, "rollback") == ["b", "a"]
        assert result.rollback is not None
        assert [o.participant for o in result.rollback.outcomes] == ["b", "a"]
        assert result.rollback.success is True
        assert result.results[-1].success is False
        assert result.results[-1].error == "build failed"
        assert result.updated is False

    @pytest.mark.asyncio
    async def test_first_participant_failure_needs_no_rollback(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a failure of the first participant rolls nothing back."""
        participants = _participants(journal, "a", "b", a={"update": ExecutionError("x")})

        result = await UpdateOrchestrator(participants).update()

        assert result.state == "failed"
        assert result.rollback is None
        assert _ops(journal, "rollback") == []
        assert "nothing to roll back" in result.message

    @pytest.mark.asyncio
    async def test_rollback_failure_recorded_and_continues(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a rollback failure is recorded and later rollbacks still run."""
        participants = _participants(
            journal,
            "a",
            "b",
            "c",
            b={"rollback": ExecutionError("checkout failed")},
            c={"update": ExecutionError("build failed")},
        )

        result = await UpdateOrchestrator(participants).update()

        assert result.state == "failed"
        assert _ops(journal, "rollback") == ["b", "a"]
        assert result.rollback is not None
        assert result.rollback.failed_participants == ["b"]
        assert result.rollback.outcomes[0].error is not None
        assert result.rollback.outcomes[0].error.message == "checkout failed"
        assert result.rollback.outcomes[1].success is True
        assert "rollback failed for b" in result.message

    @pytest.mark.asyncio
    async def test_unsuccessful_result_is_failure(self, journal: list[tuple[str, str]]) -> None:
        """Test that a result with success=False fails the run."""
        class Soft(RecordingParticipant):
            async def update(self, options: UpdateOptions) -> UpdateResult:
                self._record("update")
                return UpdateResult(participant=self.name, success=False, error="soft failure")

        participants = [RecordingParticipant("a", journal), Soft("b", journal)]

        result = await UpdateOrchestrator(participants).update()

        assert result.failed_participant == "b"
        assert result.error is not None and result.error.message == "soft failure"
        assert _ops(journal, "rollback") == ["a"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, journal: list[tuple[str, str]]) -> None:
        """Test that a non-UpdateError exception is wrapped as ExecutionError."""
        participants = _participants(journal, "a", "b", b={"update": KeyError("missing")})

        result = await UpdateOrchestrator(participants).update()

        assert result.error is not None
        assert result.error.error_code == "execution_failed"
        assert result.error.details["exception"] == "KeyError"
        assert result.error.details["participant"] == "b"
        assert result.state == "rolled_back"

    @pytest.mark.asyncio
    async def test_precheck_failure_mutates_nothing(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a precheck failure runs no backup, update or rollback."""
        participants = _participants(
            journal, "a", "b", "c", b={"precheck": ValidationError("git is not installed")}
        )

        result = await UpdateOrchestrator(participants).update()

        assert result.state == "failed"
        assert result.failed_participant == "b"
        assert result.error is not None and result.error.error_code == "validation_failed"
        assert result.error.details["phase"] == "precheck"
        assert _ops(journal, "precheck") == ["a", "b"]
        for op in ("backup", "update", "rollback"):
            assert _ops(journal, op) == []

    @pytest.mark.asyncio
    async def test_backup_failure(self, journal: list[tuple[str, str]]) -> None:
        """Test that a backup failure stops the run before any update."""
        participants = _participants(journal, "a", "b", b={"backup": ExecutionError("disk")})

        result = await UpdateOrchestrator(participants).update()

        assert result.state == "failed"
        assert result.failed_participant == "b"
        assert _ops(journal, "update") == []
        assert _ops(journal, "rollback") == []

    @pytest.mark.asyncio
    async def test_verification_error_from_participant(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a participant verification error rolls back."""
        participants = _participants(
            journal, "git", "docker", docker={"update": VerificationError("not healthy")}
        )

        result = await UpdateOrchestrator(participants).update()

        assert result.error is not None and result.error.error_code == "verification_failed"
        assert _ops(journal, "rollback") == ["git"]


# =============================================================================
# Collaborators
# =============================================================================


class TestCollaborators:
    """Tests for store, test runner and monitor integration."""

    @pytest.mark.asyncio
    async def test_store_backed_up_before_participants(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that the store is backed up before the participants."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"), store=FakeStore(journal)
        )

        result = await orchestrator.update()

        assert result.success is True
        assert journal.index(("store", "backup")) < journal.index(("a", "backup"))
        assert journal.count(("store", "status")) == 2

    @pytest.mark.asyncio
    async def test_unhealthy_store_aborts_precheck(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that an unhealthy store fails the precheck."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"), store=FakeStore(journal, healthy=False)
        )

        result = await orchestrator.update()

        assert result.state == "failed"
        assert result.error is not None
        assert result.error.error_code == "invalid_state"
        assert result.error.details["collaborator"] == "store"
        assert _ops(journal, "precheck") == []

    @pytest.mark.asyncio
    async def test_pre_update_tests_fail(self, journal: list[tuple[str, str]]) -> None:
        """Test that failing pre-update tests fail the precheck."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"),
            test_runner=FakeTestRunner(journal, failing={"pre_update"}),
        )

        result = await orchestrator.update(UpdateOptions(run_tests=True))

        assert result.state == "failed"
        assert result.error is not None and result.error.error_code == "tests_failed"
        assert result.tests["pre_update"]["success"] is False
        assert _ops(journal, "precheck") == []

    @pytest.mark.asyncio
    async def test_tests_not_run_unless_requested(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that tests only run with run_tests."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"),
            test_runner=FakeTestRunner(journal, failing={"pre_update", "post_update"}),
        )

        result = await orchestrator.update()

        assert result.success is True
        assert _ops(journal, "pre_update") == []

    @pytest.mark.asyncio
    async def test_post_update_test_failure_rolls_back_everything(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that failing post-update tests roll back every participant."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a", "b", "c"),
            test_runner=FakeTestRunner(journal, failing={"post_update"}),
            store=FakeStore(journal),
        )

        result = await orchestrator.update(UpdateOptions(run_tests=True))

        assert result.state == "rolled_back"
        assert result.error is not None and result.error.error_code == "tests_failed"
        assert result.error.details["phase"] == "verify"
        assert _ops(journal, "rollback") == ["c", "b", "a"]
        assert ("store", "integrity") in journal
        assert ("tests", "post_rollback") in journal
        assert result.rollback is not None
        assert result.rollback.store_integrity is True
        assert result.rollback.tests_passed is True
        assert set(result.tests) == {"pre_update", "post_update", "post_rollback"}

    @pytest.mark.asyncio
    async def test_insufficient_resources(self, journal: list[tuple[str, str]]) -> None:
        """Test that insufficient resources fail the precheck."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"), monitor=FakeMonitor(sufficient=False)
        )

        result = await orchestrator.update()

        assert result.state == "failed"
        assert result.error is not None
        assert result.error.error_code == "resource_exhausted"
        assert "free disk" in result.error.message

    @pytest.mark.asyncio
    async def test_monitoring_attached(self, journal: list[tuple[str, str]]) -> None:
        """Test that monitoring results are attached to the run."""
        monitor = FakeMonitor()
        orchestrator = UpdateOrchestrator(_participants(journal, "a"), monitor=monitor)

        result = await orchestrator.update()

        assert result.monitoring == {"operation": "update", "sample_count": 3}
        assert monitor.sessions[0].stopped is True

    @pytest.mark.asyncio
    async def test_monitoring_start_failure_is_not_fatal(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a monitoring failure does not fail the run."""
        class Broken(FakeMonitor):
            async def start_update_monitoring(self) -> FakeSession:
                raise RuntimeError("psutil unavailable")

        result = await UpdateOrchestrator(
            _participants(journal, "a"), monitor=Broken()
        ).update()

        assert result.success is True
        assert result.monitoring == {}


# =============================================================================
# Skip options
# =============================================================================


class TestSkipOptions:
    """Tests for skip options."""

    @pytest.mark.asyncio
    async def test_skip_container_redeploy(self, journal: list[tuple[str, str]]) -> None:
        """Test that skip_container_redeploy leaves docker out."""
        orchestrator = UpdateOrchestrator(_participants(journal, "snapshot", "git", "docker"))

        result = await orchestrator.update(UpdateOptions(skip_container_redeploy=True))

        assert result.success is True
        for op in ("precheck", "backup", "update"):
            assert "docker" not in _ops(journal, op)
        skipped = [r for r in result.results if r.participant == "docker"]
        assert skipped[0].message == "Skipped"
        assert skipped[0].updated is False

    @pytest.mark.asyncio
    async def test_skip_participants(self, journal: list[tuple[str, str]]) -> None:
        """Test that skipped participants are not updated."""
        orchestrator = UpdateOrchestrator(_participants(journal, "snapshot", "git"))

        await orchestrator.update(UpdateOptions(skip_participants=frozenset({"snapshot"})))

        assert _ops(journal, "update") == ["git"]

    @pytest.mark.asyncio
    async def test_skip_backup(self, journal: list[tuple[str, str]]) -> None:
        """Test that skip_backup skips every backup."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a", "b"), store=FakeStore(journal)
        )

        result = await orchestrator.update(UpdateOptions(skip_backup=True))

        assert result.success is True
        assert _ops(journal, "backup") == []
        assert ("store", "backup") not in journal


# =============================================================================
# Run options reaching the participants
# =============================================================================


class TestBoundOptions:
    """Tests for run options bound before the check and precheck phases."""

    @pytest.mark.asyncio
    async def test_bound_for_check_and_precheck(self, journal: list[tuple[str, str]]) -> None:
        """Test that run options are bound for check and for precheck."""
        git, docker = _participants(journal, "git", "docker")
        options = UpdateOptions(branch="release", skip_participants=frozenset({"docker"}))

        await UpdateOrchestrator([git, docker]).update(options)

        assert git.prepared == [options, options]
        assert docker.prepared == [options]

    @pytest.mark.asyncio
    async def test_pending_work_on_requested_branch(self, fake_runner: FakeRunner) -> None:
        """Test that work pending on the requested branch is applied."""
        fake_runner.script("git", "rev-parse", "HEAD", stdout=f"{OLD}\n")
        fake_runner.script(
            "git", "rev-parse", "--verify", "--quiet", "refs/remotes/origin/main",
            stdout=f"{OLD}\n",
        )
        fake_runner.script(
            "git", "rev-parse", "--verify", "--quiet", "refs/remotes/origin/release",
            stdout=f"{NEW}\n",
        )
        fake_runner.script("git", "rev-list", "--count", stdout="1\n")
        fake_runner.script(
            "git", "ls-remote", stdout=f"{OLD}\trefs/heads/main\n{NEW}\trefs/heads/release\n"
        )
        orchestrator = UpdateOrchestrator([SourceSyncParticipant(fake_runner, "/srv/app")])

        result = await orchestrator.update(UpdateOptions(branch="release"))

        assert result.success is True
        assert result.check is not None and result.check.has_updates is True
        assert ["git", "fetch", "origin", "release"] in fake_runner.calls
        assert ["git", "reset", "--hard", "origin/release"] in fake_runner.calls

    @pytest.mark.asyncio
    async def test_missing_branch_fails_in_precheck(self, fake_runner: FakeRunner) -> None:
        """Test that a branch missing on the remote fails in precheck without rollback."""
        fake_runner.script("git", "fetch", returncode=128, stderr="couldn't find remote ref")
        fake_runner.script("git", "ls-remote", stdout=f"{OLD}\trefs/heads/main\n")
        orchestrator = UpdateOrchestrator([SourceSyncParticipant(fake_runner, "/srv/app")])

        result = await orchestrator.update(UpdateOptions(branch="no-such-branch"))

        assert result.state == "failed"
        assert result.failed_participant == "git"
        assert result.error is not None
        assert result.error.details["phase"] == "precheck"
        assert "no-such-branch" in result.error.message
        assert result.rollback is None
        for mutating in ("branch", "stash", "reset", "checkout"):
            assert not fake_runner.called("git", mutating)


# =============================================================================
# Explicit rollback
# =============================================================================


class TestExplicitRollback:
    """Tests for UpdateOrchestrator.rollback."""

    @pytest.mark.asyncio
    async def test_rolls_back_all_in_reverse(self, journal: list[tuple[str, str]]) -> None:
        """Test that explicit rollback covers every participant in reverse order."""
        monitor = FakeMonitor()
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a", "b", "c"),
            test_runner=FakeTestRunner(journal),
            monitor=monitor,
        )

        result = await orchestrator.rollback()

        assert result.success is True
        assert _ops(journal, "rollback") == ["c", "b", "a"]
        assert result.tests_passed is True
        assert orchestrator.state == PipelineState.ROLLED_BACK
        assert result.monitoring["operation"] == "rollback"

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_rollback(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a failing participant does not stop explicit rollback."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a", "b", "c", b={"rollback": StateError("no backup")})
        )

        result = await orchestrator.rollback(run_tests=False)

        assert result.success is False
        assert result.degraded is True
        assert result.failed_participants == ["b"]
        assert _ops(journal, "rollback") == ["c", "b", "a"]
        assert orchestrator.state == PipelineState.FAILED

    @pytest.mark.asyncio
    async def test_degraded_by_store_or_tests(self, journal: list[tuple[str, str]]) -> None:
        """Test that store integrity and tests can degrade a rollback."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"),
            store=FakeStore(journal, integrity_ok=False),
            test_runner=FakeTestRunner(journal, failing={"post_rollback"}),
        )

        result = await orchestrator.rollback()

        assert result.success is True
        assert result.store_integrity is False
        assert result.tests_passed is False
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_rollback_without_tests(self, journal: list[tuple[str, str]]) -> None:
        """Test that run_tests=False skips post-rollback tests."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"), test_runner=FakeTestRunner(journal)
        )

        result = await orchestrator.rollback(run_tests=False)

        assert result.tests_passed is None
        assert _ops(journal, "post_rollback") == []

    @pytest.mark.asyncio
    async def test_update_after_rollback(self, journal: list[tuple[str, str]]) -> None:
        """Test that an update can follow an explicit rollback."""
        orchestrator = UpdateOrchestrator(_participants(journal, "a"))

        await orchestrator.rollback()
        result = await orchestrator.update()

        assert result.success is True
        assert orchestrator.state == PipelineState.DONE

    @pytest.mark.asyncio
    async def test_repeated_rollback_after_failed_run(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that rollback can be invoked twice after a failed run."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a", "b", b={"update": ExecutionError("build failed")})
        )

        failed = await orchestrator.update()
        first = await orchestrator.rollback()
        second = await orchestrator.rollback()

        assert failed.state == "rolled_back"
        assert first.success is True
        assert second.success is True
        assert _ops(journal, "rollback") == ["a", "b", "a", "b", "a"]
        assert orchestrator.state == PipelineState.ROLLED_BACK
        assert not orchestrator.is_busy

    @pytest.mark.asyncio
    async def test_participant_raising_on_second_rollback(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that a participant raising on a repeated rollback degrades the result."""
        class SingleRestore(RecordingParticipant):
            async def rollback(self) -> None:
                self._record("rollback")
                if _ops(self.journal, "rollback").count(self.name) > 1:
                    raise StateError("No backup branch found")

        orchestrator = UpdateOrchestrator(
            [
                SingleRestore("git", journal),
                RecordingParticipant(
                    "docker", journal, fail_on={"update": ExecutionError("build failed")}
                ),
            ]
        )

        await orchestrator.update()
        first = await orchestrator.rollback(run_tests=False)
        second = await orchestrator.rollback(run_tests=False)

        for result in (first, second):
            assert result.degraded is True
            assert result.failed_participants == ["git"]
            assert result.outcomes[0].participant == "docker"
            assert result.outcomes[0].success is True
        assert orchestrator.state == PipelineState.FAILED
        assert not orchestrator.is_busy

    @pytest.mark.asyncio
    async def test_list_backups(self, journal: list[tuple[str, str]]) -> None:
        """Test that backups are listed per participant, oldest first."""
        git, docker = _participants(journal, "git", "docker")
        git.backups = ["backup/20240102T000000000000Z", "backup/20240101T000000000000Z"]

        listing = await UpdateOrchestrator([git, docker]).list_backups()

        assert listing == {
            "git": ["backup/20240101T000000000000Z", "backup/20240102T000000000000Z"],
            "docker": [],
        }


# =============================================================================
# Single flight and cancellation
# =============================================================================


class TestSingleFlight:
    """Tests for the single-flight guard."""

    @pytest.mark.asyncio
    async def test_concurrent_update_rejected(self, journal: list[tuple[str, str]]) -> None:
        """Test that a second run is rejected while one is in flight."""
        blocking = BlockingParticipant("git", journal)
        orchestrator = UpdateOrchestrator([blocking])

        first = asyncio.create_task(orchestrator.update())
        await asyncio.wait_for(blocking.started.wait(), timeout=1.0)

        assert orchestrator.is_busy
        with pytest.raises(OrchestratorBusyError) as exc_info:
            await orchestrator.update()
        assert exc_info.value.error_code == "busy"
        with pytest.raises(OrchestratorBusyError):
            await orchestrator.rollback()
        with pytest.raises(OrchestratorBusyError):
            orchestrator.reset()

        # Checks stay available while a run is in flight
        summary = await orchestrator.check_for_updates()
        assert summary.available == ["git"]

        blocking.release.set()
        result = await first
        assert result.success is True
        assert not orchestrator.is_busy
        assert _ops(journal, "update") == ["git"]

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_run(
        self, journal: list[tuple[str, str]]
    ) -> None:
        """Test that cancelling the caller does not abort the run."""
        blocking = BlockingParticipant("git", journal)
        orchestrator = UpdateOrchestrator([RecordingParticipant("snapshot", journal), blocking])

        caller = asyncio.create_task(orchestrator.update())
        await asyncio.wait_for(blocking.started.wait(), timeout=1.0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert orchestrator.is_busy
        blocking.release.set()
        await _wait_idle(orchestrator)

        assert orchestrator.state == PipelineState.DONE
        assert _ops(journal, "rollback") == []

    @pytest.mark.asyncio
    async def test_busy_released_after_failure(self, journal: list[tuple[str, str]]) -> None:
        """Test that the busy flag is released after a failed run."""
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a", "b", b={"update": ExecutionError("x")})
        )

        await orchestrator.update()

        assert not orchestrator.is_busy
        orchestrator.reset()
        assert orchestrator.state == PipelineState.IDLE


# =============================================================================
# History
# =============================================================================


class TestHistoryRecording:
    """Tests for history entries written by the orchestrator."""

    @pytest.mark.asyncio
    async def test_update_recorded_with_commits(
        self, journal: list[tuple[str, str]], tmp_path: Path
    ) -> None:
        """Test that a successful run is recorded with its commits."""
        history = UpdateHistory(tmp_path / "history.json")
        orchestrator = UpdateOrchestrator(
            [RecordingParticipant("snapshot", journal), CommitParticipant("git", journal)],
            history=history,
        )

        await orchestrator.update()

        entries = history.entries()
        assert len(entries) == 1
        assert entries[0].operation == "update"
        assert entries[0].success is True
        assert entries[0].from_commit == "aaa"
        assert entries[0].to_commit == "bbb"
        assert entries[0].participants == ["snapshot", "git"]

    @pytest.mark.asyncio
    async def test_no_op_not_recorded(
        self, journal: list[tuple[str, str]], tmp_path: Path
    ) -> None:
        """Test that a no-op run is not recorded."""
        history = UpdateHistory(tmp_path / "history.json")
        orchestrator = UpdateOrchestrator(
            [RecordingParticipant("git", journal, has_update=False)], history=history
        )

        await orchestrator.update()

        assert history.entries() == []

    @pytest.mark.asyncio
    async def test_failure_and_rollback_recorded(
        self, journal: list[tuple[str, str]], tmp_path: Path
    ) -> None:
        """Test that failed runs and rollbacks are recorded."""
        history = UpdateHistory(tmp_path / "history.json")
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a", "b", b={"update": ExecutionError("x")}),
            history=history,
        )

        await orchestrator.update()
        await orchestrator.rollback()

        latest, failed_update = history.entries()[:2]
        assert latest.operation == "rollback"
        assert failed_update.operation == "update"
        assert failed_update.success is False
        assert failed_update.rollback_success is True
        assert failed_update.error is not None

    @pytest.mark.asyncio
    async def test_history_failure_is_not_fatal(
        self, journal: list[tuple[str, str]], tmp_path: Path
    ) -> None:
        """Test that a broken history file does not fail the run."""
        path = tmp_path / "history.json"
        path.write_text("{corrupt")
        orchestrator = UpdateOrchestrator(
            _participants(journal, "a"), history=UpdateHistory(path)
        )

        result = await orchestrator.update()

        assert result.success is True
