"""
Update orchestrator.

This module implements the UpdateOrchestrator state machine that drives the
registered participants through one pipeline run:

    idle -> checking -> precheck -> backup -> applying -> verifying -> done

States:
- idle: No run in progress
- checking: Asking every participant for pending work (concurrently)
- precheck: Validating collaborators and participants; nothing mutated yet
- backup: Backing up the store and every participant
- applying: Calling ``update`` on each participant in order
- verifying: Store health and post-update tests
- done: The run completed (including "nothing to do")
- failed: The run failed before anything was applied, or rollback failed
- rolling_back: Undoing applied participants in reverse order
- rolled_back: Rollback completed

Failures before ``applying`` go straight to ``failed``. A failure while
applying or verifying rolls back exactly the participants whose ``update``
completed, newest first. Runs are single-flight and shielded from
cancellation once started.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from selfupdate.errors import (
    ExecutionError,
    OrchestratorBusyError,
    ResourceError,
    StateError,
    TestFailure,
    UpdateError,
)
from selfupdate.logging import get_scoped_logger
from selfupdate.updates.collaborators import (
    MonitoringSession,
    PersistentStore,
    ResourceMonitor,
    TestRunner,
)
from selfupdate.updates.history import HistoryEntry, UpdateHistory
from selfupdate.updates.models import (
    CheckSummary,
    ErrorDetail,
    PipelineResult,
    RollbackOutcome,
    RollbackResult,
    UpdateOptions,
    UpdateResult,
)
from selfupdate.updates.participant import UpdateParticipant
from selfupdate.updates.registry import ParticipantRegistry

T = TypeVar("T")


class PipelineState(str, Enum):
    """
    States of the update orchestrator.

    State transitions:
    - idle -> checking (update with check_first)
    - idle -> precheck (update without check)
    - idle -> rolling_back (explicit rollback)
    - checking -> precheck (work pending or forced)
    - checking -> done (nothing pending)
    - precheck -> backup | applying (skip_backup) | failed
    - backup -> applying | failed
    - applying -> verifying | rolling_back | failed (nothing applied)
    - verifying -> done | rolling_back
    - rolling_back -> rolled_back | failed
    - done, failed, rolled_back -> idle (next run)
    """

    IDLE = "idle"
    CHECKING = "checking"
    PRECHECK = "precheck"
    BACKUP = "backup"
    APPLYING = "applying"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


# Valid state transitions
_VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {
        PipelineState.CHECKING,
        PipelineState.PRECHECK,
        PipelineState.ROLLING_BACK,
    },
    PipelineState.CHECKING: {PipelineState.PRECHECK, PipelineState.DONE, PipelineState.FAILED},
    PipelineState.PRECHECK: {PipelineState.BACKUP, PipelineState.APPLYING, PipelineState.FAILED},
    PipelineState.BACKUP: {PipelineState.APPLYING, PipelineState.FAILED},
    PipelineState.APPLYING: {
        PipelineState.VERIFYING,
        PipelineState.ROLLING_BACK,
        PipelineState.FAILED,
    },
    PipelineState.VERIFYING: {PipelineState.DONE, PipelineState.ROLLING_BACK},
    PipelineState.ROLLING_BACK: {PipelineState.ROLLED_BACK, PipelineState.FAILED},
    PipelineState.DONE: {PipelineState.IDLE},
    PipelineState.FAILED: {PipelineState.IDLE},
    PipelineState.ROLLED_BACK: {PipelineState.IDLE},
}

_TERMINAL_STATES = {PipelineState.DONE, PipelineState.FAILED, PipelineState.ROLLED_BACK}


def _wrap_error(exc: Exception, **context: Any) -> UpdateError:
    """
    Return ``exc`` as an UpdateError carrying ``context`` in its details.

    UpdateErrors are annotated in place; anything else becomes an
    ExecutionError chained to the original exception.
    """
    if isinstance(exc, UpdateError):
        for key, value in context.items():
            exc.details.setdefault(key, value)
        return exc
    wrapped = ExecutionError(
        str(exc) or type(exc).__name__,
        details={**context, "exception": type(exc).__name__},
    )
    wrapped.__cause__ = exc
    return wrapped


class UpdateOrchestrator:
    """
    Coordinates the participants of a self-update.

    This class orchestrates:
    - Checking every participant for pending work
    - Validating preconditions (store, tests, resources, participants)
    - Backing up the store and every participant
    - Applying participants in order, rolling back on failure
    - Verifying the result and recording it in the update history

    Collaborators (test runner, resource monitor, persistent store, history)
    are optional.

    Example:
        >>> orchestrator = UpdateOrchestrator([snapshot, git, docker])
        >>> result = await orchestrator.update(UpdateOptions(run_tests=True))
        >>> result.success, result.state
        (True, 'done')
    """

    def __init__(
        self,
        participants: ParticipantRegistry | Iterable[UpdateParticipant],
        *,
        test_runner: TestRunner | None = None,
        monitor: ResourceMonitor | None = None,
        store: PersistentStore | None = None,
        history: UpdateHistory | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            participants: Participants in pipeline order.
            test_runner: Optional regression test runner.
            monitor: Optional resource monitor.
            store: Optional persistent store.
            history: Optional update history.

        Raises:
            ValueError: If two participants share a name.
        """
        if isinstance(participants, ParticipantRegistry):
            self.registry = participants
        else:
            self.registry = ParticipantRegistry(participants)
        self.test_runner = test_runner
        self.monitor = monitor
        self.store = store
        self.history = history
        self.log = get_scoped_logger("orchestrator")

        self._state = PipelineState.IDLE
        self._active_operation: str | None = None
        self._current_task: asyncio.Task[Any] | None = None
        self._test_results: dict[str, Any] = {}

    @property
    def state(self) -> PipelineState:
        """Get the current state."""
        return self._state

    @property
    def is_busy(self) -> bool:
        """True while an update or rollback is in flight."""
        return self._active_operation is not None

    def _transition_to(self, new_state: PipelineState) -> None:
        """
        Transition to a new state.

        Raises:
            StateError: If the transition is not valid.
        """
        current = self._state
        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise StateError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        self.log.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={"old_state": current.value, "new_state": new_state.value},
        )
        self._state = new_state

    def _reset_to_idle(self) -> None:
        if self._state in _TERMINAL_STATES:
            self._transition_to(PipelineState.IDLE)

    def _abandon(self) -> None:
        if self._state not in _TERMINAL_STATES and self._state != PipelineState.IDLE:
            self.log.error(f"Run aborted unexpectedly in state {self._state.value}")
            self._state = PipelineState.FAILED

    def reset(self) -> None:
        """
        Reset the orchestrator to idle state.

        Only needed after manual intervention; runs reset terminal states
        themselves.

        Raises:
            OrchestratorBusyError: If a run is in flight.
        """
        if self.is_busy:
            raise OrchestratorBusyError(
                "Cannot reset while a run is in progress",
                details={"active_operation": self._active_operation},
            )
        self.log.info("Resetting orchestrator to idle")
        self._state = PipelineState.IDLE

    # -------------------------------------------------------------------------
    # Single-flight execution
    # -------------------------------------------------------------------------

    def _claim(self, operation: str) -> None:
        if self._active_operation is not None:
            raise OrchestratorBusyError(
                f"Cannot start {operation}: {self._active_operation} already in progress",
                details={
                    "active_operation": self._active_operation,
                    "requested_operation": operation,
                },
            )
        self._active_operation = operation

    async def _release_after(self, coro: Awaitable[T]) -> T:
        try:
            return await coro
        finally:
            self._active_operation = None
            self._current_task = None

    async def _run_single_flight(
        self, operation: str, coro_factory: Callable[[], Coroutine[Any, Any, T]]
    ) -> T:
        self._claim(operation)
        task = asyncio.create_task(self._release_after(coro_factory()))
        self._current_task = task
        # A cancelled caller does not abandon a half-applied pipeline
        return await asyncio.shield(task)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _prepare(self, participants: list[UpdateParticipant], options: UpdateOptions) -> None:
        for participant in participants:
            participant.prepare(options)

    async def check_for_updates(self, options: UpdateOptions | None = None) -> CheckSummary:
        """
        Ask every participant for pending work, concurrently.

        Never mutates anything and never raises for participant errors; they
        are reported in ``CheckSummary.errors``.

        Args:
            options: Options of the run the check is for, e.g. the target
                branch. Defaults to ``UpdateOptions()``.
        """
        participants = list(self.registry)
        self._prepare(participants, options or UpdateOptions())
        outcomes = await asyncio.gather(
            *(p.check_for_updates() for p in participants), return_exceptions=True
        )

        summary = CheckSummary()
        for participant, outcome in zip(participants, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                summary.errors[participant.name] = ErrorDetail.from_exception(
                    outcome, participant.name
                )
                self.log.error(
                    f"Check of {participant.name} failed: {outcome}",
                    extra={"participant": participant.name},
                )
                continue
            summary.infos[participant.name] = outcome
            if outcome.has_update:
                summary.available.append(participant.name)

        triggering = [p.name for p in participants if p.triggers_update] or [
            p.name for p in participants
        ]
        summary.has_updates = any(name in summary.available for name in triggering)

        self.log.info(
            f"Check complete: {len(summary.available)} participant(s) with pending work, "
            f"{len(summary.errors)} error(s)",
            extra={"available": summary.available, "errors": list(summary.errors)},
        )
        return summary

    def _active_participants(self, options: UpdateOptions) -> list[UpdateParticipant]:
        return [p for p in self.registry if not options.skips(p.name)]

    async def _call_each(
        self,
        phase: str,
        participants: list[UpdateParticipant],
        call: Callable[[UpdateParticipant], Awaitable[Any]],
    ) -> None:
        for participant in participants:
            self.log.info(f"{phase}: {participant.name}")
            try:
                await call(participant)
            except Exception as e:
                error = _wrap_error(e, participant=participant.name, phase=phase)
                if error is e:
                    raise
                raise error from e

    async def pre_update_check(self, options: UpdateOptions) -> None:
        """
        Validate collaborators, then every participant in order.

        Raises:
            StateError: If the persistent store is unhealthy.
            TestFailure: If the pre-update tests fail.
            ResourceError: If system resources are insufficient.
            UpdateError: The first participant precheck failure.
        """
        if self.store is not None:
            status = await self.store.check_status()
            if not status.healthy:
                raise StateError(
                    f"Persistent store is unhealthy: {status.message}",
                    details={"collaborator": "store", "phase": "precheck"},
                )

        if options.run_tests and self.test_runner is not None:
            tests = await self.test_runner.run_pre_update_tests()
            self._test_results["pre_update"] = tests.model_dump()
            if not tests.success:
                raise TestFailure(
                    "Pre-update tests failed",
                    details={"collaborator": "tests", "phase": "precheck", "failed": tests.failed},
                )

        if self.monitor is not None:
            resources = await self.monitor.check_system_resources()
            if not resources.sufficient:
                raise ResourceError(
                    f"Insufficient system resources: {'; '.join(resources.reasons)}",
                    details={
                        "collaborator": "monitor",
                        "phase": "precheck",
                        "reasons": resources.reasons,
                        "metrics": resources.metrics,
                    },
                )

        participants = self._active_participants(options)
        self._prepare(participants, options)
        await self._call_each("precheck", participants, lambda p: p.pre_update_check())

    async def backup(self, options: UpdateOptions) -> None:
        """
        Back up the persistent store, then every participant in order.

        Skipped entirely when ``options.skip_backup`` is set.
        """
        if options.skip_backup:
            self.log.warning("Backup skipped by request")
            return

        if self.store is not None:
            path = await self.store.create_backup()
            self.log.info(f"Store backed up to {path}")

        await self._call_each(
            "backup",
            self._active_participants(options),
            lambda p: p.backup(),
        )

    async def _verify(self, options: UpdateOptions) -> None:
        if self.store is not None:
            status = await self.store.check_status()
            if not status.healthy:
                raise StateError(
                    f"Persistent store is unhealthy after update: {status.message}",
                    details={"collaborator": "store", "phase": "verify"},
                )

        if options.run_tests and self.test_runner is not None:
            tests = await self.test_runner.run_post_update_tests()
            self._test_results["post_update"] = tests.model_dump()
            if not tests.success:
                raise TestFailure(
                    "Post-update tests failed",
                    details={"collaborator": "tests", "phase": "verify", "failed": tests.failed},
                )

    async def _rollback_participants(
        self, participants: list[UpdateParticipant], run_tests: bool
    ) -> RollbackResult:
        """Roll back ``participants`` in the given order; never raises for them."""
        result = RollbackResult()

        for participant in participants:
            self.log.info(f"rollback: {participant.name}")
            try:
                await participant.rollback()
            except Exception as e:
                error = _wrap_error(e, participant=participant.name, phase="rollback")
                self.log.error(
                    f"Rollback of {participant.name} failed: {error.message}",
                    extra={"participant": participant.name, "error": error.to_dict()},
                )
                result.outcomes.append(
                    RollbackOutcome(
                        participant=participant.name,
                        success=False,
                        error=ErrorDetail.from_exception(error, participant.name),
                    )
                )
            else:
                result.outcomes.append(RollbackOutcome(participant=participant.name, success=True))

        result.success = all(o.success for o in result.outcomes)

        if self.store is not None:
            try:
                report = await self.store.verify_integrity()
                result.store_integrity = report.ok
                if not report.ok:
                    self.log.error(
                        "Store integrity check failed after rollback",
                        extra={"problems": report.problems},
                    )
            except Exception as e:
                result.store_integrity = False
                self.log.error(f"Store integrity check raised: {e}")

        if run_tests and self.test_runner is not None:
            try:
                tests = await self.test_runner.run_post_rollback_tests()
                self._test_results["post_rollback"] = tests.model_dump()
                result.tests_passed = tests.success
            except Exception as e:
                result.tests_passed = False
                self.log.error(f"Post-rollback tests raised: {e}")

        if result.degraded:
            self.log.error(
                "Rollback completed with failures",
                extra={"failed_participants": result.failed_participants},
            )
        else:
            self.log.success("Rollback completed")
        return result

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update(self, options: UpdateOptions | None = None) -> PipelineResult:
        """
        Run the full pipeline.

        Errors are reported in the returned PipelineResult rather than raised.

        Raises:
            OrchestratorBusyError: If an update or rollback is already running.
        """
        options = options or UpdateOptions()
        return await self._run_single_flight("update", lambda: self._run_update(options))

    async def _run_update(self, options: UpdateOptions) -> PipelineResult:
        started = datetime.now(UTC)
        self._test_results = {}
        result = PipelineResult(state=self._state.value, started_at=started)
        self._reset_to_idle()

        session = await self._start_monitoring("update")
        try:
            await self._execute_update(options, result)
        except BaseException:
            self._abandon()
            raise
        finally:
            result.tests = dict(self._test_results)
            if session is not None:
                result.monitoring = await self._stop_monitoring(session)
            result.state = self._state.value
            result.finished_at = datetime.now(UTC)
            self._record_update(result, started)

        if result.success:
            self.log.success(result.message)
        else:
            self.log.error(result.message, extra={"state": result.state})
        return result

    def _fail(self, result: PipelineResult, exc: Exception, phase: str) -> None:
        error = _wrap_error(exc, phase=phase)
        detail = ErrorDetail.from_exception(error, error.details.get("participant"))
        result.success = False
        result.error = detail
        result.failed_participant = detail.participant
        result.message = f"{phase} failed: {detail.message}"
        self.log.error(result.message, extra={"error": detail.model_dump()})
        self._transition_to(PipelineState.FAILED)

    async def _execute_update(self, options: UpdateOptions, result: PipelineResult) -> None:
        # Check
        if options.check_first:
            self._transition_to(PipelineState.CHECKING)
            summary = await self.check_for_updates(options)
            result.check = summary
            if not summary.has_updates and not summary.errors and not options.force:
                result.success = True
                result.updated = False
                result.message = "No updates available"
                self._transition_to(PipelineState.DONE)
                return

        # Pre-update check
        self._transition_to(PipelineState.PRECHECK)
        try:
            await self.pre_update_check(options)
        except Exception as e:
            self._fail(result, e, "precheck")
            return

        # Backup
        if not options.skip_backup:
            self._transition_to(PipelineState.BACKUP)
            try:
                await self.backup(options)
            except Exception as e:
                self._fail(result, e, "backup")
                return
        else:
            self.log.warning("Backup skipped by request")

        # Apply
        self._transition_to(PipelineState.APPLYING)
        applied: list[UpdateParticipant] = []
        for participant in self.registry:
            if options.skips(participant.name):
                self.log.info(f"apply: {participant.name} skipped")
                result.results.append(
                    UpdateResult(participant=participant.name, message="Skipped")
                )
                continue

            self.log.info(f"apply: {participant.name}")
            try:
                outcome = await participant.update(options)
                if not outcome.success:
                    raise ExecutionError(
                        outcome.error or outcome.message or f"{participant.name} update failed",
                        details={"participant": participant.name},
                    )
            except Exception as e:
                error = _wrap_error(e, participant=participant.name, phase="apply")
                result.results.append(
                    UpdateResult(
                        participant=participant.name,
                        success=False,
                        error=error.message,
                    )
                )
                await self._abort_and_rollback(result, error, "apply", applied, options)
                return

            applied.append(participant)
            result.results.append(outcome)

        result.updated = any(r.updated for r in result.results)

        # Verify
        self._transition_to(PipelineState.VERIFYING)
        try:
            await self._verify(options)
        except Exception as e:
            await self._abort_and_rollback(result, e, "verify", applied, options)
            return

        result.success = True
        result.message = (
            f"Update completed: {len(applied)} participant(s) applied"
            if applied
            else "Update completed: no participant applied"
        )
        self._transition_to(PipelineState.DONE)

    async def _abort_and_rollback(
        self,
        result: PipelineResult,
        exc: Exception,
        phase: str,
        applied: list[UpdateParticipant],
        options: UpdateOptions,
    ) -> None:
        error = _wrap_error(exc, phase=phase)
        detail = ErrorDetail.from_exception(error, error.details.get("participant"))
        result.success = False
        result.error = detail
        result.failed_participant = detail.participant
        self.log.error(
            f"{phase} failed: {detail.message}",
            extra={"error": detail.model_dump()},
        )

        if not applied and phase == "apply":
            result.message = f"apply failed: {detail.message}; nothing to roll back"
            self._transition_to(PipelineState.FAILED)
            return

        self._transition_to(PipelineState.ROLLING_BACK)
        rollback = await self._rollback_participants(
            list(reversed(applied)), run_tests=options.run_tests
        )
        result.rollback = rollback
        result.updated = False

        if rollback.success:
            result.message = f"{phase} failed: {detail.message}; rolled back"
            self._transition_to(PipelineState.ROLLED_BACK)
        else:
            result.message = (
                f"{phase} failed: {detail.message}; rollback failed for "
                f"{', '.join(rollback.failed_participants)}"
            )
            self._transition_to(PipelineState.FAILED)

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self, run_tests: bool = True) -> RollbackResult:
        """
        Roll back every participant in reverse order.

        Participant failures are logged and reported in the result; the
        remaining participants are still rolled back.

        Args:
            run_tests: Run the post-rollback tests when a test runner is set.

        Raises:
            OrchestratorBusyError: If an update or rollback is already running.
        """
        return await self._run_single_flight(
            "rollback", lambda: self._run_rollback(run_tests)
        )

    async def _run_rollback(self, run_tests: bool) -> RollbackResult:
        started = datetime.now(UTC)
        self._test_results = {}
        self._reset_to_idle()
        session = await self._start_monitoring("rollback")

        self._transition_to(PipelineState.ROLLING_BACK)
        try:
            result = await self._rollback_participants(list(reversed(self.registry)), run_tests)
        except BaseException:
            self._abandon()
            raise
        finally:
            monitoring = await self._stop_monitoring(session) if session is not None else {}

        result.monitoring = monitoring
        self._transition_to(
            PipelineState.ROLLED_BACK if result.success else PipelineState.FAILED
        )
        self._record_rollback(result, started)
        return result

    async def list_backups(self) -> dict[str, list[str]]:
        """Restorable backups of every participant, oldest first, by participant name."""
        participants = list(self.registry)
        listings = await asyncio.gather(*(p.list_backups() for p in participants))
        return {p.name: listing for p, listing in zip(participants, listings, strict=True)}

    # -------------------------------------------------------------------------
    # Monitoring and history
    # -------------------------------------------------------------------------

    async def _start_monitoring(self, operation: str) -> MonitoringSession | None:
        if self.monitor is None:
            return None
        try:
            if operation == "rollback":
                return await self.monitor.start_rollback_monitoring()
            return await self.monitor.start_update_monitoring()
        except Exception as e:
            self.log.warning(f"Could not start {operation} monitoring: {e}")
            return None

    async def _stop_monitoring(self, session: MonitoringSession) -> dict[str, Any]:
        try:
            await session.stop()
            return session.get_results()
        except Exception as e:
            self.log.warning(f"Could not collect monitoring results: {e}")
            return {}

    def _record(self, entry: HistoryEntry) -> None:
        if self.history is None:
            return
        try:
            self.history.record(entry)
        except (UpdateError, OSError) as e:
            self.log.warning(f"Could not record update history: {e}")

    def _record_update(self, result: PipelineResult, started: datetime) -> None:
        # Runs that found nothing to do are not recorded
        if result.success and not result.results:
            return
        previous = new = None
        for outcome in result.results:
            previous = previous or getattr(outcome, "previous_commit", None)
            new = new or getattr(outcome, "new_commit", None)
        self._record(
            HistoryEntry(
                operation="update",
                success=result.success,
                updated=result.updated,
                state=result.state,
                participants=[r.participant for r in result.results if r.updated],
                from_commit=previous,
                to_commit=new,
                message=result.message,
                error=result.error.model_dump() if result.error else None,
                rollback_success=result.rollback.success if result.rollback else None,
                duration_seconds=(datetime.now(UTC) - started).total_seconds(),
            )
        )

    def _record_rollback(self, result: RollbackResult, started: datetime) -> None:
        self._record(
            HistoryEntry(
                operation="rollback",
                success=result.success,
                state=self._state.value,
                participants=[o.participant for o in result.outcomes if o.success],
                message=(
                    "Rollback completed"
                    if result.success
                    else f"Rollback failed for {', '.join(result.failed_participants)}"
                ),
                duration_seconds=(datetime.now(UTC) - started).total_seconds(),
            )
        )
