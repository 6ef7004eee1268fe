"""
Data models shared by the participants and the orchestrator.

- UpdateOptions: caller options for one pipeline run (immutable)
- UpdateInfo / UpdateResult: per-participant check and apply results
- CheckSummary, PipelineResult, RollbackResult: orchestrator results
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

from selfupdate.errors import UpdateError


class UpdateOptions(BaseModel):
    """
    Options for a single pipeline run.

    Instances are frozen; the orchestrator hands the same object to every
    participant.

    Attributes:
        branch: Branch to update to. None means the participant's configured
            branch.
        force: Update even when no participant reports pending work.
        skip_backup: Skip the backup phase.
        skip_container_redeploy: Skip the participant named "docker".
        skip_participants: Participant names excluded from the apply phase.
        run_tests: Run the regression tests around the update.
        check_first: Run the check phase before updating.
    """

    model_config = ConfigDict(frozen=True)

    branch: str | None = Field(default=None, description="Target branch")
    force: bool = Field(default=False, description="Update even without pending work")
    skip_backup: bool = Field(default=False, description="Skip the backup phase")
    skip_container_redeploy: bool = Field(
        default=False, description="Skip the container redeploy participant"
    )
    skip_participants: frozenset[str] = Field(
        default_factory=frozenset, description="Participants not applied"
    )
    run_tests: bool = Field(default=False, description="Run regression tests")
    check_first: bool = Field(default=True, description="Check before updating")

    def skips(self, participant: str) -> bool:
        """Return True if ``participant`` must not be applied in this run."""
        if participant in self.skip_participants:
            return True
        return self.skip_container_redeploy and participant == "docker"


class UpdateInfo(BaseModel):
    """Result of a participant's read-only check."""

    participant: str = Field(..., description="Participant name")
    has_update: bool = Field(default=False, description="Pending work exists")
    message: str | None = Field(default=None, description="Human-readable summary")


class UpdateResult(BaseModel):
    """Result of a participant's apply step."""

    participant: str = Field(..., description="Participant name")
    success: bool = Field(default=True, description="The step succeeded")
    updated: bool = Field(default=False, description="Something was changed")
    message: str | None = Field(default=None, description="Human-readable summary")
    error: str | None = Field(default=None, description="Error message on failure")


class ErrorDetail(BaseModel):
    """Serializable description of an error raised during a run."""

    error_code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    participant: str | None = None

    @classmethod
    def from_exception(
        cls, exc: BaseException, participant: str | None = None
    ) -> ErrorDetail:
        """
        Build an ErrorDetail from any exception.

        Exceptions outside the UpdateError taxonomy are reported as
        ``execution_failed`` with the exception type in the details.
        """
        if isinstance(exc, UpdateError):
            return cls(participant=participant, **exc.to_dict())
        return cls(
            error_code="execution_failed",
            message=str(exc) or type(exc).__name__,
            details={"exception": type(exc).__name__},
            participant=participant,
        )


class CheckSummary(BaseModel):
    """Aggregated result of the check phase."""

    has_updates: bool = Field(default=False, description="Any participant has work")
    available: list[str] = Field(
        default_factory=list, description="Participants reporting pending work"
    )
    errors: dict[str, ErrorDetail] = Field(
        default_factory=dict, description="Participants whose check failed"
    )
    infos: dict[str, SerializeAsAny[UpdateInfo]] = Field(
        default_factory=dict, description="Check results by participant"
    )


class RollbackOutcome(BaseModel):
    """Rollback result of one participant."""

    participant: str
    success: bool
    error: ErrorDetail | None = None


class RollbackResult(BaseModel):
    """Result of a rollback (explicit or automatic)."""

    success: bool = Field(default=True, description="Every participant rolled back")
    outcomes: list[RollbackOutcome] = Field(
        default_factory=list, description="Outcomes in execution order"
    )
    store_integrity: bool | None = Field(
        default=None, description="Store integrity after rollback (None: not checked)"
    )
    tests_passed: bool | None = Field(
        default=None, description="Post-rollback tests (None: not run)"
    )
    monitoring: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed_participants(self) -> list[str]:
        return [o.participant for o in self.outcomes if not o.success]

    @property
    def degraded(self) -> bool:
        """True when a participant, the store check or the tests failed."""
        return (
            not self.success or self.store_integrity is False or self.tests_passed is False
        )


class PipelineResult(BaseModel):
    """Result of ``UpdateOrchestrator.update``."""

    success: bool = Field(default=False, description="The run completed")
    updated: bool = Field(default=False, description="At least one participant changed")
    state: str = Field(..., description="Final orchestrator state")
    message: str = Field(default="", description="Human-readable summary")
    check: CheckSummary | None = None
    results: list[SerializeAsAny[UpdateResult]] = Field(default_factory=list)
    failed_participant: str | None = None
    error: ErrorDetail | None = None
    rollback: RollbackResult | None = None
    tests: dict[str, Any] = Field(default_factory=dict)
    monitoring: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
