"""
Interfaces of the external collaborators consulted by the orchestrator.

- TestRunner: regression tests around an update
- ResourceMonitor / MonitoringSession: system resources before and during a run
- PersistentStore: application database health, backup and integrity

Concrete implementations live in selfupdate.regression, selfupdate.monitor
and selfupdate.store. All collaborators are optional.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class TestRunResult(BaseModel):
    """Result of one regression test phase."""

    __test__ = False

    success: bool = Field(..., description="Every test command passed")
    phase: str = Field(default="", description="pre_update, post_update or post_rollback")
    total: int = Field(default=0, description="Number of commands run")
    failed: list[str] = Field(default_factory=list, description="Failed commands")
    output: str = Field(default="", description="Captured output of failures")


class ResourceCheck(BaseModel):
    """Snapshot of system resources compared against thresholds."""

    sufficient: bool = Field(..., description="All thresholds are met")
    reasons: list[str] = Field(default_factory=list, description="Unmet thresholds")
    metrics: dict[str, float] = Field(default_factory=dict)


class StoreStatus(BaseModel):
    """Health of the persistent store."""

    healthy: bool
    message: str = ""


class IntegrityReport(BaseModel):
    """Result of a persistent store integrity check."""

    ok: bool
    problems: list[str] = Field(default_factory=list)


class TestRunner(ABC):
    """Runs regression test suites around an update."""

    __test__ = False

    @abstractmethod
    async def run_pre_update_tests(self) -> TestRunResult:
        """Run tests before anything is mutated."""

    @abstractmethod
    async def run_post_update_tests(self) -> TestRunResult:
        """Run tests after every participant applied."""

    @abstractmethod
    async def run_post_rollback_tests(self) -> TestRunResult:
        """Run tests after a rollback."""


class MonitoringSession(ABC):
    """A background sampling session covering one run."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop sampling."""

    @abstractmethod
    def get_results(self) -> dict[str, Any]:
        """Return the aggregated samples."""


class ResourceMonitor(ABC):
    """Checks and samples system resources."""

    @abstractmethod
    async def check_system_resources(self) -> ResourceCheck:
        """Compare current resources against the configured thresholds."""

    @abstractmethod
    async def start_update_monitoring(self) -> MonitoringSession:
        """Start sampling for an update run."""

    @abstractmethod
    async def start_rollback_monitoring(self) -> MonitoringSession:
        """Start sampling for a rollback run."""


class PersistentStore(ABC):
    """The application's persistent store."""

    @abstractmethod
    async def check_status(self) -> StoreStatus:
        """Report whether the store is reachable and healthy."""

    @abstractmethod
    async def create_backup(self) -> Path:
        """Back up the store and return the backup location."""

    @abstractmethod
    async def verify_integrity(self) -> IntegrityReport:
        """Verify the store's integrity."""
