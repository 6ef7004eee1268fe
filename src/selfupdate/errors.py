"""
Error types for the self-update orchestrator.

This module defines the UpdateError base class and the subclasses used by the
participants and the orchestrator. The class of an error decides how a
pipeline run reacts to it:

- ValidationError, StateError, ResourceError: raised while validating
  preconditions; the run aborts before anything is mutated.
- ExecutionError, VerificationError, TestFailure: raised while backing up,
  applying or verifying; the run rolls back what was already applied.
- OrchestratorBusyError: another run is already in flight.
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """
    Base exception class for update pipeline errors.

    Attributes:
        error_code: Internal error code string (e.g., "validation_failed",
            "invalid_state", "resource_exhausted", "execution_failed").
        message: Human-readable error message.
        details: Optional structured details (e.g., command, paths, refs).

    Example:
        >>> raise UpdateError(
        ...     error_code="invalid_state",
        ...     message="Branch 'main' does not exist on remote",
        ...     details={"branch": "main"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(UpdateError):
    """
    Error raised when a required external tool is missing.

    Maps to the "validation_failed" error code.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ValidationError."""
        super().__init__(
            error_code="validation_failed", message=message, details=details
        )


class StateError(UpdateError):
    """
    Error raised when the system is not in the state an operation expects.

    Maps to the "invalid_state" error code. Used for missing branches or refs,
    a working copy that is not a repository, unhealthy stores and invalid
    orchestrator state transitions.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a StateError."""
        super().__init__(error_code="invalid_state", message=message, details=details)


class ResourceError(UpdateError):
    """
    Error raised when a resource is insufficient or not accessible.

    Maps to the "resource_exhausted" error code (disk space, memory, write
    permission).
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ResourceError."""
        super().__init__(
            error_code="resource_exhausted", message=message, details=details
        )


class ExecutionError(UpdateError):
    """
    Error raised when an external process fails or times out.

    Maps to the "execution_failed" error code.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an ExecutionError."""
        super().__init__(
            error_code="execution_failed", message=message, details=details
        )


class VerificationError(UpdateError):
    """
    Error raised when a post-update health check fails.

    Maps to the "verification_failed" error code.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a VerificationError."""
        super().__init__(
            error_code="verification_failed", message=message, details=details
        )


class TestFailure(UpdateError):
    """
    Error raised when a regression test suite fails.

    Maps to the "tests_failed" error code.
    """

    __test__ = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TestFailure."""
        super().__init__(error_code="tests_failed", message=message, details=details)


class OrchestratorBusyError(UpdateError):
    """
    Error raised when an update or rollback is already in flight.

    Maps to the "busy" error code.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an OrchestratorBusyError."""
        super().__init__(error_code="busy", message=message, details=details)

