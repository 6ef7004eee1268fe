"""
Update history.

Every update and rollback run is appended to a JSON file:

    {
      "format_version": "1.0",
      "entries": [...],
      "checksum": "sha256:<hex>"
    }

Writes are atomic (temp file + rename) and the checksum detects corruption.
"""

from __future__ import annotations

import copy
import hashlib
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from selfupdate.errors import StateError
from selfupdate.logging import get_logger
from selfupdate.updates.operations import atomic_write_json

logger = get_logger(__name__)

FORMAT_VERSION = "1.0"

VALID_OPERATIONS = {"update", "rollback"}


class HistoryEntry(BaseModel):
    """
    A single run recorded in the history.

    Attributes:
        timestamp: ISO 8601 timestamp (UTC) when the run finished.
        operation: "update" or "rollback".
        success: Whether the run succeeded.
        updated: Whether anything changed.
        state: Final orchestrator state.
        participants: Participants that applied (update) or rolled back.
        from_commit: Source commit before the run, when known.
        to_commit: Source commit after the run, when known.
        message: Summary message.
        error: Serialized error, if any.
        rollback_success: Outcome of the automatic rollback, if one ran.
        duration_seconds: Wall-clock duration of the run.
    """

    timestamp: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="ISO 8601 timestamp when the run finished",
    )
    operation: str = Field(..., description="Run type: update or rollback")
    success: bool = Field(..., description="Whether the run succeeded")
    updated: bool = Field(default=False, description="Whether anything changed")
    state: str | None = Field(default=None, description="Final orchestrator state")
    participants: list[str] = Field(default_factory=list)
    from_commit: str | None = None
    to_commit: str | None = None
    message: str | None = None
    error: dict[str, Any] | None = None
    rollback_success: bool | None = None
    duration_seconds: float | None = None

    @field_validator("operation")
    @classmethod
    def validate_operation(cls, v: str) -> str:
        """Validate the operation name."""
        if v not in VALID_OPERATIONS:
            raise ValueError(
                f"Invalid operation: {v}. Must be one of: {', '.join(sorted(VALID_OPERATIONS))}"
            )
        return v


class UpdateHistory:
    """
    JSON-file backed history of update and rollback runs.

    Example:
        >>> history = UpdateHistory("data/updates/history.json")
        >>> history.record(HistoryEntry(operation="update", success=True))
        >>> history.entries(limit=5)
    """

    def __init__(self, path: Path | str, max_entries: int = 500) -> None:
        """
        Initialize the history.

        Args:
            path: Path of the history file.
            max_entries: Oldest entries beyond this count are dropped on write.
        """
        self.path = Path(path)
        self.max_entries = max_entries

    @staticmethod
    def _calculate_checksum(data: dict[str, Any]) -> str:
        data_copy = copy.deepcopy(data)
        data_copy.pop("checksum", None)
        data_json = json.dumps(data_copy, sort_keys=True, separators=(",", ":"), default=str)
        return f"sha256:{hashlib.sha256(data_json.encode()).hexdigest()}"

    def load(self) -> list[HistoryEntry]:
        """
        Load all entries, oldest first.

        Returns:
            The entries; empty when the file does not exist.

        Raises:
            StateError: If the file is unreadable or its checksum does not match.
        """
        if not self.path.exists():
            return []

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(
                f"Cannot read update history: {self.path}",
                details={"path": str(self.path), "error": str(e)},
            ) from e

        stored = data.get("checksum")
        if stored and stored != self._calculate_checksum(data):
            raise StateError(
                f"Checksum verification failed for {self.path}",
                details={"path": str(self.path)},
            )

        return [HistoryEntry(**entry) for entry in data.get("entries", [])]

    def record(self, entry: HistoryEntry) -> None:
        """Append ``entry`` and rewrite the file atomically."""
        entries = self.load()
        entries.append(entry)
        if len(entries) > self.max_entries:
            entries = entries[-self.max_entries :]

        data: dict[str, Any] = {
            "format_version": FORMAT_VERSION,
            "entries": [e.model_dump() for e in entries],
        }
        data["checksum"] = self._calculate_checksum(data)
        atomic_write_json(self.path, data)

        logger.debug(
            "Recorded history entry",
            extra={"path": str(self.path), "operation": entry.operation},
        )

    def entries(
        self, limit: int | None = None, operation: str | None = None
    ) -> list[HistoryEntry]:
        """
        Return entries newest first.

        Args:
            limit: Maximum number of entries returned.
            operation: Only return entries of this operation.
        """
        result = [
            e for e in reversed(self.load()) if operation is None or e.operation == operation
        ]
        # Stable sort; entries with equal timestamps stay in reverse file order
        result.sort(key=lambda e: e.timestamp, reverse=True)
        if limit is not None and limit > 0:
            result = result[:limit]
        return result
