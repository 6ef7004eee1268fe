"""
Update participant abstraction.

A participant is an independently-failing unit of the update pipeline (source
sync, container redeploy, filesystem snapshot). The orchestrator drives every
participant through the same five operations, in a fixed order:

    check_for_updates -> pre_update_check -> backup -> update -> rollback

Contract:
- ``check_for_updates`` is read-only.
- ``pre_update_check`` raises before anything is mutated.
- ``backup`` must be safe to call when there is nothing to back up.
- ``update`` applies the change and returns an UpdateResult; it raises on
  failure.
- ``rollback`` restores the state captured by ``backup`` on a best-effort
  basis. It may raise; the orchestrator records the failure and moves on.
- ``rollback`` may be called again after it succeeded; repeating it leaves
  the restored state in place.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from selfupdate.logging import ScopedLogger, get_scoped_logger
from selfupdate.updates.models import UpdateInfo, UpdateOptions, UpdateResult


class UpdateParticipant(ABC):
    """
    Abstract base class for update participants.

    Concrete implementations:
    - SnapshotParticipant: filesystem copy of the application tree
    - SourceSyncParticipant: git working copy synced to a remote branch
    - ContainerRedeployParticipant: container rebuilt from the synced tree

    Subclasses set ``name``; the name is also the logging scope.

    ``triggers_update`` tells the orchestrator whether pending work reported
    by this participant is enough to start a run. Participants that always
    have work (redeploy, snapshot) follow the others and set it to False.
    """

    name: str = ""
    triggers_update: bool = True

    def __init__(self) -> None:
        if not self.name:
            raise TypeError(f"{type(self).__name__} must define a name")
        self.log: ScopedLogger = get_scoped_logger(self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    def prepare(self, options: UpdateOptions) -> None:
        """
        Bind the options of the coming run.

        Called by the orchestrator before ``check_for_updates`` and
        ``pre_update_check`` so that both look at the same target as
        ``update``. The default does nothing.
        """

    async def list_backups(self) -> list[str]:
        """Names of the backups this participant can restore, oldest first."""
        return []

    @abstractmethod
    async def check_for_updates(self) -> UpdateInfo:
        """
        Report whether this participant has pending work.

        Must not mutate anything.

        Raises:
            UpdateError: If the state cannot be determined.
        """

    @abstractmethod
    async def pre_update_check(self) -> None:
        """
        Validate preconditions for an update.

        Raises:
            ValidationError: If a required tool is missing.
            StateError: If the system is not in the expected state.
            ResourceError: If a resource is insufficient.
        """

    @abstractmethod
    async def backup(self) -> Any:
        """
        Capture the state needed to undo ``update``.

        Returns:
            An optional artifact (path, ref name) describing the backup.
        """

    @abstractmethod
    async def update(self, options: UpdateOptions) -> UpdateResult:
        """
        Apply pending work.

        Args:
            options: Options of the current run.

        Raises:
            UpdateError: If the update failed.
        """

    @abstractmethod
    async def rollback(self) -> None:
        """
        Restore the state captured by the latest backup.

        Raises:
            UpdateError: If the state could not be restored.
        """
