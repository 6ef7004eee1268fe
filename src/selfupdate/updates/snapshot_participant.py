"""
Filesystem snapshot participant.

Copies the application tree into ``<backup_dir>/backup_<ts>`` so a failed
update can be undone file by file. Its "update" is taking a snapshot; it
never mutates the application tree except during rollback. Rollback restores
the latest snapshot unless one was picked with ``select_backup``.

All blocking filesystem work runs in the default executor.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import Field

from selfupdate.errors import ResourceError, StateError
from selfupdate.updates.models import UpdateInfo, UpdateOptions, UpdateResult
from selfupdate.updates.operations import (
    available_space,
    copy_tree_files,
    directory_size,
    ensure_directory,
    latest_entry,
    check_write_access,
    unique_timestamped_path,
)
from selfupdate.updates.participant import UpdateParticipant

BACKUP_PREFIX = "backup_"

DEFAULT_EXCLUDE_DIRS = ("node_modules", ".git", "logs", "backups", "__pycache__", ".venv")


class SnapshotInfo(UpdateInfo):
    """Check result of the snapshot participant."""

    required_space: int = Field(default=0, description="Bytes needed for a snapshot")
    available_space: int = Field(default=0, description="Free bytes at the destination")
    tree_size: int = Field(default=0, description="Bytes in the source tree")
    sufficient_space: bool = False
    backup_dir: str = ""


class SnapshotResult(UpdateResult):
    """Apply result of the snapshot participant."""

    backup_path: str | None = None
    files_copied: int = 0


class SnapshotParticipant(UpdateParticipant):
    """
    Takes filesystem snapshots of the application tree.

    Example:
        >>> participant = SnapshotParticipant("/srv/app", "/srv/app/backups")
        >>> info = await participant.check_for_updates()
        >>> info.sufficient_space
        True
    """

    name = "snapshot"
    triggers_update = False

    def __init__(
        self,
        source_dir: Path | str = ".",
        backup_dir: Path | str = "backups",
        *,
        space_factor: float = 2.0,
        exclude_dirs: list[str] | tuple[str, ...] = DEFAULT_EXCLUDE_DIRS,
    ) -> None:
        super().__init__()
        self.source_dir = Path(source_dir)
        backup_path = Path(backup_dir)
        if not backup_path.is_absolute():
            backup_path = self.source_dir / backup_path
        self.backup_dir = backup_path
        self.space_factor = space_factor
        self.exclude_dirs = tuple(exclude_dirs)
        self.restore_name: str | None = None

    async def _in_executor(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def _measure(self) -> SnapshotInfo:
        size = directory_size(self.source_dir, self.exclude_dirs, [self.backup_dir])
        free = available_space(self.backup_dir)
        required = int(size * self.space_factor)
        sufficient = required <= free
        return SnapshotInfo(
            participant=self.name,
            has_update=sufficient,
            tree_size=size,
            required_space=required,
            available_space=free,
            sufficient_space=sufficient,
            backup_dir=str(self.backup_dir),
            message=(
                f"{required} bytes required, {free} bytes available"
                if sufficient
                else f"Insufficient space for snapshot: {required} bytes required, {free} available"
            ),
        )

    async def check_for_updates(self) -> SnapshotInfo:
        if not self.source_dir.is_dir():
            raise StateError(
                f"Source directory does not exist: {self.source_dir}",
                details={"source_dir": str(self.source_dir)},
            )
        info = await self._in_executor(self._measure)
        if info.sufficient_space:
            self.log.info(info.message)
        else:
            self.log.warning(info.message)
        return info

    async def pre_update_check(self) -> None:
        def _check_writable() -> None:
            ensure_directory(self.backup_dir)
            check_write_access(self.backup_dir)

        await self._in_executor(_check_writable)
        self.log.success(f"Backup directory {self.backup_dir} is writable")

    def _snapshot(self) -> tuple[Path, int]:
        ensure_directory(self.backup_dir)
        destination = unique_timestamped_path(self.backup_dir, BACKUP_PREFIX)
        destination.mkdir(parents=True)
        try:
            copied = copy_tree_files(
                self.source_dir, destination, self.exclude_dirs, [self.backup_dir]
            )
        except OSError as e:
            raise ResourceError(
                f"Snapshot into {destination} failed: {e}",
                details={"destination": str(destination), "error": str(e)},
            ) from e
        return destination, copied

    async def backup(self) -> Path:
        """
        Copy the source tree into a new ``backup_<ts>`` directory.

        Returns:
            Path of the new snapshot.
        """
        self.log.info(f"Creating snapshot of {self.source_dir}")
        destination, copied = await self._in_executor(self._snapshot)
        self.log.success(f"Snapshot {destination.name} created ({copied} files)")
        return destination

    async def update(self, options: UpdateOptions) -> SnapshotResult:
        info = await self.check_for_updates()
        if not info.sufficient_space:
            return SnapshotResult(
                participant=self.name,
                success=True,
                updated=False,
                message="Snapshot skipped: insufficient space",
            )

        destination, copied = await self._in_executor(self._snapshot)
        self.log.success(f"Snapshot {destination.name} created ({copied} files)")
        return SnapshotResult(
            participant=self.name,
            success=True,
            updated=True,
            backup_path=str(destination),
            files_copied=copied,
            message=f"Snapshot {destination.name} created",
        )

    def _snapshot_names(self) -> list[str]:
        if not self.backup_dir.is_dir():
            return []
        return sorted(
            child.name
            for child in self.backup_dir.iterdir()
            if child.name.startswith(BACKUP_PREFIX) and child.is_dir()
        )

    async def list_backups(self) -> list[str]:
        return await self._in_executor(self._snapshot_names)

    def select_backup(self, name: str) -> Path:
        """
        Make the next rollback restore the snapshot called ``name``.

        Args:
            name: Directory name of the snapshot, e.g. ``backup_20240101T000000000000Z``.

        Returns:
            Path of the selected snapshot.

        Raises:
            StateError: If there is no snapshot with that name.
        """
        if name not in self._snapshot_names():
            raise StateError(
                f"No snapshot named {name!r} in {self.backup_dir}",
                details={"backup_dir": str(self.backup_dir), "snapshot": name},
            )
        self.restore_name = name
        return self.backup_dir / name

    def _restore(self) -> tuple[Path, int]:
        if self.restore_name is not None:
            snapshot: Path | None = self.backup_dir / self.restore_name
        else:
            snapshot = latest_entry(self.backup_dir, BACKUP_PREFIX)
        if snapshot is None or not snapshot.is_dir():
            raise StateError(
                f"No snapshot found in {self.backup_dir}",
                details={"backup_dir": str(self.backup_dir), "snapshot": self.restore_name},
            )
        copied = copy_tree_files(snapshot, self.source_dir)
        return snapshot, copied

    async def rollback(self) -> None:
        snapshot, copied = await self._in_executor(self._restore)
        self.log.success(f"Restored {copied} files from {snapshot.name}")
