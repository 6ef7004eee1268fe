"""
SQLite implementation of the persistent store collaborator.

The orchestrator checks the database before an update, copies it with the
online backup API before anything is mutated, and runs
``PRAGMA integrity_check`` after a rollback.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from selfupdate.errors import ResourceError, StateError
from selfupdate.logging import get_logger
from selfupdate.updates.collaborators import IntegrityReport, PersistentStore, StoreStatus
from selfupdate.updates.operations import ensure_directory, unique_timestamped_path

logger = get_logger(__name__)

T = TypeVar("T")


class SqliteStore(PersistentStore):
    """
    Persistent store backed by a SQLite database file.

    All blocking sqlite3 calls run in the default executor.

    Example:
        >>> store = SqliteStore("data/app.db", "backups/db")
        >>> status = await store.check_status()
        >>> backup = await store.create_backup()
    """

    def __init__(self, db_path: Path | str, backup_dir: Path | str = "backups/db") -> None:
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Open a connection to the existing database.

        The URI ``mode=rw`` keeps sqlite from creating an empty database when
        the file is missing.
        """
        conn = sqlite3.connect(f"file:{self.db_path}?mode=rw", uri=True, timeout=30.0)
        try:
            yield conn
        finally:
            conn.close()

    async def _in_executor(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    async def check_status(self) -> StoreStatus:
        if not self.db_path.is_file():
            return StoreStatus(healthy=False, message=f"Database not found: {self.db_path}")

        def _ping() -> None:
            with self._get_connection() as conn:
                conn.execute("SELECT count(*) FROM sqlite_master").fetchone()

        try:
            await self._in_executor(_ping)
        except sqlite3.Error as e:
            logger.warning(
                "Database is not reachable",
                extra={"db_path": str(self.db_path), "error": str(e)},
            )
            return StoreStatus(healthy=False, message=f"Database error: {e}")
        return StoreStatus(healthy=True, message="Database reachable")

    async def create_backup(self) -> Path:
        """
        Copy the database into ``backup_dir`` with the sqlite backup API.

        Returns:
            Path of the backup file.

        Raises:
            StateError: If the database does not exist.
            ResourceError: If the backup cannot be written.
        """
        if not self.db_path.is_file():
            raise StateError(
                f"Database not found: {self.db_path}",
                details={"db_path": str(self.db_path)},
            )
        ensure_directory(self.backup_dir)
        target = unique_timestamped_path(self.backup_dir, f"{self.db_path.stem}-", ".db")

        def _backup() -> None:
            with self._get_connection() as source:
                destination = sqlite3.connect(str(target))
                try:
                    source.backup(destination)
                finally:
                    destination.close()

        try:
            await self._in_executor(_backup)
        except (sqlite3.Error, OSError) as e:
            raise ResourceError(
                f"Failed to back up database: {e}",
                details={"db_path": str(self.db_path), "backup_path": str(target)},
            ) from e

        logger.info(
            "Database backup created",
            extra={"db_path": str(self.db_path), "backup_path": str(target)},
        )
        return target

    async def verify_integrity(self) -> IntegrityReport:
        if not self.db_path.is_file():
            return IntegrityReport(ok=False, problems=[f"Database not found: {self.db_path}"])

        def _check() -> list[str]:
            with self._get_connection() as conn:
                rows = conn.execute("PRAGMA integrity_check").fetchall()
            return [str(row[0]) for row in rows]

        try:
            rows = await self._in_executor(_check)
        except sqlite3.Error as e:
            return IntegrityReport(ok=False, problems=[str(e)])

        if rows == ["ok"]:
            return IntegrityReport(ok=True)
        logger.error(
            "Database integrity check failed",
            extra={"db_path": str(self.db_path), "problems": rows},
        )
        return IntegrityReport(ok=False, problems=rows)
