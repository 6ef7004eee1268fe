"""
Filesystem operations used by the participants and the history store.

- Directory creation and write-access checks
- Sortable UTC timestamps for backup artifact names
- Tree walking with excluded directory names, size measurement and copying
- Free-space lookup for paths that may not exist yet
- Atomic JSON file writes (temp file + os.replace)
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from selfupdate.errors import ResourceError
from selfupdate.logging import get_logger

logger = get_logger(__name__)

# strftime format of backup artifact timestamps; lexicographic order is time order
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"

WRITE_CHECK_FILE_NAME = ".write_check"


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to the directory.
        parents: If True, create parent directories as needed.
        mode: Directory permissions (default 0o755).

    Returns:
        The directory path.

    Raises:
        ResourceError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise ResourceError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def timestamp_suffix(now: datetime | None = None) -> str:
    """Return a sortable UTC timestamp such as ``20240101T120000123456Z``."""
    return (now or datetime.now(UTC)).strftime(TIMESTAMP_FORMAT)


def unique_timestamped_path(parent: Path, prefix: str, suffix: str = "") -> Path:
    """
    Return ``parent/<prefix><timestamp><suffix>`` that does not exist yet.

    Two calls within the same microsecond get distinct names via a numeric
    tiebreaker, which still sorts after the plain name.
    """
    stamp = timestamp_suffix()
    candidate = parent / f"{prefix}{stamp}{suffix}"
    counter = 1
    while candidate.exists():
        candidate = parent / f"{prefix}{stamp}-{counter}{suffix}"
        counter += 1
    return candidate


def latest_entry(parent: Path, prefix: str) -> Path | None:
    """
    Return the lexicographically latest child of ``parent`` named ``prefix*``.

    Returns:
        The path, or None when ``parent`` is missing or has no such child.
    """
    if not parent.is_dir():
        return None
    candidates = sorted(
        child.name for child in parent.iterdir() if child.name.startswith(prefix)
    )
    if not candidates:
        return None
    return parent / candidates[-1]


def iter_tree_files(
    root: Path,
    exclude_dirs: Iterable[str] = (),
    exclude_paths: Iterable[Path] = (),
) -> Iterator[Path]:
    """
    Yield every regular file and symlink below ``root``.

    Symlinks to directories are yielded like files and never followed.

    Args:
        root: Directory to walk.
        exclude_dirs: Directory names skipped at any depth.
        exclude_paths: Absolute directories skipped (e.g. the backup
            directory when it lives inside ``root``).
    """
    excluded_names = set(exclude_dirs)
    excluded_paths = {p.resolve() for p in exclude_paths}

    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        kept = [
            d
            for d in dirnames
            if d not in excluded_names and (current / d).resolve() not in excluded_paths
        ]
        links = [d for d in kept if (current / d).is_symlink()]
        dirnames[:] = sorted(d for d in kept if d not in links)
        for filename in sorted([*filenames, *links]):
            yield current / filename


def directory_size(
    root: Path,
    exclude_dirs: Iterable[str] = (),
    exclude_paths: Iterable[Path] = (),
) -> int:
    """Return the total size in bytes of the files below ``root``."""
    total = 0
    for path in iter_tree_files(root, exclude_dirs, exclude_paths):
        try:
            total += path.lstat().st_size
        except OSError:
            logger.debug("Skipping unreadable file", extra={"path": str(path)})
    return total


def copy_tree_files(
    source: Path,
    destination: Path,
    exclude_dirs: Iterable[str] = (),
    exclude_paths: Iterable[Path] = (),
) -> int:
    """
    Copy the files below ``source`` into ``destination``, keeping relative paths.

    Existing files in ``destination`` are overwritten; files not present in
    ``source`` are left alone.

    Returns:
        Number of files copied.
    """
    copied = 0
    for path in iter_tree_files(source, exclude_dirs, exclude_paths):
        target = destination / path.relative_to(source)
        target.parent.mkdir(parents=True, exist_ok=True)
        if path.is_symlink():
            if target.is_symlink() or target.exists():
                target.unlink()
            target.symlink_to(os.readlink(path))
        else:
            shutil.copy2(path, target)
        copied += 1
    return copied


def nearest_existing_ancestor(path: Path) -> Path:
    """Return ``path`` or its closest existing parent."""
    current = path.absolute()
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


def available_space(path: Path) -> int:
    """
    Return free bytes on the filesystem that holds (or will hold) ``path``.

    Nothing is created; a missing path is measured at its nearest existing
    ancestor.
    """
    return shutil.disk_usage(nearest_existing_ancestor(path)).free


def check_write_access(directory: Path) -> None:
    """
    Check that files can be created in ``directory``.

    Raises:
        ResourceError: If the check file cannot be written or removed.
    """
    marker = directory / WRITE_CHECK_FILE_NAME
    try:
        marker.write_text("ok", encoding="utf-8")
        marker.unlink()
    except OSError as e:
        raise ResourceError(
            f"Directory is not writable: {directory}",
            details={"path": str(directory), "error": str(e)},
        ) from e


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Write ``data`` as JSON to ``path`` atomically.

    The JSON is written to a temporary file in the same directory which then
    replaces ``path``, so readers never see a partial file.
    """
    ensure_directory(path.parent)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
