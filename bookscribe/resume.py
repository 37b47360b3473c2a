"""Completed-artifact checks and atomic artifact writes."""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

log = logging.getLogger(__name__)

TEMP_SUFFIX = ".part"


class ResumeStore(ABC):
    """Answers whether a unit's output artifact is already complete.

    Queried before any unit is scheduled; a True answer means the unit is
    skipped without touching the rasterizer or the transcriber.
    """

    @abstractmethod
    def exists(self, output_path: Path) -> bool:
        """Return True when *output_path* holds a completed artifact."""
        ...


class FileResumeStore(ResumeStore):
    """Filesystem-backed store.

    Artifacts only ever appear under their final name through
    :func:`atomic_write_bytes`, so a non-empty regular file is complete.
    Empty files (left by an interrupted non-atomic writer) are not.
    """

    def exists(self, output_path: Path) -> bool:
        try:
            stat = output_path.stat()
        except FileNotFoundError:
            return False
        return output_path.is_file() and stat.st_size > 0


def atomic_write_bytes(path: Path, data: bytes) -> Path:
    """Write *data* to a temp file beside *path*, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=TEMP_SUFFIX,
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    log.debug("atomic_write: %s (%s bytes)", path, len(data))
    return path


def atomic_write_text(path: Path, text: str) -> Path:
    return atomic_write_bytes(path, text.encode("utf-8"))


def clear_stale_temp_files(directory: Path) -> int:
    """Remove temp files left behind by a crashed run. Returns the count."""
    if not directory.is_dir():
        return 0
    removed = 0
    for p in directory.glob(f".*{TEMP_SUFFIX}"):
        try:
            p.unlink()
            removed += 1
        except FileNotFoundError:
            continue
    if removed:
        log.info("Removed %s stale temp files from %s", removed, directory)
    return removed
