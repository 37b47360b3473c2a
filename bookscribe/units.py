"""Page enumeration, page file naming and input discovery."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .models import Unit

log = logging.getLogger(__name__)

PAGE_PREFIX = "page_"
_PAGE_NAME_RE = re.compile(r"^page_(\d+)(\.[A-Za-z0-9]+)$")


# ---------------------------------------------------------------------------
# File naming
# ---------------------------------------------------------------------------


def page_filename(index: int, suffix: str) -> str:
    """Return ``page_0001.png``-style names; zero padding keeps listings ordered."""
    return f"{PAGE_PREFIX}{index:04d}{suffix}"


def parse_page_index(name: str, suffix: Optional[str] = None) -> Optional[int]:
    """Inverse of :func:`page_filename`. Returns None for anything else."""
    match = _PAGE_NAME_RE.match(name)
    if not match:
        return None
    if suffix is not None and match.group(2).lower() != suffix.lower():
        return None
    return int(match.group(1))


# ---------------------------------------------------------------------------
# Unit enumeration
# ---------------------------------------------------------------------------


class UnitSource:
    """Ordered, duplicate-free set of 1-based unit indices."""

    def __init__(self, indices: Iterable[int]):
        seen: set[int] = set()
        for index in indices:
            if isinstance(index, bool) or not isinstance(index, int):
                raise ValueError(f"Unit index must be an int, got {index!r}")
            if index < 1:
                raise ValueError(f"Unit index must be >= 1, got {index}")
            if index in seen:
                raise ValueError(f"Duplicate unit index: {index}")
            seen.add(index)
        self.indices: tuple[int, ...] = tuple(sorted(seen))

    @classmethod
    def from_page_count(cls, count: int, limit: Optional[int] = None) -> "UnitSource":
        if count < 0:
            raise ValueError(f"Page count must be >= 0, got {count}")
        n = count if limit is None else min(count, max(0, limit))
        return cls(range(1, n + 1))

    @classmethod
    def from_directory(
        cls,
        directory: Path,
        suffix: str,
        limit: Optional[int] = None,
    ) -> "UnitSource":
        """Collect indices from ``page_NNNN<suffix>`` files in *directory*.

        Names that parse to an index already seen (``page_1.md`` next to
        ``page_0001.md``) are skipped with a warning.
        """
        if not directory.is_dir():
            log.debug("from_directory: %s does not exist", directory)
            return cls(())
        owners: dict[int, str] = {}
        for path in sorted(p for p in directory.iterdir() if p.is_file()):
            index = parse_page_index(path.name, suffix)
            if index is None:
                continue
            if index in owners:
                log.warning(
                    "Ignoring %s: page %s is already provided by %s",
                    path.name,
                    index,
                    owners[index],
                )
                continue
            owners[index] = path.name
        indices = sorted(owners)
        if limit is not None:
            indices = indices[: max(0, limit)]
        return cls(indices)

    def units(
        self,
        output_dir: Path,
        suffix: str,
        *,
        source_dir: Optional[Path] = None,
        source_suffix: Optional[str] = None,
    ) -> list[Unit]:
        """Build one stage's Units; output paths are unique per index."""
        units = []
        for index in self.indices:
            source = None
            if source_dir is not None:
                source = source_dir / page_filename(index, source_suffix or suffix)
            units.append(
                Unit(
                    index=index,
                    output_path=output_dir / page_filename(index, suffix),
                    source_path=source,
                )
            )
        return units

    def __iter__(self) -> Iterator[int]:
        return iter(self.indices)

    def __len__(self) -> int:
        return len(self.indices)

    def __repr__(self) -> str:
        return f"UnitSource({len(self.indices)} units)"


# ---------------------------------------------------------------------------
# Document discovery
# ---------------------------------------------------------------------------


def discover_pdfs(folder: Path) -> list[Path]:
    """Find PDF files directly inside *folder*, sorted by name."""
    if not folder.is_dir():
        return []
    return sorted(
        p for p in folder.iterdir() if p.is_file() and p.suffix.lower() == ".pdf"
    )
