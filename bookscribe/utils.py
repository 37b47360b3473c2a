"""Cross-cutting helpers: constants, output layout, summary I/O."""

from __future__ import annotations

import json
import os
from pathlib import Path

from .errors import OutputTargetError
from .models import RunSummary

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

IMAGE_SUFFIX = ".png"
MARKDOWN_SUFFIX = ".md"
COMBINED_DIR_NAME = "combined"
SINGLE_DOCUMENT_NAME = "final_book.md"
SUMMARY_FILE_NAME = "run_summary.json"
DEFAULT_OUTPUT_ROOT = Path("out")


# ---------------------------------------------------------------------------
# Runtime helpers
# ---------------------------------------------------------------------------


def default_extract_concurrency() -> int:
    """Rasterization is local CPU work; one slot per core."""
    return max(1, os.cpu_count() or 1)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def ensure_output_dirs(output_root: Path) -> tuple[Path, Path]:
    """Create and return (images_dir, markdown_dir) under *output_root*.

    Raises OutputTargetError when the directories cannot be created or
    are not writable.
    """
    images_dir = output_root / "images"
    md_dir = output_root / "markdown"
    try:
        images_dir.mkdir(parents=True, exist_ok=True)
        md_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OutputTargetError(f"Cannot create output dirs under {output_root}: {exc}") from exc
    for directory in (images_dir, md_dir):
        if not os.access(directory, os.W_OK):
            raise OutputTargetError(f"Output dir is not writable: {directory}")
    return images_dir, md_dir


def combined_dir(output_root: Path) -> Path:
    return output_root / COMBINED_DIR_NAME


def default_markdown_dir(images_dir: Path) -> Path:
    """``.../images`` -> ``.../markdown``; anything else -> ``out/<name>/markdown``."""
    if images_dir.name == "images":
        return images_dir.parent / "markdown"
    return DEFAULT_OUTPUT_ROOT / images_dir.name / "markdown"


def default_combined_file(markdown_dir: Path) -> Path:
    """``out/book/markdown`` -> ``out/book/book.md``."""
    parent = markdown_dir.parent
    return parent / f"{parent.name or 'book'}.md"


# ---------------------------------------------------------------------------
# Summary I/O
# ---------------------------------------------------------------------------


def save_summary(output_root: Path, summary: RunSummary) -> Path:
    """Write run_summary.json and return its path."""
    output_root.mkdir(parents=True, exist_ok=True)
    path = output_root / SUMMARY_FILE_NAME
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(summary.to_dict(), fh, indent=2, ensure_ascii=False, default=str)
    return path
