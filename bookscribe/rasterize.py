"""Page rasterization with PyMuPDF."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Protocol

import fitz  # PyMuPDF

from .errors import RasterizationError

log = logging.getLogger(__name__)

DEFAULT_DPI = 300


class Rasterizer(Protocol):
    def page_count(self, document: Path) -> int: ...

    def rasterize(self, document: Path, index: int, dpi: int) -> bytes:
        """Render 1-based page *index* of *document* to PNG bytes."""
        ...


class PyMuPDFRasterizer:
    """Renders pages to PNG.

    PyMuPDF is not thread-safe, so every document access goes through one
    lock. Each call opens its own document handle.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def page_count(self, document: Path) -> int:
        with self._lock:
            try:
                with fitz.open(str(document)) as doc:
                    return doc.page_count
            except Exception as exc:
                raise RasterizationError(f"Cannot open {document}: {exc}") from exc

    def rasterize(self, document: Path, index: int, dpi: int = DEFAULT_DPI) -> bytes:
        t0 = time.perf_counter()
        with self._lock:
            try:
                with fitz.open(str(document)) as doc:
                    if not 1 <= index <= doc.page_count:
                        raise RasterizationError(
                            f"Page {index} out of range (1..{doc.page_count}) in {document}"
                        )
                    page = doc.load_page(index - 1)
                    pix = page.get_pixmap(dpi=dpi, alpha=False)
                    data = pix.tobytes("png")
            except RasterizationError:
                raise
            except Exception as exc:
                raise RasterizationError(
                    f"Failed to render page {index} of {document}: {exc}"
                ) from exc
        log.debug(
            "rasterize: %s page %s at %s dpi -> %s bytes in %.2fs",
            document.name,
            index,
            dpi,
            len(data),
            time.perf_counter() - t0,
        )
        return data
