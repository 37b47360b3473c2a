"""Shared fixtures for the bookscribe test suite.

Remote transcription and rasterization are replaced by in-process fakes so
the scheduler, resume and combine logic can be driven deterministically.
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Iterable

import pytest

from bookscribe import (
    PermanentRemoteError,
    RasterizationError,
    ResumeStore,
    RetryPolicy,
    TransientRemoteError,
)

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)
log = logging.getLogger("conftest")


def page_image(index: int) -> bytes:
    return f"PNG-{index}".encode("ascii")


def index_from_image(image: bytes) -> int:
    return int(image.decode("ascii").split("-", 1)[1])


class FakeRasterizer:
    """Pretends every existing file is a PDF with ``pages`` pages."""

    def __init__(self, pages: int = 3, *, fail: Iterable[int] = (), corrupt: Iterable[str] = ()):
        self.pages = pages
        self.fail = set(fail)
        self.corrupt = set(corrupt)
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def page_count(self, document: Path) -> int:
        if not document.exists() or document.stem in self.corrupt:
            raise RasterizationError(f"Cannot open {document}")
        return self.pages

    def rasterize(self, document: Path, index: int, dpi: int) -> bytes:
        with self._lock:
            self.calls.append((document.stem, index))
        if index in self.fail:
            raise RasterizationError(f"corrupt page {index}")
        return page_image(index)


class FakeTranscriber:
    """Returns ``# Heading N`` pages; configurable per-page failures."""

    def __init__(
        self,
        *,
        permanent: Iterable[int] = (),
        transient: Iterable[int] = (),
        timeout: Iterable[int] = (),
        texts: dict[int, str] | None = None,
    ):
        self.permanent = set(permanent)
        self.transient = set(transient)
        self.timeout = set(timeout)
        self.texts = texts or {}
        self.calls: list[int] = []
        self.models: set[str] = set()
        self._lock = threading.Lock()

    def transcribe(self, image: bytes, model: str) -> str:
        index = index_from_image(image)
        with self._lock:
            self.calls.append(index)
            self.models.add(model)
        if index in self.permanent:
            raise PermanentRemoteError("401 unauthorized", status_code=401)
        if index in self.transient:
            raise TransientRemoteError("429 rate limited", status_code=429)
        if index in self.timeout:
            raise TimeoutError("read timed out")
        return self.texts.get(index, f"# Heading {index}\n\nBody of page {index}.")

    def __enter__(self) -> "FakeTranscriber":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class MemoryResumeStore(ResumeStore):
    def __init__(self, completed: Iterable[Path] = ()):
        self.completed = set(completed)

    def exists(self, output_path: Path) -> bool:
        return output_path in self.completed


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_s=0.0, max_delay_s=0.0)


@pytest.fixture
def fake_rasterizer() -> FakeRasterizer:
    return FakeRasterizer(pages=3)


@pytest.fixture
def fake_transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def tmp_output(tmp_path: Path) -> Path:
    """Return a temporary output directory for a single test."""
    return tmp_path / "out"


@pytest.fixture
def clean_env(monkeypatch):
    """Unset every setting variable; values loaded from .env files are undone too."""
    for name in (
        "OPENROUTER_API_KEY",
        "OPENROUTER_MODEL",
        "OPENROUTER_BASE_URL",
        "BOOKSCRIBE_CONCURRENCY",
        "BOOKSCRIBE_DPI",
        "BOOKSCRIBE_MAX_ATTEMPTS",
    ):
        # setenv first so teardown deletes whatever load_dotenv wrote
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


@pytest.fixture
def make_pdf(tmp_path: Path):
    """Create placeholder ``.pdf`` files the fake rasterizer will accept."""

    def _make(name: str, folder: Path | None = None) -> Path:
        target = (folder or tmp_path / "pdfs") / f"{name}.pdf"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(b"%PDF-1.4 placeholder")
        return target

    return _make
