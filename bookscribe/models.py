"""Shared data models for the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class Job:
    """One document's pipeline run. Immutable once created."""

    document: Path
    indices: tuple[int, ...]
    output_root: Path
    combined_path: Path
    concurrency: int = 50
    dpi: int = 300
    model: str = ""

    @property
    def name(self) -> str:
        return self.document.stem

    @property
    def images_dir(self) -> Path:
        return self.output_root / "images"

    @property
    def markdown_dir(self) -> Path:
        return self.output_root / "markdown"


@dataclass(frozen=True)
class Unit:
    """A single page as seen by one stage."""

    index: int
    output_path: Path
    source_path: Optional[Path] = None


@dataclass
class UnitOutcome:
    """Result of running one unit through one stage."""

    index: int
    status: str
    path: Optional[Path] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @classmethod
    def success(cls, index: int, path: Path, attempts: int = 1) -> "UnitOutcome":
        return cls(index=index, status=SUCCESS, path=path, attempts=attempts)

    @classmethod
    def skipped(cls, index: int, path: Path) -> "UnitOutcome":
        return cls(index=index, status=SKIPPED, path=path, reason="already-exists")

    @classmethod
    def failed(cls, index: int, error: BaseException, attempts: int) -> "UnitOutcome":
        return cls(index=index, status=FAILED, error=error, attempts=attempts)

    @property
    def error_class(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


@dataclass
class StageReport:
    """Per-stage tally. Every unit handed to the stage has exactly one outcome."""

    stage: str
    outcomes: dict[int, UnitOutcome] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes.values() if o.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(SUCCESS)

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    @property
    def failures(self) -> list[UnitOutcome]:
        return sorted(
            (o for o in self.outcomes.values() if o.status == FAILED),
            key=lambda o: o.index,
        )

    @property
    def failed_indices(self) -> list[int]:
        return [o.index for o in self.failures]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": [
                {
                    "index": o.index,
                    "error_class": o.error_class,
                    "error": str(o.error)[:500],
                    "attempts": o.attempts,
                }
                for o in self.failures
            ],
        }


@dataclass(frozen=True)
class TocEntry:
    index: int
    title: str
    level: int = 1
    anchor: Optional[str] = None
    available: bool = True


@dataclass
class CombinedDocument:
    """Ordered concatenation of page bodies with a leading table of contents."""

    title: str
    toc: list[TocEntry]
    body: str
    included: tuple[int, ...]
    missing: tuple[int, ...]
    text: str


class DocumentState(str, Enum):
    EXTRACTING = "extracting"
    TRANSCRIBING = "transcribing"
    COMBINING = "combining"
    DONE = "done"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


@dataclass
class PipelineResult:
    """Tracks stage reports and the final state for a single document."""

    document: Path
    state: DocumentState = DocumentState.EXTRACTING
    extract_report: Optional[StageReport] = None
    transcribe_report: Optional[StageReport] = None
    combined_path: Optional[Path] = None
    combined: Optional[CombinedDocument] = None
    missing: tuple[int, ...] = ()
    error: Optional[str] = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == DocumentState.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "document": str(self.document),
            "state": self.state.value,
            "combined_path": str(self.combined_path) if self.combined_path else None,
            "missing_pages": list(self.missing),
            "error": self.error,
            "elapsed_s": self.elapsed_s,
            "extract": self.extract_report.to_dict() if self.extract_report else None,
            "transcribe": (
                self.transcribe_report.to_dict() if self.transcribe_report else None
            ),
        }


@dataclass
class RunSummary:
    """Aggregate over every document processed in one invocation."""

    results: list[PipelineResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    def count(self, state: DocumentState) -> int:
        return sum(1 for r in self.results if r.state == state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents": len(self.results),
            "done": self.count(DocumentState.DONE),
            "partial_failure": self.count(DocumentState.PARTIAL_FAILURE),
            "aborted": self.count(DocumentState.ABORTED),
            "results": [r.to_dict() for r in self.results],
        }
