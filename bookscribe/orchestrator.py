"""Per-document stage sequencing: extract -> transcribe -> combine.

Each document moves through ``EXTRACTING -> TRANSCRIBING -> COMBINING ->
DONE``. Unit failures are collected in the stage reports and, unless they
exceed ``failure_tolerance``, do not stop the next stage; pages without a
transcription are left out of the combined body and flagged unavailable in
its table of contents. Directory runs treat each PDF independently.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .combine import Combiner, read_unit_outputs, title_from_path
from .errors import OutputTargetError, RasterizationError
from .models import (
    CombinedDocument,
    DocumentState,
    Job,
    PipelineResult,
    RunSummary,
    StageReport,
    Unit,
    UnitOutcome,
)
from .rasterize import Rasterizer
from .resume import (
    FileResumeStore,
    ResumeStore,
    atomic_write_bytes,
    atomic_write_text,
    clear_stale_temp_files,
)
from .scheduler import BoundedScheduler, RetryPolicy
from .transcribe import Transcriber
from .units import UnitSource, discover_pdfs
from .utils import (
    IMAGE_SUFFIX,
    MARKDOWN_SUFFIX,
    SINGLE_DOCUMENT_NAME,
    combined_dir,
    default_extract_concurrency,
    ensure_output_dirs,
    save_summary,
)

log = logging.getLogger(__name__)

# (stage name, total units) -> object with update(n) and close()
ProgressFactory = Callable[[str, int], Any]


class PipelineOrchestrator:
    """Runs documents through the rasterizer and transcriber ports."""

    def __init__(
        self,
        rasterizer: Rasterizer,
        transcriber: Optional[Transcriber],
        *,
        retry: Optional[RetryPolicy] = None,
        resume_store: Optional[ResumeStore] = None,
        cancel_event: Optional[threading.Event] = None,
        cancel_timeout_s: float = 30.0,
        failure_tolerance: Optional[int] = None,
        extract_concurrency: Optional[int] = None,
        combiner: Optional[Combiner] = None,
        force: bool = False,
        progress: Optional[ProgressFactory] = None,
    ):
        self.rasterizer = rasterizer
        self.transcriber = transcriber
        self.retry = retry or RetryPolicy()
        self.resume_store = resume_store or FileResumeStore()
        self.cancel_event = cancel_event or threading.Event()
        self.cancel_timeout_s = cancel_timeout_s
        self.failure_tolerance = failure_tolerance
        self.extract_concurrency = extract_concurrency or default_extract_concurrency()
        self.combiner = combiner or Combiner()
        self.force = force
        self.progress = progress

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(
        self,
        document: Path,
        output_root: Path,
        *,
        combined_path: Optional[Path] = None,
        concurrency: int = 50,
        dpi: int = 300,
        model: str = "",
        limit: Optional[int] = None,
    ) -> Job:
        """Count the document's pages and freeze the run parameters."""
        total_pages = self.rasterizer.page_count(document)
        source = UnitSource.from_page_count(total_pages, limit)
        log.info(
            "%s: %s pages (of %s) selected",
            document.name,
            len(source),
            total_pages,
        )
        return Job(
            document=document,
            indices=source.indices,
            output_root=output_root,
            combined_path=combined_path or output_root / f"{document.stem}.md",
            concurrency=concurrency,
            dpi=dpi,
            model=model,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _scheduler(self, concurrency: int, name: str) -> BoundedScheduler:
        return BoundedScheduler(
            concurrency,
            retry=self.retry,
            resume_store=None if self.force else self.resume_store,
            cancel_event=self.cancel_event,
            cancel_timeout_s=self.cancel_timeout_s,
            name=name,
        )

    def _run_stage(
        self,
        name: str,
        scheduler: BoundedScheduler,
        units: list[Unit],
        operation: Callable[[Unit], Path],
    ) -> StageReport:
        bar = self.progress(name, len(units)) if self.progress else None

        def _on_outcome(outcome: UnitOutcome) -> None:
            if bar is not None:
                bar.update(1)

        try:
            return scheduler.run(units, operation, _on_outcome)
        finally:
            if bar is not None:
                bar.close()

    def extract(self, job: Job) -> StageReport:
        """Rasterize every page of *job* into ``images/page_NNNN.png``."""
        units = UnitSource(job.indices).units(job.images_dir, IMAGE_SUFFIX)
        return self.extract_units(
            job.document, units, job.dpi, name=f"extract[{job.name}]"
        )

    def extract_units(
        self,
        document: Path,
        units: list[Unit],
        dpi: int,
        *,
        name: str = "extract",
    ) -> StageReport:
        """Rasterize prepared units of *document* into their output paths."""
        if units:
            clear_stale_temp_files(units[0].output_path.parent)

        def _extract_one(unit: Unit) -> Path:
            data = self.rasterizer.rasterize(document, unit.index, dpi)
            return _write_output(atomic_write_bytes, unit.output_path, data)

        scheduler = self._scheduler(self.extract_concurrency, name)
        return self._run_stage("Extracting", scheduler, units, _extract_one)

    def transcribe(self, job: Job, exclude: Iterable[int] = ()) -> StageReport:
        """Transcribe page images into ``markdown/page_NNNN.md``."""
        excluded = set(exclude)
        source = UnitSource(i for i in job.indices if i not in excluded)
        if excluded:
            log.info("%s: %s pages without an image are not transcribed", job.name, len(excluded))
        units = source.units(
            job.markdown_dir,
            MARKDOWN_SUFFIX,
            source_dir=job.images_dir,
            source_suffix=IMAGE_SUFFIX,
        )
        return self.transcribe_units(
            units, job.model, job.concurrency, name=f"transcribe[{job.name}]"
        )

    def transcribe_units(
        self,
        units: list[Unit],
        model: str,
        concurrency: int,
        *,
        name: str = "transcribe",
    ) -> StageReport:
        """Transcribe prepared units; each unit's ``source_path`` is its image."""
        if self.transcriber is None:
            raise ValueError("No transcriber configured")
        transcriber = self.transcriber
        if units:
            clear_stale_temp_files(units[0].output_path.parent)

        def _transcribe_one(unit: Unit) -> Path:
            if unit.source_path is None:
                raise RasterizationError(f"Unit {unit.index} has no source image")
            try:
                image = unit.source_path.read_bytes()
            except FileNotFoundError as exc:
                raise RasterizationError(f"Missing page image: {unit.source_path}") from exc
            text = transcriber.transcribe(image, model)
            return _write_output(atomic_write_text, unit.output_path, text)

        scheduler = self._scheduler(concurrency, name)
        return self._run_stage("Transcribing", scheduler, units, _transcribe_one)

    def combine(self, job: Job) -> CombinedDocument:
        """Merge available page markdown for every job index into one file."""
        outputs = read_unit_outputs(job.markdown_dir, job.indices, self.resume_store)
        document = self.combiner.combine(
            outputs,
            expected=job.indices,
            title=title_from_path(job.document),
        )
        atomic_write_text(job.combined_path, document.text)
        log.info("Created combined file: %s", job.combined_path)
        return document

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _exceeds_tolerance(self, report: StageReport) -> bool:
        return self.failure_tolerance is not None and report.failed > self.failure_tolerance

    def run(self, job: Job) -> PipelineResult:
        """Run all three stages for one document."""
        result = PipelineResult(document=job.document)
        t0 = time.perf_counter()
        try:
            ensure_output_dirs(job.output_root)

            log.info("--- Phase 1: Extract (%s) ---", job.name)
            result.state = DocumentState.EXTRACTING
            result.extract_report = self.extract(job)
            if self._halt(result, result.extract_report):
                return result

            log.info("--- Phase 2: Transcribe (%s) ---", job.name)
            result.state = DocumentState.TRANSCRIBING
            result.transcribe_report = self.transcribe(
                job, exclude=result.extract_report.failed_indices
            )
            if self._halt(result, result.transcribe_report):
                return result

            log.info("--- Phase 3: Combine (%s) ---", job.name)
            result.state = DocumentState.COMBINING
            result.combined = self.combine(job)
            result.combined_path = job.combined_path
            result.missing = result.combined.missing
            result.state = (
                DocumentState.PARTIAL_FAILURE if result.missing else DocumentState.DONE
            )
        except (OutputTargetError, OSError) as exc:
            log.error("%s: aborted: %s", job.name, exc)
            partial = getattr(exc, "report", None)
            if result.state == DocumentState.EXTRACTING and result.extract_report is None:
                result.extract_report = partial
            elif result.state == DocumentState.TRANSCRIBING and result.transcribe_report is None:
                result.transcribe_report = partial
            result.state = DocumentState.ABORTED
            result.error = str(exc)
            result.missing = tuple(sorted(_failed_indices(result)))
        finally:
            result.elapsed_s = round(time.perf_counter() - t0, 2)
        return result

    def _halt(self, result: PipelineResult, report: StageReport) -> bool:
        """Stop the document on cancellation or too many failures."""
        if self.cancel_event.is_set():
            result.state = DocumentState.ABORTED
            result.error = "cancelled"
        elif self._exceeds_tolerance(report):
            log.error(
                "%s: %s failures exceed tolerance %s; stopping this document",
                report.stage,
                report.failed,
                self.failure_tolerance,
            )
            result.state = DocumentState.PARTIAL_FAILURE
        else:
            return False
        result.missing = tuple(sorted(_failed_indices(result)))
        return True

    def run_document(
        self,
        document: Path,
        output_root: Path,
        *,
        combined_path: Optional[Path] = None,
        **job_kwargs: Any,
    ) -> PipelineResult:
        """Create and run one job; any error is confined to this document."""
        try:
            job = self.create_job(
                document, output_root, combined_path=combined_path, **job_kwargs
            )
            return self.run(job)
        except Exception as exc:
            log.exception("%s: pipeline failed", document.name)
            return PipelineResult(
                document=document,
                state=DocumentState.ABORTED,
                error=f"{type(exc).__name__}: {exc}",
            )

    def run_directory(
        self,
        input_dir: Path,
        output_root: Path,
        **job_kwargs: Any,
    ) -> RunSummary:
        """Run every PDF in *input_dir* under ``<output_root>/<name>/``."""
        pdfs = discover_pdfs(input_dir)
        if not pdfs:
            log.warning("No PDF files found in directory: %s", input_dir)
        else:
            log.info("Found %s PDF files in directory: %s", len(pdfs), input_dir)

        summary = RunSummary()
        for i, pdf_path in enumerate(pdfs):
            if self.cancel_event.is_set():
                summary.results.append(
                    PipelineResult(
                        document=pdf_path,
                        state=DocumentState.ABORTED,
                        error="cancelled",
                    )
                )
                continue
            log.info("=== Processing Book %s/%s: %s ===", i + 1, len(pdfs), pdf_path.stem)
            summary.results.append(
                self.run_document(
                    pdf_path,
                    output_root / pdf_path.stem,
                    combined_path=combined_dir(output_root) / f"{pdf_path.stem}.md",
                    **job_kwargs,
                )
            )
        return summary

    def run_documents(
        self,
        input_path: Path,
        output_root: Path,
        **job_kwargs: Any,
    ) -> RunSummary:
        """Dispatch a single PDF or a folder of PDFs, then write the summary."""
        t0 = time.perf_counter()
        if input_path.is_dir():
            summary = self.run_directory(input_path, output_root, **job_kwargs)
        else:
            summary = RunSummary(
                results=[
                    self.run_document(
                        input_path,
                        output_root,
                        combined_path=combined_dir(output_root) / SINGLE_DOCUMENT_NAME,
                        **job_kwargs,
                    )
                ]
            )
        summary_path = save_summary(output_root, summary)
        log_summary(summary, summary_path, time.perf_counter() - t0)
        return summary


def _write_output(write: Callable[[Path, Any], Path], path: Path, data: Any) -> Path:
    """Write one unit artifact; a failed write means the output target is unusable."""
    try:
        return write(path, data)
    except OSError as exc:
        raise OutputTargetError(f"Cannot write {path}: {exc}") from exc


def _failed_indices(result: PipelineResult) -> set[int]:
    failed: set[int] = set()
    for report in (result.extract_report, result.transcribe_report):
        if report is not None:
            failed.update(report.failed_indices)
    return failed


def log_report_failures(report: Optional[StageReport]) -> None:
    if report is None or not report.failed:
        return
    log.warning("  %s failed pages:", report.stage)
    for outcome in report.failures:
        log.warning(
            "    - page %s: %s after %s attempt(s): %s",
            outcome.index,
            outcome.error_class,
            outcome.attempts,
            str(outcome.error)[:200],
        )


def log_summary(summary: RunSummary, summary_path: Path, elapsed_s: float) -> None:
    log.info("=" * 60)
    log.info("PIPELINE COMPLETE")
    log.info(f"  Documents:       {len(summary.results)}")
    log.info(f"  Done:            {summary.count(DocumentState.DONE)}")
    log.info(f"  Partial failure: {summary.count(DocumentState.PARTIAL_FAILURE)}")
    log.info(f"  Aborted:         {summary.count(DocumentState.ABORTED)}")
    log.info(f"  Summary:         {summary_path}")
    log.info(f"  Total runtime:   {elapsed_s:.1f}s")
    for result in summary.results:
        if result.ok:
            continue
        log.warning("%s: %s", result.document.name, result.state.value)
        if result.error:
            log.warning("  error: %s", result.error[:200])
        if result.missing:
            log.warning("  missing pages: %s", list(result.missing))
        log_report_failures(result.extract_report)
        log_report_failures(result.transcribe_report)
