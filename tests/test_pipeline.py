"""End-to-end orchestrator tests with fake rasterizer/transcriber ports."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from bookscribe import (
    DocumentState,
    PipelineOrchestrator,
    UnitSource,
    ensure_output_dirs,
    split_units,
)
from bookscribe import orchestrator as orchestrator_module
from bookscribe.errors import OutputTargetError
from conftest import FakeRasterizer, FakeTranscriber


def _orchestrator(rasterizer, transcriber, retry, **kwargs) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        rasterizer,
        transcriber,
        retry=retry,
        extract_concurrency=2,
        **kwargs,
    )


def _job(orchestrator, pdf: Path, out: Path, **kwargs):
    kwargs.setdefault("concurrency", 4)
    kwargs.setdefault("model", "test/model")
    return orchestrator.create_job(
        pdf, out, combined_path=out / "combined" / "final_book.md", **kwargs
    )


# =========================================================================
# 1. Jobs and units
# =========================================================================


class TestJobs:
    def test_create_job_respects_limit(self, make_pdf, tmp_output, fast_retry):
        orch = _orchestrator(FakeRasterizer(pages=10), FakeTranscriber(), fast_retry)
        job = _job(orch, make_pdf("book"), tmp_output, limit=4)
        assert job.indices == (1, 2, 3, 4)
        assert job.images_dir == tmp_output / "images"
        assert job.markdown_dir == tmp_output / "markdown"
        assert job.name == "book"

    def test_unit_source_rejects_duplicates(self):
        with pytest.raises(ValueError):
            UnitSource([1, 2, 2])

    def test_unit_source_rejects_non_positive(self):
        with pytest.raises(ValueError):
            UnitSource([0, 1])

    def test_ensure_output_dirs_rejects_file_target(self, tmp_path):
        blocker = tmp_path / "out"
        blocker.write_text("not a directory")
        with pytest.raises(OutputTargetError):
            ensure_output_dirs(blocker)


# =========================================================================
# 2. Full runs
# =========================================================================


class TestRun:
    def test_full_success(self, make_pdf, tmp_output, fast_retry):
        transcriber = FakeTranscriber()
        orch = _orchestrator(FakeRasterizer(pages=3), transcriber, fast_retry)
        result = orch.run(_job(orch, make_pdf("book"), tmp_output))

        assert result.state == DocumentState.DONE
        assert result.ok
        assert result.extract_report.succeeded == 3
        assert result.transcribe_report.succeeded == 3
        assert (tmp_output / "images" / "page_0001.png").read_bytes() == b"PNG-1"
        assert transcriber.models == {"test/model"}

        text = result.combined_path.read_text(encoding="utf-8")
        assert text.startswith("# book\n")
        assert list(split_units(text)) == [1, 2, 3]

    def test_permanent_failure_omits_page_and_flags_it(self, make_pdf, tmp_output, fast_retry):
        transcriber = FakeTranscriber(permanent=[2])
        orch = _orchestrator(FakeRasterizer(pages=3), transcriber, fast_retry)
        result = orch.run(_job(orch, make_pdf("book"), tmp_output))

        assert result.state == DocumentState.PARTIAL_FAILURE
        assert result.transcribe_report.failed_indices == [2]
        assert result.transcribe_report.failures[0].attempts == 1
        assert result.missing == (2,)

        text = result.combined_path.read_text(encoding="utf-8")
        assert list(split_units(text)) == [1, 3]
        assert "- Page 2 *(unavailable)*" in text
        assert text.index("Heading 1") < text.index("Heading 3")

    def test_transient_failure_exhausts_retries(self, make_pdf, tmp_output, fast_retry):
        transcriber = FakeTranscriber(transient=[1])
        orch = _orchestrator(FakeRasterizer(pages=2), transcriber, fast_retry)
        result = orch.run(_job(orch, make_pdf("book"), tmp_output))

        failure = result.transcribe_report.failures[0]
        assert failure.index == 1
        assert failure.attempts == fast_retry.max_attempts
        assert transcriber.calls.count(1) == fast_retry.max_attempts
        assert result.transcribe_report.succeeded == 1

    def test_extraction_failure_skips_transcription(self, make_pdf, tmp_output, fast_retry):
        transcriber = FakeTranscriber()
        orch = _orchestrator(FakeRasterizer(pages=3, fail=[2]), transcriber, fast_retry)
        result = orch.run(_job(orch, make_pdf("book"), tmp_output))

        assert result.extract_report.failed_indices == [2]
        assert result.extract_report.failures[0].error_class == "RasterizationError"
        assert 2 not in transcriber.calls
        assert result.transcribe_report.total == 2
        assert result.missing == (2,)
        assert result.state == DocumentState.PARTIAL_FAILURE

    def test_failure_tolerance_halts_document(self, make_pdf, tmp_output, fast_retry):
        orch = _orchestrator(
            FakeRasterizer(pages=3),
            FakeTranscriber(permanent=[2]),
            fast_retry,
            failure_tolerance=0,
        )
        job = _job(orch, make_pdf("book"), tmp_output)
        result = orch.run(job)

        assert result.state == DocumentState.PARTIAL_FAILURE
        assert result.combined_path is None
        assert not job.combined_path.exists()
        assert result.missing == (2,)

    def test_output_error_aborts_document(
        self, make_pdf, tmp_output, fast_retry, monkeypatch
    ):
        real_write = orchestrator_module.atomic_write_text

        def _disk_full(path, text):
            if path.name == "page_0001.md":
                raise OSError(28, "No space left on device")
            return real_write(path, text)

        monkeypatch.setattr(orchestrator_module, "atomic_write_text", _disk_full)
        orch = _orchestrator(FakeRasterizer(pages=3), FakeTranscriber(), fast_retry)
        result = orch.run(_job(orch, make_pdf("book"), tmp_output, concurrency=1))

        assert result.state == DocumentState.ABORTED
        assert "output target unusable" in result.error
        report = result.transcribe_report
        assert report.succeeded + report.skipped + report.failed == report.total == 3
        assert report.outcomes[1].error_class == "OutputTargetError"

    def test_port_timeout_only_fails_its_page(self, make_pdf, tmp_output, fast_retry):
        transcriber = FakeTranscriber(timeout=[1])
        orch = _orchestrator(FakeRasterizer(pages=4), transcriber, fast_retry)
        result = orch.run(_job(orch, make_pdf("book"), tmp_output, concurrency=1))

        assert result.state == DocumentState.PARTIAL_FAILURE
        assert result.error is None
        assert result.transcribe_report.failed_indices == [1]
        assert result.transcribe_report.succeeded == 3
        assert transcriber.calls.count(1) == fast_retry.max_attempts
        assert result.missing == (1,)


# =========================================================================
# 3. Resume
# =========================================================================


class TestResume:
    def test_rerun_only_transcribes_missing_pages(self, make_pdf, tmp_output, fast_retry):
        pdf = make_pdf("book")
        rasterizer = FakeRasterizer(pages=5)
        first = _orchestrator(rasterizer, FakeTranscriber(), fast_retry)
        first.run(_job(first, pdf, tmp_output))

        for index in (2, 4):
            (tmp_output / "markdown" / f"page_{index:04d}.md").unlink()

        rasterizer.calls.clear()
        transcriber = FakeTranscriber()
        second = _orchestrator(rasterizer, transcriber, fast_retry)
        result = second.run(_job(second, pdf, tmp_output))

        assert sorted(transcriber.calls) == [2, 4]
        assert rasterizer.calls == []
        assert result.transcribe_report.skipped == 3
        assert result.transcribe_report.succeeded == 2
        assert result.state == DocumentState.DONE

    def test_empty_output_file_is_reprocessed(self, make_pdf, tmp_output, fast_retry):
        md_dir = tmp_output / "markdown"
        md_dir.mkdir(parents=True)
        (md_dir / "page_0001.md").write_text("", encoding="utf-8")
        (md_dir / "page_0002.md").write_text("# Done already", encoding="utf-8")

        transcriber = FakeTranscriber()
        orch = _orchestrator(FakeRasterizer(pages=2), transcriber, fast_retry)
        result = orch.run(_job(orch, make_pdf("book"), tmp_output))

        assert transcriber.calls == [1]
        assert (md_dir / "page_0001.md").read_text(encoding="utf-8").startswith("# Heading 1")
        assert result.transcribe_report.skipped == 1

    def test_force_reprocesses_everything(self, make_pdf, tmp_output, fast_retry):
        pdf = make_pdf("book")
        first = _orchestrator(FakeRasterizer(pages=2), FakeTranscriber(), fast_retry)
        first.run(_job(first, pdf, tmp_output))

        transcriber = FakeTranscriber()
        forced = _orchestrator(FakeRasterizer(pages=2), transcriber, fast_retry, force=True)
        forced.run(_job(forced, pdf, tmp_output))
        assert sorted(transcriber.calls) == [1, 2]

    def test_stale_temp_files_are_removed(self, make_pdf, tmp_output, fast_retry):
        md_dir = tmp_output / "markdown"
        md_dir.mkdir(parents=True)
        stale = md_dir / ".page_0001.md.abc123.part"
        stale.write_text("half", encoding="utf-8")

        orch = _orchestrator(FakeRasterizer(pages=1), FakeTranscriber(), fast_retry)
        orch.run(_job(orch, make_pdf("book"), tmp_output))
        assert not stale.exists()
        assert [p.name for p in md_dir.iterdir()] == ["page_0001.md"]


# =========================================================================
# 4. Multi-document runs
# =========================================================================


class TestDocuments:
    def test_directory_run_isolates_broken_documents(self, make_pdf, tmp_path, fast_retry):
        pdf_dir = tmp_path / "pdfs"
        for name in ("alpha", "broken", "gamma"):
            make_pdf(name, pdf_dir)
        (pdf_dir / "notes.txt").write_text("ignore me")

        rasterizer = FakeRasterizer(pages=2, corrupt=["broken"])
        orch = _orchestrator(rasterizer, FakeTranscriber(), fast_retry)
        out = tmp_path / "out"
        summary = orch.run_documents(pdf_dir, out, concurrency=2, model="m")

        states = {r.document.stem: r.state for r in summary.results}
        assert states == {
            "alpha": DocumentState.DONE,
            "broken": DocumentState.ABORTED,
            "gamma": DocumentState.DONE,
        }
        assert not summary.ok
        assert (out / "combined" / "alpha.md").exists()
        assert (out / "combined" / "gamma.md").exists()
        assert (out / "alpha" / "images" / "page_0002.png").exists()
        assert (out / "gamma" / "markdown" / "page_0001.md").exists()

        data = json.loads((out / "run_summary.json").read_text(encoding="utf-8"))
        assert data["documents"] == 3
        assert data["aborted"] == 1
        broken = next(r for r in data["results"] if r["document"].endswith("broken.pdf"))
        assert "RasterizationError" in broken["error"]

    def test_single_document_uses_final_book_name(self, make_pdf, tmp_output, fast_retry):
        orch = _orchestrator(FakeRasterizer(pages=1), FakeTranscriber(), fast_retry)
        summary = orch.run_documents(make_pdf("book"), tmp_output, concurrency=1, model="m")

        assert summary.ok
        assert summary.results[0].combined_path == tmp_output / "combined" / "final_book.md"
        assert (tmp_output / "combined" / "final_book.md").exists()

    def test_summary_lists_failed_pages(self, make_pdf, tmp_output, fast_retry):
        orch = _orchestrator(
            FakeRasterizer(pages=3), FakeTranscriber(permanent=[3]), fast_retry
        )
        orch.run_documents(make_pdf("book"), tmp_output, concurrency=2, model="m")

        data = json.loads((tmp_output / "run_summary.json").read_text(encoding="utf-8"))
        result = data["results"][0]
        assert result["state"] == "partial_failure"
        assert result["missing_pages"] == [3]
        failures = result["transcribe"]["failures"]
        assert [(f["index"], f["error_class"]) for f in failures] == [
            (3, "PermanentRemoteError")
        ]
