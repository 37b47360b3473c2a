"""CLI entrypoint for the PDF -> page images -> Markdown -> book pipeline.

Usage:
    python -m bookscribe extract --input book.pdf
    python -m bookscribe transcribe --input out/book/images --model google/gemini-flash-1.5
    python -m bookscribe combine --input out/book/markdown
    python -m bookscribe pipeline --input book.pdf --concurrency 20
    python -m bookscribe pipeline --input ./pdfs --output out --limit 10
"""

from __future__ import annotations

import argparse
import logging
from logging.handlers import RotatingFileHandler
import signal
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from .config import Settings, load_settings
from .errors import ConfigError, OutputTargetError, RasterizationError
from .models import StageReport

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    output_dir: Path,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    resolved_log_file = log_file
    if resolved_log_file is None and detailed_logging:
        resolved_log_file = output_dir / "bookscribe.log"

    if resolved_log_file is not None:
        resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            resolved_log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--env-file", type=Path, default=None, help="Path to a .env file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line, rotating log file)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Optional log file path (default: <output>/bookscribe.log in detailed mode)",
    )


def _add_remote(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--model",
        default=None,
        help="OpenRouter model id (falls back to OPENROUTER_MODEL)",
    )
    parser.add_argument(
        "--concurrency",
        "-c",
        type=_positive_int,
        default=None,
        help="Concurrent transcription requests (default: 50)",
    )
    parser.add_argument(
        "--max-attempts",
        type=_positive_int,
        default=None,
        help="Attempts per page for retryable errors (default: 4)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Redo pages even if their output already exists",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="bookscribe",
        description="PDF -> page images -> Markdown -> combined book",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    extract = sub.add_parser("extract", help="Extract pages from a PDF to images")
    extract.add_argument("--input", "-i", type=Path, required=True, help="Input PDF file")
    extract.add_argument(
        "--output", "-o", type=Path, default=None,
        help="Output directory for images (default: out/<book>/images)",
    )
    extract.add_argument("--dpi", type=_positive_int, default=None, help="DPI (default: 300)")
    extract.add_argument("--limit", type=_positive_int, default=None, help="Max pages")
    extract.add_argument(
        "--concurrency", "-c", type=_positive_int, default=None,
        help="Rasterization workers (default: CPU count)",
    )
    extract.add_argument(
        "--force", action="store_true", help="Re-render pages that already exist"
    )
    _add_common(extract)

    transcribe = sub.add_parser("transcribe", help="Transcribe page images to Markdown")
    transcribe.add_argument(
        "--input", "-i", type=Path, required=True, help="Directory of page_NNNN.png images"
    )
    transcribe.add_argument(
        "--output", "-o", type=Path, default=None,
        help="Output directory for markdown (default: sibling 'markdown' dir)",
    )
    transcribe.add_argument("--limit", type=_positive_int, default=None, help="Max images")
    _add_remote(transcribe)
    _add_common(transcribe)

    combine = sub.add_parser("combine", help="Combine page Markdown into a single book with TOC")
    combine.add_argument(
        "--input", "-i", type=Path, required=True, help="Directory of page_NNNN.md files"
    )
    combine.add_argument(
        "--output", "-o", type=Path, default=None,
        help="Output file (default: <input>/../<book>.md)",
    )
    _add_common(combine)

    pipeline = sub.add_parser("pipeline", help="Extract, transcribe and combine")
    pipeline.add_argument(
        "--input", "-i", type=Path, required=True, help="Input PDF file or folder of PDFs"
    )
    pipeline.add_argument(
        "--output", "-o", type=Path, default=None,
        help="Base output directory (default: out/<book>, or out/ for folders)",
    )
    pipeline.add_argument("--dpi", type=_positive_int, default=None, help="DPI (default: 300)")
    pipeline.add_argument("--limit", type=_positive_int, default=None, help="Max pages per book")
    pipeline.add_argument(
        "--failure-tolerance",
        type=int,
        default=None,
        help="Stop a book when a stage has more failed pages than this (default: never)",
    )
    _add_remote(pipeline)
    _add_common(pipeline)

    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Factories (replaced in tests)
# ---------------------------------------------------------------------------


def _build_rasterizer():
    from .rasterize import PyMuPDFRasterizer

    return PyMuPDFRasterizer()


def _build_transcriber(settings: Settings):
    from .transcribe import OpenRouterTranscriber

    return OpenRouterTranscriber(
        settings.api_key or "",
        base_url=settings.base_url,
        timeout_s=settings.timeout_s,
        prompt=settings.prompt,
    )


def _progress_factory() -> Callable[[str, int], Any]:
    from tqdm import tqdm

    def _factory(desc: str, total: int):
        return tqdm(total=total, desc=desc, unit="page")

    return _factory


def _install_cancel_handler(cancel: threading.Event):
    """First Ctrl-C stops dispatch; a second one interrupts immediately."""

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        log.warning("Interrupt received; finishing in-flight pages (Ctrl-C again to abort)")
        cancel.set()

    try:
        return signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not in the main thread.
        return None


def _report_exit_code(report: StageReport) -> int:
    return EXIT_OK if report.failed == 0 else EXIT_PARTIAL


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _default_output(args: argparse.Namespace) -> Path:
    from .utils import DEFAULT_OUTPUT_ROOT, default_combined_file, default_markdown_dir

    if args.output is not None:
        return args.output
    if args.command == "extract":
        return DEFAULT_OUTPUT_ROOT / args.input.stem / "images"
    if args.command == "transcribe":
        return default_markdown_dir(args.input)
    if args.command == "combine":
        return default_combined_file(args.input)
    if args.input.is_dir():
        return DEFAULT_OUTPUT_ROOT
    return DEFAULT_OUTPUT_ROOT / args.input.stem


def _build_orchestrator(
    args: argparse.Namespace,
    settings: Settings,
    cancel: threading.Event,
    *,
    transcriber: Any = None,
):
    from .orchestrator import PipelineOrchestrator
    from .scheduler import RetryPolicy

    return PipelineOrchestrator(
        _build_rasterizer(),
        transcriber,
        retry=RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay_s=settings.base_delay_s,
            max_delay_s=settings.max_delay_s,
        ),
        cancel_event=cancel,
        failure_tolerance=getattr(args, "failure_tolerance", None),
        extract_concurrency=args.concurrency if args.command == "extract" else None,
        force=getattr(args, "force", False),
        progress=_progress_factory(),
    )


def _cmd_extract(args, settings: Settings, output: Path, cancel: threading.Event) -> int:
    from .units import UnitSource
    from .utils import IMAGE_SUFFIX

    orchestrator = _build_orchestrator(args, settings, cancel)
    total = orchestrator.rasterizer.page_count(args.input)
    source = UnitSource.from_page_count(total, args.limit)
    log.info(
        "Extracting %s pages (of %s) from %s into %s",
        len(source),
        total,
        args.input,
        output,
    )
    output.mkdir(parents=True, exist_ok=True)
    report = orchestrator.extract_units(
        args.input, source.units(output, IMAGE_SUFFIX), settings.dpi
    )
    return _report_exit_code(report)


def _cmd_transcribe(args, settings: Settings, output: Path, cancel: threading.Event) -> int:
    from .units import UnitSource
    from .utils import IMAGE_SUFFIX, MARKDOWN_SUFFIX

    settings.require_remote()
    source = UnitSource.from_directory(args.input, IMAGE_SUFFIX, args.limit)
    log.info("Found %s images to transcribe in %s", len(source), args.input)
    output.mkdir(parents=True, exist_ok=True)
    units = source.units(
        output, MARKDOWN_SUFFIX, source_dir=args.input, source_suffix=IMAGE_SUFFIX
    )
    with _build_transcriber(settings) as transcriber:
        orchestrator = _build_orchestrator(args, settings, cancel, transcriber=transcriber)
        report = orchestrator.transcribe_units(units, settings.model, settings.concurrency)
    return _report_exit_code(report)


def _cmd_combine(args, settings: Settings, output: Path, cancel: threading.Event) -> int:
    from .combine import combine_directory

    document = combine_directory(args.input, output)
    return EXIT_OK if not document.missing else EXIT_PARTIAL


def _cmd_pipeline(args, settings: Settings, output: Path, cancel: threading.Event) -> int:
    settings.require_remote()
    with _build_transcriber(settings) as transcriber:
        orchestrator = _build_orchestrator(args, settings, cancel, transcriber=transcriber)
        summary = orchestrator.run_documents(
            args.input,
            output,
            concurrency=settings.concurrency,
            dpi=settings.dpi,
            model=settings.model,
            limit=args.limit,
        )
    return EXIT_OK if summary.ok else EXIT_PARTIAL


_COMMANDS = {
    "extract": _cmd_extract,
    "transcribe": _cmd_transcribe,
    "combine": _cmd_combine,
    "pipeline": _cmd_pipeline,
}


def main(argv: list[str] | None = None) -> int:
    """Run one subcommand and return the process exit code."""
    args = parse_args(argv)
    output = _default_output(args)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        output_dir=output if output.suffix == "" else output.parent,
        log_file=args.log_file,
    )

    try:
        settings = load_settings(
            args.env_file,
            model=getattr(args, "model", None),
            concurrency=getattr(args, "concurrency", None)
            if args.command != "extract"
            else None,
            dpi=getattr(args, "dpi", None),
            max_attempts=getattr(args, "max_attempts", None),
        )
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    log.debug("Command=%s output=%s %r", args.command, output, settings)

    cancel = threading.Event()
    previous_handler = _install_cancel_handler(cancel)
    try:
        code = _COMMANDS[args.command](args, settings, output, cancel)
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    except (OutputTargetError, RasterizationError) as exc:
        log.error("%s failed: %s", args.command, exc)
        return EXIT_PARTIAL
    except KeyboardInterrupt:
        log.error("Interrupted")
        return EXIT_INTERRUPTED
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    if cancel.is_set() and code == EXIT_OK:
        code = EXIT_PARTIAL
    return code
