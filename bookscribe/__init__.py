"""PDF -> page images -> Markdown -> combined book pipeline.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from bookscribe import X`` works.
"""

from .combine import (
    DEFAULT_CLEANUP_RULES,
    PAGE_BREAK,
    CleanupRule,
    Combiner,
    clean_text,
    combine_directory,
    split_units,
)
from .config import Settings, load_settings
from .errors import (
    BookscribeError,
    ConfigError,
    OutputTargetError,
    PermanentRemoteError,
    RasterizationError,
    RemoteError,
    StageCancelled,
    TransientRemoteError,
)
from .models import (
    CombinedDocument,
    DocumentState,
    Job,
    PipelineResult,
    RunSummary,
    StageReport,
    TocEntry,
    Unit,
    UnitOutcome,
)
from .orchestrator import PipelineOrchestrator
from .rasterize import PyMuPDFRasterizer, Rasterizer
from .resume import FileResumeStore, ResumeStore, atomic_write_bytes, atomic_write_text
from .scheduler import BoundedScheduler, RetryPolicy, UnitState, run_stage
from .transcribe import OpenRouterTranscriber, Transcriber, strip_code_fence
from .units import UnitSource, discover_pdfs, page_filename, parse_page_index
from .utils import ensure_output_dirs, save_summary

__all__ = [
    # Models
    "Job",
    "Unit",
    "UnitOutcome",
    "StageReport",
    "TocEntry",
    "CombinedDocument",
    "DocumentState",
    "PipelineResult",
    "RunSummary",
    # Errors
    "BookscribeError",
    "ConfigError",
    "RemoteError",
    "TransientRemoteError",
    "PermanentRemoteError",
    "RasterizationError",
    "OutputTargetError",
    "StageCancelled",
    # Config / utils
    "Settings",
    "load_settings",
    "ensure_output_dirs",
    "save_summary",
    # Units
    "UnitSource",
    "discover_pdfs",
    "page_filename",
    "parse_page_index",
    # Resume
    "ResumeStore",
    "FileResumeStore",
    "atomic_write_bytes",
    "atomic_write_text",
    # Scheduling
    "BoundedScheduler",
    "RetryPolicy",
    "UnitState",
    "run_stage",
    # Ports
    "Rasterizer",
    "PyMuPDFRasterizer",
    "Transcriber",
    "OpenRouterTranscriber",
    "strip_code_fence",
    # Combining
    "CleanupRule",
    "DEFAULT_CLEANUP_RULES",
    "PAGE_BREAK",
    "Combiner",
    "clean_text",
    "combine_directory",
    "split_units",
    # Orchestration
    "PipelineOrchestrator",
]
