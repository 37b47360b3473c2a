"""Deterministic merge of per-page Markdown into one document.

Page order comes from the page index alone, never from file listing order
or from the order in which transcriptions finished. Each page body is
preceded by an HTML anchor (``<a id="page-N"></a>``) and pages are
separated by :data:`PAGE_BREAK`, so :func:`split_units` can recover the
original page boundaries from a combined file.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from .models import CombinedDocument, TocEntry
from .resume import FileResumeStore, ResumeStore, atomic_write_text
from .units import UnitSource, page_filename

log = logging.getLogger(__name__)

PAGE_BREAK = "\n\n---\n\n"
DEFAULT_TITLE = "Combined Document"

_ANCHOR_RE = re.compile(r'^<a id="page-(\d+)"></a>$', re.MULTILINE)
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")


# ---------------------------------------------------------------------------
# Cleanup rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CleanupRule:
    """A named regex substitution applied to every page body."""

    name: str
    pattern: str
    replacement: str = ""
    flags: int = 0

    def apply(self, text: str) -> str:
        return re.sub(self.pattern, self.replacement, text, flags=self.flags)


DEFAULT_CLEANUP_RULES: tuple[CleanupRule, ...] = (
    CleanupRule(
        "wrapping-code-fence",
        r"\A\s*```(?:markdown|md)?[ \t]*\n(.*?)\n?```\s*\Z",
        r"\1",
        re.DOTALL,
    ),
    # Figures the model "links" to files that do not exist.
    CleanupRule("image-links", r"!\[[^\]]*\]\([^)]*?img/[^)]*\)"),
    # Page anchors inside a page body would break boundary recovery.
    CleanupRule("page-anchors", r"<a id=['\"]page[-_]\d+['\"]>\s*</a>"),
    CleanupRule("blank-runs", r"\n{3,}", "\n\n"),
)


def clean_text(text: str, rules: Sequence[CleanupRule] = DEFAULT_CLEANUP_RULES) -> str:
    for rule in rules:
        text = rule.apply(text)
    return text.strip()


# ---------------------------------------------------------------------------
# Headings
# ---------------------------------------------------------------------------


def slugify(title: str) -> str:
    slug = title.strip().lower().replace(" ", "-")
    return "".join(c for c in slug if c.isalnum() or c in "-_")


def iter_headings(text: str) -> Iterable[tuple[int, str]]:
    """Yield (level, title) for ATX headings outside fenced code blocks."""
    in_fence = False
    for line in text.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING_RE.match(line)
        if match:
            yield len(match.group(1)), match.group(2).strip()


def leading_heading(text: str) -> Optional[tuple[int, str]]:
    """Return the heading on the first non-blank line, if there is one."""
    for line in text.splitlines():
        if not line.strip():
            continue
        match = _HEADING_RE.match(line)
        if match:
            return len(match.group(1)), match.group(2).strip()
        return None
    return None


# ---------------------------------------------------------------------------
# Combiner
# ---------------------------------------------------------------------------


def page_anchor(index: int) -> str:
    return f"page-{index}"


class Combiner:
    """Reduce {page index: markdown} into a single ordered document."""

    def __init__(
        self,
        cleanup_rules: Sequence[CleanupRule] = DEFAULT_CLEANUP_RULES,
        *,
        nested_headings: bool = True,
    ):
        self.cleanup_rules = tuple(cleanup_rules)
        self.nested_headings = nested_headings

    def combine(
        self,
        unit_outputs: Mapping[int, Optional[str]],
        *,
        expected: Optional[Iterable[int]] = None,
        title: str = DEFAULT_TITLE,
    ) -> CombinedDocument:
        indices = sorted(set(unit_outputs) | set(expected or ()))
        UnitSource(indices)  # rejects non-positive or non-int indices

        toc: list[TocEntry] = []
        sections: list[str] = []
        included: list[int] = []
        missing: list[int] = []
        seen_slugs: dict[str, int] = {}

        for index in indices:
            raw = unit_outputs.get(index)
            if raw is None or not raw.strip():
                missing.append(index)
                toc.append(TocEntry(index=index, title=f"Page {index}", available=False))
                continue

            body = clean_text(raw, self.cleanup_rules)
            included.append(index)
            toc.extend(self._toc_entries(index, body, seen_slugs))
            sections.append(f'<a id="{page_anchor(index)}"></a>\n\n{body}')

        body = PAGE_BREAK.join(sections)
        text = self._render(title, toc, body)
        if missing:
            log.warning("combine: %s page(s) unavailable: %s", len(missing), missing)
        log.info("combine: %s pages included, %s unavailable", len(included), len(missing))
        return CombinedDocument(
            title=title,
            toc=toc,
            body=body,
            included=tuple(included),
            missing=tuple(missing),
            text=text,
        )

    def _toc_entries(
        self,
        index: int,
        body: str,
        seen_slugs: dict[str, int],
    ) -> list[TocEntry]:
        lead = leading_heading(body)
        base_level = lead[0] if lead else 1
        entries = [
            TocEntry(
                index=index,
                title=lead[1] if lead else f"Page {index}",
                level=1,
                anchor=page_anchor(index),
            )
        ]
        if not self.nested_headings:
            return entries

        headings = list(iter_headings(body))
        if lead and headings and headings[0] == lead:
            headings = headings[1:]
        for level, heading in headings:
            entries.append(
                TocEntry(
                    index=index,
                    title=heading,
                    level=1 + max(1, level - base_level),
                    anchor=_unique_slug(slugify(heading), seen_slugs),
                )
            )
        return entries

    @staticmethod
    def _render(title: str, toc: list[TocEntry], body: str) -> str:
        lines = [f"# {title}", "", "## Table of Contents", ""]
        for entry in toc:
            indent = "  " * (entry.level - 1)
            if not entry.available:
                lines.append(f"{indent}- {entry.title} *(unavailable)*")
            else:
                lines.append(
                    f"{indent}- [{entry.title}](#{entry.anchor}) *(Page {entry.index})*"
                )
        header = "\n".join(lines)
        if not body:
            return header + "\n"
        return header + PAGE_BREAK + body + "\n"


def _unique_slug(base: str, seen: dict[str, int]) -> str:
    if base in seen:
        seen[base] += 1
        return f"{base}-{seen[base]}"
    seen[base] = 0
    return base


def split_units(text: str) -> dict[int, str]:
    """Recover {page index: body} from a document produced by :class:`Combiner`."""
    matches = list(_ANCHOR_RE.finditer(text))
    units: dict[int, str] = {}
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        chunk = text[match.end() : end]
        if i + 1 < len(matches) and chunk.endswith(PAGE_BREAK):
            chunk = chunk[: -len(PAGE_BREAK)]
        units[int(match.group(1))] = chunk.strip("\n")
    return units


# ---------------------------------------------------------------------------
# Directory helpers
# ---------------------------------------------------------------------------


def read_unit_outputs(
    markdown_dir: Path,
    indices: Iterable[int],
    resume_store: Optional[ResumeStore] = None,
) -> dict[int, Optional[str]]:
    """Read completed page files; incomplete or absent pages map to None."""
    store = resume_store or FileResumeStore()
    outputs: dict[int, Optional[str]] = {}
    for index in indices:
        path = markdown_dir / page_filename(index, ".md")
        outputs[index] = path.read_text(encoding="utf-8") if store.exists(path) else None
    return outputs


def title_from_path(output_file: Path) -> str:
    return output_file.stem.replace("_", " ")


def combine_directory(
    markdown_dir: Path,
    output_file: Path,
    *,
    expected: Optional[Iterable[int]] = None,
    title: Optional[str] = None,
    combiner: Optional[Combiner] = None,
) -> CombinedDocument:
    """Combine ``page_*.md`` files in *markdown_dir* into *output_file*.

    Without an explicit *expected* set, pages found in a sibling ``images``
    directory are expected too, so untranscribed pages show up as
    unavailable instead of vanishing.
    """
    log.info("Combining markdown files from %s into %s", markdown_dir, output_file)
    indices = set(UnitSource.from_directory(markdown_dir, ".md"))
    if expected is not None:
        indices |= set(expected)
    else:
        images_dir = markdown_dir.parent / "images"
        if images_dir.is_dir():
            image_indices = set(UnitSource.from_directory(images_dir, ".png"))
            log.info(
                "Found %s markdown pages and %s source images",
                len(indices),
                len(image_indices),
            )
            indices |= image_indices
        else:
            log.warning(
                "No sibling 'images' directory next to %s; cannot verify completeness",
                markdown_dir,
            )

    if not indices:
        log.warning("No page_*.md files found in %s", markdown_dir)

    outputs = read_unit_outputs(markdown_dir, sorted(indices))
    document = (combiner or Combiner()).combine(
        outputs,
        expected=indices,
        title=title or title_from_path(output_file),
    )
    atomic_write_text(output_file, document.text)
    log.info("Created combined file: %s", output_file)
    return document
