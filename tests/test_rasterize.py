from __future__ import annotations

from pathlib import Path

import fitz
import pytest

from bookscribe import PyMuPDFRasterizer, RasterizationError


@pytest.fixture
def two_page_pdf(tmp_path: Path) -> Path:
    path = tmp_path / "two_pages.pdf"
    doc = fitz.open()
    for text in ("First page", "Second page"):
        page = doc.new_page(width=200, height=200)
        page.insert_text((20, 40), text)
    doc.save(str(path))
    doc.close()
    return path


def test_page_count(two_page_pdf):
    assert PyMuPDFRasterizer().page_count(two_page_pdf) == 2


def test_rasterize_returns_png(two_page_pdf):
    data = PyMuPDFRasterizer().rasterize(two_page_pdf, 2, dpi=72)
    assert data.startswith(b"\x89PNG\r\n\x1a\n")


def _png_width(data: bytes) -> int:
    # IHDR width field
    return int.from_bytes(data[16:20], "big")


def test_higher_dpi_gives_bigger_image(two_page_pdf):
    rasterizer = PyMuPDFRasterizer()
    small = rasterizer.rasterize(two_page_pdf, 1, dpi=36)
    large = rasterizer.rasterize(two_page_pdf, 1, dpi=144)
    assert _png_width(small) == 100
    assert _png_width(large) == 400


@pytest.mark.parametrize("index", [0, 3])
def test_out_of_range_page(two_page_pdf, index):
    with pytest.raises(RasterizationError, match="out of range"):
        PyMuPDFRasterizer().rasterize(two_page_pdf, index, dpi=72)


def test_corrupt_document(tmp_path):
    bad = tmp_path / "bad.pdf"
    bad.write_bytes(b"this is not a pdf")
    with pytest.raises(RasterizationError):
        PyMuPDFRasterizer().page_count(bad)


def test_missing_document(tmp_path):
    with pytest.raises(RasterizationError):
        PyMuPDFRasterizer().rasterize(tmp_path / "missing.pdf", 1, dpi=72)
