"""
Whole-document PDF operations used by the task engine.

Parsing, text extraction and page copying use pypdf; page rendering uses
PyMuPDF. Functions here raise the libraries' own exceptions unchanged so the
task engine can report their messages verbatim.
"""

from __future__ import annotations

import io
import threading

import pymupdf
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

IMAGE_FORMATS = {
    "png": ("png", "image/png"),
    "jpg": ("jpeg", "image/jpeg"),
}

# MuPDF is not thread-safe: hold this around every PyMuPDF document lifecycle
RENDER_LOCK = threading.Lock()


def _require_header(data: bytes) -> None:
    if b"%PDF-" not in data[:1024]:
        raise PdfReadError("PDF header not found")


def open_document(data: bytes) -> PdfReader:
    """Parse PDF bytes. Raises pypdf's error for content that is not a PDF."""
    _require_header(data)
    reader = PdfReader(io.BytesIO(data), strict=False)
    # page tree is parsed lazily; touch it so broken documents fail here
    len(reader.pages)
    return reader


def page_text(page) -> str:
    """Text tokens of one page joined by single spaces."""
    return " ".join((page.extract_text() or "").split())


def extract_text(reader: PdfReader) -> str:
    """
    Render a document's text as one buffer with a marker per page.

    Each page contributes ``--- Page N ---`` on its own line, the page's
    tokens, and a blank line.
    """
    parts = []
    for index, page in enumerate(reader.pages, start=1):
        parts.append(f"--- Page {index} ---\n")
        parts.append(page_text(page))
        parts.append("\n\n")
    return "".join(parts)


def new_document() -> PdfWriter:
    return PdfWriter()


def append_pages(target: PdfWriter, source: PdfReader) -> int:
    """Copy every page of ``source`` onto the end of ``target`` in order."""
    for page in source.pages:
        target.add_page(page)
    return len(source.pages)


def serialize(document: PdfWriter) -> bytes:
    buffer = io.BytesIO()
    document.write(buffer)
    return buffer.getvalue()


def open_for_render(data: bytes) -> pymupdf.Document:
    """Open PDF bytes for rasterization. Raises PyMuPDF's error for invalid content."""
    _require_header(data)
    return pymupdf.open(stream=data, filetype="pdf")


def render_page(document: pymupdf.Document, index: int, image_format: str = "png", dpi: int = 144) -> bytes:
    """
    Rasterize one page.

    Args:
        document: Document opened with open_for_render
        index: Zero-based page index
        image_format: "png" or "jpg"
        dpi: Output resolution

    Returns:
        Encoded image bytes
    """
    output, _ = image_format_details(image_format)
    pixmap = document[index].get_pixmap(dpi=dpi)
    return pixmap.tobytes(output)


def image_format_details(image_format: str) -> tuple[str, str]:
    """Return (PyMuPDF output name, MIME type) for a requested format."""
    try:
        return IMAGE_FORMATS[image_format]
    except KeyError:
        raise ValueError(f"Unsupported image format '{image_format}'. Choose from: {list(IMAGE_FORMATS)}") from None
