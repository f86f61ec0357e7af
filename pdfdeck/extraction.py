"""PDF text extraction and the page model handed to the generator."""

import io
import re

import structlog
from pypdf import PdfReader

from pdfdeck.models import PageText

logger = structlog.get_logger()

MAX_CHUNKS = 50
MAX_CHUNK_CHARS = 5000
EMPTY_DOCUMENT_TEXT = "Uploaded PDF"

_BLANK_LINE = re.compile(r"\n\s*\n")


def extract_page_texts(pdf_bytes: bytes | None, max_pages: int | None = None) -> list[str]:
    """
    Extract text from each page of a PDF.

    Args:
        pdf_bytes: Raw PDF content
        max_pages: Stop after this many pages

    Returns:
        One string per page, or an empty list if the PDF cannot be read
    """
    if not pdf_bytes:
        return []
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        texts: list[str] = []
        for i, page in enumerate(reader.pages):
            if max_pages is not None and i >= max_pages:
                break
            texts.append(page.extract_text() or "")
    except Exception as e:
        # Image-only or damaged PDFs still get a text-free deck
        logger.warning("PDF text extraction failed", error=str(e))
        return []

    logger.info(
        "PDF text extracted",
        page_count=len(texts),
        char_count=sum(len(t) for t in texts),
    )
    return texts


def chunk_text(text: str) -> list[PageText]:
    """Split text on blank lines into a bounded number of page-like chunks."""
    chunks = [c.strip() for c in _BLANK_LINE.split(text or "") if c.strip()]
    if not chunks:
        chunks = [EMPTY_DOCUMENT_TEXT]
    chunks = chunks[:MAX_CHUNKS]
    return [
        PageText(index=i + 1, text=chunk[:MAX_CHUNK_CHARS])
        for i, chunk in enumerate(chunks)
    ]


def build_page_model(page_texts: list[str], rendered_count: int) -> list[PageText]:
    """
    Decide the pages the generator sees.

    With rendered pages, there is one entry per rendered page, carrying the
    extracted text of the page at the same position. Without them, the
    chunked full text is the page model.
    """
    if rendered_count > 0:
        return [
            PageText(
                index=i + 1,
                text=(page_texts[i] if i < len(page_texts) else "")[:MAX_CHUNK_CHARS],
            )
            for i in range(rendered_count)
        ]
    return chunk_text("\n\n".join(page_texts))
