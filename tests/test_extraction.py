"""Tests for PDF text extraction and the page model."""

import io

from pypdf import PdfWriter

from pdfdeck.extraction import (
    EMPTY_DOCUMENT_TEXT,
    MAX_CHUNK_CHARS,
    MAX_CHUNKS,
    build_page_model,
    chunk_text,
    extract_page_texts,
)


def blank_pdf(page_count: int) -> bytes:
    writer = PdfWriter()
    for _ in range(page_count):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestExtractPageTexts:
    def test_one_entry_per_page(self):
        assert extract_page_texts(blank_pdf(3)) == ["", "", ""]

    def test_stops_at_max_pages(self):
        assert len(extract_page_texts(blank_pdf(4), max_pages=2)) == 2

    def test_unreadable_pdf(self):
        assert extract_page_texts(b"not a pdf") == []

    def test_missing_pdf(self):
        assert extract_page_texts(None) == []


class TestChunkText:
    def test_splits_on_blank_lines(self):
        chunks = chunk_text("Intro\nline two\n\n  \nSecond section\n\n\nThird")
        assert [c.text for c in chunks] == ["Intro\nline two", "Second section", "Third"]
        assert [c.index for c in chunks] == [1, 2, 3]

    def test_empty_text_placeholder(self):
        assert [c.text for c in chunk_text("  \n\n ")] == [EMPTY_DOCUMENT_TEXT]

    def test_bounded(self):
        text = "\n\n".join("x" * (MAX_CHUNK_CHARS + 10) for _ in range(MAX_CHUNKS + 5))
        chunks = chunk_text(text)
        assert len(chunks) == MAX_CHUNKS
        assert all(len(c.text) == MAX_CHUNK_CHARS for c in chunks)


class TestBuildPageModel:
    def test_one_entry_per_rendered_page(self):
        model = build_page_model(["first", "second"], rendered_count=3)
        assert [(p.index, p.text) for p in model] == [(1, "first"), (2, "second"), (3, "")]

    def test_text_only_uses_chunks(self):
        model = build_page_model(["Page one\n\nMore", "Page two"], rendered_count=0)
        assert [p.text for p in model] == ["Page one", "More", "Page two"]

    def test_nothing_extracted(self):
        assert [p.text for p in build_page_model([], 0)] == [EMPTY_DOCUMENT_TEXT]
