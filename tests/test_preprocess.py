"""Tests for chunking and document loading."""

import fitz
import pytest

from structured_extraction.errors import InvalidInputError
from structured_extraction.preprocess import (
    PAGE_DELIMITER,
    Chunk,
    PDFPreprocessor,
    load_document,
    split_by_delimiter,
    split_by_size,
)


class TestSplitByDelimiter:
    def test_splits_pages_and_trims(self):
        chunks = split_by_delimiter("Part 1\n---PAGE---\nPart 2\n---PAGE---\nPart 3", PAGE_DELIMITER)
        assert [c.content for c in chunks] == ["Part 1", "Part 2", "Part 3"]
        assert [c.index for c in chunks] == [1, 2, 3]

    def test_default_delimiter(self):
        assert len(split_by_delimiter("a\n---PAGE---\nb")) == 2

    def test_custom_delimiter(self):
        chunks = split_by_delimiter("  one | two |three ", "|")
        assert [c.content for c in chunks] == ["one", "two", "three"]

    def test_empty_input_yields_one_chunk(self):
        assert split_by_delimiter("") == [Chunk(content="", index=1)]

    def test_rejects_empty_delimiter(self):
        with pytest.raises(InvalidInputError):
            split_by_delimiter("text", "")


class TestSplitBySize:
    def test_short_text_is_one_chunk(self):
        chunks = split_by_size("  short text  ", 100)
        assert chunks == [Chunk(content="short text", index=1)]

    def test_empty_text_yields_no_chunks(self):
        assert split_by_size("   ", 10) == []

    def test_prefers_paragraph_break(self):
        text = "a" * 70 + "\n\n" + "b" * 50
        chunks = split_by_size(text, 100)
        assert [c.content for c in chunks] == ["a" * 70, "b" * 50]

    def test_falls_back_to_sentence_break(self):
        text = "x" * 60 + ". " + "y" * 60
        chunks = split_by_size(text, 100)
        assert chunks[0].content == "x" * 60 + "."
        assert chunks[1].content == "y" * 60

    def test_ignores_breaks_in_first_half(self):
        text = "a" * 20 + "\n\n" + "b" * 200
        chunks = split_by_size(text, 100)
        assert len(chunks[0].content) == 100
        assert chunks[0].content.startswith("a" * 20)

    def test_hard_cut_without_breaks(self):
        chunks = split_by_size("z" * 250, 100)
        assert [len(c.content) for c in chunks] == [100, 100, 50]
        assert [c.index for c in chunks] == [1, 2, 3]

    def test_chunks_never_exceed_max_size_and_rejoin(self):
        paragraphs = [
            "Sentence one is here. Sentence two follows it. " * (i + 1) for i in range(6)
        ]
        text = "\n\n".join(paragraphs)
        chunks = split_by_size(text, 120)

        assert all(0 < len(c.content) <= 120 for c in chunks)
        assert "".join(c.content for c in chunks).replace(" ", "").replace("\n", "") == (
            text.strip().replace(" ", "").replace("\n", "")
        )

    @pytest.mark.parametrize("max_size", [0, -5])
    def test_rejects_non_positive_size(self, max_size):
        with pytest.raises(InvalidInputError):
            split_by_size("text", max_size)


@pytest.fixture
def sample_pdf(tmp_path):
    path = tmp_path / "sample.pdf"
    doc = fitz.open()
    for text in ("First page text", None, "Third page text"):
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    doc.save(str(path))
    doc.close()
    return path


class TestPDFPreprocessor:
    def test_one_chunk_per_non_blank_page(self, sample_pdf):
        chunks = PDFPreprocessor().load(sample_pdf)
        assert [c.index for c in chunks] == [1, 3]
        assert chunks[0].content == "First page text"
        assert chunks[1].metadata == {"page": 3, "file": "sample.pdf", "type": "pdf"}

    def test_max_pages(self, sample_pdf):
        chunks = PDFPreprocessor(max_pages=1).load(sample_pdf)
        assert len(chunks) == 1

    def test_unreadable_pdf(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"This is not a PDF file")
        with pytest.raises(InvalidInputError):
            PDFPreprocessor().load(path)


class TestLoadDocument:
    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidInputError):
            load_document(tmp_path / "missing.txt")

    def test_text_as_single_chunk(self, tmp_path):
        path = tmp_path / "doc.txt"
        path.write_text("  hello world \n", encoding="utf-8")
        chunks = load_document(path)
        assert len(chunks) == 1
        assert chunks[0].content == "hello world"
        assert chunks[0].metadata["file"] == "doc.txt"

    def test_text_by_delimiter(self, tmp_path):
        path = tmp_path / "doc.txt"
        path.write_text("one\n---PAGE---\ntwo", encoding="utf-8")
        assert [c.content for c in load_document(path, delimiter=PAGE_DELIMITER)] == ["one", "two"]

    def test_text_by_size(self, tmp_path):
        path = tmp_path / "doc.txt"
        path.write_text("q" * 25, encoding="utf-8")
        assert len(load_document(path, max_size=10)) == 3

    def test_invalid_utf8(self, tmp_path):
        path = tmp_path / "binary.txt"
        path.write_bytes(b"\xff\xfe bad \x80")
        with pytest.raises(InvalidInputError) as excinfo:
            load_document(path)
        assert excinfo.value.field == "file"
        assert "UTF-8" in str(excinfo.value)

    def test_rejects_delimiter_with_size(self, tmp_path):
        path = tmp_path / "doc.txt"
        path.write_text("one\n---PAGE---\ntwo", encoding="utf-8")
        with pytest.raises(InvalidInputError):
            load_document(path, delimiter=PAGE_DELIMITER, max_size=10)

    def test_pdf_dispatch(self, sample_pdf):
        assert len(load_document(sample_pdf)) == 2
