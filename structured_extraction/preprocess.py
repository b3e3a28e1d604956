from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

PAGE_DELIMITER = "\n---PAGE---\n"
DEFAULT_MAX_SIZE = 4000

_SENTENCE_BREAKS = (". ", "! ", "? ")


@dataclass(frozen=True)
class Chunk:
    """A bounded slice of input text handled by one extraction call."""

    content: str
    index: int  # 1-based, strictly increasing within a run
    metadata: Dict[str, Any] = field(default_factory=dict)


def split_by_delimiter(text: str, delimiter: str = PAGE_DELIMITER) -> List[Chunk]:
    """
    Split ``text`` on every literal ``delimiter`` and trim each piece.

    Empty input still yields a single (empty) chunk.
    """
    if not delimiter:
        raise InvalidInputError("delimiter must be a non-empty string", field="delimiter")
    return [
        Chunk(content=piece.strip(), index=i)
        for i, piece in enumerate(text.split(delimiter), start=1)
    ]


def _break_index(window: str, max_size: int) -> int:
    threshold = max_size * 0.5

    paragraph = window.rfind("\n\n", 0, max_size + 2)
    if paragraph >= threshold:
        return paragraph

    sentence = max(window.rfind(mark, 0, max_size + 1) for mark in _SENTENCE_BREAKS)
    if sentence >= threshold:
        # keep the terminator with the preceding chunk
        return sentence + 1

    return max_size


def split_by_size(text: str, max_size: int = DEFAULT_MAX_SIZE) -> List[Chunk]:
    """
    Greedily cut ``text`` into chunks of at most ``max_size`` characters.

    Each cut prefers the last paragraph break, then the last sentence end,
    as long as it falls in the second half of the window; otherwise the
    text is cut at exactly ``max_size``.
    """
    if not isinstance(max_size, int) or max_size <= 0:
        raise InvalidInputError("max_size must be a positive integer", field="max_size")

    chunks: List[Chunk] = []
    remaining = text.strip()
    while remaining:
        if len(remaining) > max_size:
            split_at = _break_index(remaining, max_size)
        else:
            split_at = len(remaining)
        content = remaining[:split_at].strip()
        if content:
            chunks.append(Chunk(content=content, index=len(chunks) + 1))
        remaining = remaining[split_at:].strip()
    return chunks


@dataclass
class PDFPreprocessor:
    """
    Turns a PDF into one chunk per page with non-empty text.
    """

    max_pages: int | None = None

    def load(self, file_path: Path) -> List[Chunk]:
        file_path = Path(file_path)
        try:
            doc = fitz.open(str(file_path))
        except (RuntimeError, ValueError) as exc:
            raise InvalidInputError(f"Cannot read PDF {file_path.name}: {exc}", field="file") from exc

        chunks: List[Chunk] = []
        with doc:
            page_count = len(doc)
            for page_index in range(page_count):
                if self.max_pages is not None and page_index >= self.max_pages:
                    break
                text = doc.load_page(page_index).get_text("text").strip()
                if not text:
                    logger.debug("Skipping blank page %d of %s", page_index + 1, file_path.name)
                    continue
                chunks.append(
                    Chunk(
                        content=text,
                        index=page_index + 1,
                        metadata={"page": page_index + 1, "file": file_path.name, "type": "pdf"},
                    )
                )
        logger.info("Loaded %d of %d pages from %s", len(chunks), page_count, file_path.name)
        return chunks


def load_document(
    file_path: Path,
    *,
    delimiter: Optional[str] = None,
    max_size: Optional[int] = None,
) -> List[Chunk]:
    """
    Read a PDF or text file into chunks.

    Text is split by ``delimiter`` or by ``max_size`` (at most one of the
    two), else kept whole as a single chunk.
    """
    if delimiter is not None and max_size is not None:
        raise InvalidInputError("Pass either delimiter or max_size, not both", field="max_size")
    file_path = Path(file_path)
    if not file_path.is_file():
        raise InvalidInputError(f"File not found: {file_path}", field="file")

    if file_path.suffix.lower() == ".pdf":
        return PDFPreprocessor().load(file_path)

    try:
        text = file_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidInputError(f"Cannot decode {file_path.name} as UTF-8", field="file") from exc
    if delimiter is not None:
        return split_by_delimiter(text, delimiter)
    if max_size is not None:
        return split_by_size(text, max_size)
    return [Chunk(content=text.strip(), index=1, metadata={"file": file_path.name})]
