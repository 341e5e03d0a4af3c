"""
Text extraction, normalization and sentence-aware chunking.
"""
import asyncio
import io
import re
from dataclasses import dataclass
from typing import List, Optional

from pypdf import PdfReader
from docx import Document as DocxDocument

from .errors import EmptyContent, ExtractionFailure, UnsupportedFileType
from .logging_config import logger

PDF_TYPES = {"application/pdf"}
WORD_TYPES = {
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
TEXT_TYPES = {"text/plain", "text/markdown"}
IMAGE_TYPES = {
    "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/bmp",
}
SUPPORTED_TYPES = PDF_TYPES | WORD_TYPES | TEXT_TYPES | IMAGE_TYPES

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_SPACE_RUNS = re.compile(r"[ \t]+")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")
_SENTENCE = re.compile(r"[^.!?]+[.!?]+")


def normalize_text(text: str) -> str:
    """
    Normalize extracted text before chunking.

    CRLF and CR become LF, control characters other than newline and tab are
    removed, runs of spaces/tabs collapse to one space, trailing spaces are
    dropped per line, 3+ newlines collapse to 2, and the result is trimmed.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _SPACE_RUNS.sub(" ", text)
    text = _TRAILING_SPACE.sub("\n", text)
    text = _EXTRA_NEWLINES.sub("\n\n", text)
    return text.strip()


# ==================== Extraction ====================

def read_text_from_pdf(data: bytes) -> str:
    pdf = PdfReader(io.BytesIO(data))
    parts = []
    for page in pdf.pages:
        parts.append(page.extract_text() or "")
    return "\n".join(parts)


def read_text_from_docx(data: bytes) -> str:
    """
    Extract text from DOCX file including both paragraphs and tables.
    Tables are converted to readable text format.
    """
    doc = DocxDocument(io.BytesIO(data))
    parts = []

    for para in doc.paragraphs:
        text = para.text.strip()
        if text:
            parts.append(text)

    for table in doc.tables:
        table_text = extract_table_text(table)
        if table_text:
            parts.append(table_text)

    return "\n\n".join(parts)


def extract_table_text(table) -> str:
    """
    Convert a DOCX table to readable text format.
    Each row becomes one line with cells separated by pipes.
    """
    lines = []
    for row in table.rows:
        cells = [cell.text.strip() for cell in row.cells]
        if not any(cells):
            continue
        lines.append(" | ".join(cells))
    return "\n".join(lines)


def read_text_from_txt(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def extract_document_text(data: bytes, mime_type: str, filename: str) -> str:
    """
    Extract raw (unnormalized) text from a non-image upload.

    Raises:
        UnsupportedFileType: MIME type outside the allow-list or an image
        ExtractionFailure: The parser raised on the content
    """
    mime = (mime_type or "").lower()
    try:
        if mime in PDF_TYPES:
            return read_text_from_pdf(data)
        if mime in WORD_TYPES:
            return read_text_from_docx(data)
        if mime in TEXT_TYPES:
            return read_text_from_txt(data)
    except Exception as e:
        logger.warning("Failed to parse upload", filename=filename, mime_type=mime, error=str(e))
        raise ExtractionFailure(f"Could not read {filename}", detail=str(e)) from e
    raise UnsupportedFileType(mime)


async def extract_text(data: bytes, mime_type: str, filename: str, llm=None) -> str:
    """
    Convert an upload into normalized plain text.

    Images go through the LLM provider's vision call; everything else is
    parsed locally off the event loop.

    Args:
        data: Raw file bytes
        mime_type: Declared MIME type
        filename: Original filename, used for logging and messages
        llm: LLMProvider used for image OCR

    Returns:
        Normalized text (never empty)

    Raises:
        UnsupportedFileType, ExtractionFailure, EmptyContent
    """
    mime = (mime_type or "").lower()
    if mime not in SUPPORTED_TYPES:
        raise UnsupportedFileType(mime)

    if mime in IMAGE_TYPES:
        raw = await _extract_image_text(data, mime, filename, llm)
    else:
        raw = await asyncio.to_thread(extract_document_text, data, mime, filename)

    text = normalize_text(raw or "")
    if not text:
        raise EmptyContent(f"No content could be extracted from {filename}")

    logger.info("Extracted text", filename=filename, mime_type=mime, characters=len(text))
    return text


async def _extract_image_text(data: bytes, mime: str, filename: str, llm) -> Optional[str]:
    if llm is None:
        raise ExtractionFailure(f"Cannot read text from image {filename}: no vision provider configured")
    try:
        return await llm.extract_text_from_image(data, mime)
    except Exception as e:
        logger.warning("Image text extraction failed", filename=filename, error=str(e))
        raise ExtractionFailure(f"Could not read text from image {filename}", detail=str(e)) from e


# ==================== Chunking ====================

@dataclass
class TextChunk:
    """
    One chunk of a document.

    `text` is what gets stored and enriched. The first `overlap` characters
    of `text` are carried over from the previous chunk; `body` is the rest.
    """
    index: int
    text: str
    overlap: int = 0

    @property
    def body(self) -> str:
        return self.text[self.overlap:]


def split_sentences(text: str) -> List[str]:
    """
    Split text on terminal punctuation, keeping a trailing unterminated fragment.
    """
    sentences = []
    end = 0
    for match in _SENTENCE.finditer(text):
        sentence = match.group().strip()
        if sentence:
            sentences.append(sentence)
        end = match.end()
    tail = text[end:].strip()
    if tail:
        sentences.append(tail)
    return sentences


def _overlap_tail(text: str, overlap: int) -> str:
    """Last `overlap` characters of text, trimmed forward to a word boundary."""
    if overlap <= 0:
        return ""
    if len(text) <= overlap:
        return text.strip()
    start = len(text) - overlap
    tail = text[start:]
    if not text[start - 1].isspace():
        cut = tail.find(" ")
        tail = tail[cut + 1:] if cut != -1 else ""
    return tail.strip()


def create_chunks(text: str, chunk_size: int = 600, overlap: int = 120) -> List[TextChunk]:
    """
    Split text into sentence-bounded chunks with a carried-over prefix.

    Sentences are packed greedily while the chunk body stays within
    chunk_size. Each chunk after the first starts with up to `overlap`
    characters from the end of the previous chunk. A sentence longer than
    chunk_size becomes a body of its own and is never truncated.

    Args:
        text: Normalized text
        chunk_size: Maximum body length in characters
        overlap: Maximum carried prefix length in characters

    Returns:
        Ordered chunks; [] for empty text, one chunk for short text
    """
    text = (text or "").strip()
    if not text:
        return []
    if len(text) <= chunk_size:
        return [TextChunk(index=0, text=text)]

    bodies = []
    current = []
    current_len = 0
    for sentence in split_sentences(text):
        added = len(sentence) + (1 if current else 0)
        if current and current_len + added > chunk_size:
            bodies.append(" ".join(current))
            current = [sentence]
            current_len = len(sentence)
        else:
            current.append(sentence)
            current_len += added
    if current:
        bodies.append(" ".join(current))

    chunks = []
    for i, body in enumerate(bodies):
        if i == 0:
            chunks.append(TextChunk(index=0, text=body))
            continue
        prefix = _overlap_tail(chunks[-1].text, overlap)
        if prefix:
            chunks.append(TextChunk(index=i, text=f"{prefix} {body}", overlap=len(prefix) + 1))
        else:
            chunks.append(TextChunk(index=i, text=body))
    return chunks
