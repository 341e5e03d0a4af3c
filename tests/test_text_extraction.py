import asyncio
import io

import pytest
from docx import Document

from cognivault.errors import EmptyContent, ExtractionFailure, UnsupportedFileType
from cognivault.llm import FallbackLLM
from cognivault.text_extraction import (
    create_chunks,
    extract_text,
    normalize_text,
    split_sentences,
)

from conftest import ScriptedLLM


def paragraph(topic: str, count: int) -> str:
    return " ".join(f"Sentence {i} about {topic} keeps the paragraph going." for i in range(count))


# ==================== Normalization ====================

def test_normalize_text_collapses_whitespace_and_strips_control_chars():
    raw = "a\r\nb  \t c   \n\n\n\nd\x00e  "
    assert normalize_text(raw) == "a\nb c\n\nde"


def test_normalize_text_keeps_single_blank_lines_and_tabs_collapse():
    assert normalize_text("one\n\ntwo\tthree") == "one\n\ntwo three"
    assert normalize_text("") == ""


# ==================== Extraction ====================

def test_plain_text_is_decoded_and_normalized():
    text = asyncio.run(extract_text(b"Hello   world.\r\n\r\n\r\nBye.", "text/plain", "notes.txt"))
    assert text == "Hello world.\n\nBye."


def test_unsupported_mime_type_is_rejected():
    with pytest.raises(UnsupportedFileType):
        asyncio.run(extract_text(b"PK..", "application/zip", "archive.zip"))


def test_whitespace_only_file_is_empty_content():
    with pytest.raises(EmptyContent):
        asyncio.run(extract_text(b"  \n\t \n", "text/plain", "blank.txt"))


def test_corrupt_pdf_is_extraction_failure():
    with pytest.raises(ExtractionFailure):
        asyncio.run(extract_text(b"this is not a pdf", "application/pdf", "broken.pdf"))


def test_docx_paragraphs_and_tables():
    doc = Document()
    doc.add_paragraph("Quarterly review.")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "revenue"
    table.rows[0].cells[1].text = "up"
    buf = io.BytesIO()
    doc.save(buf)

    text = asyncio.run(extract_text(
        buf.getvalue(),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "review.docx",
    ))
    assert "Quarterly review." in text
    assert "revenue | up" in text


def test_image_text_comes_from_vision_provider():
    llm = ScriptedLLM(image_text="Whiteboard  notes\n\n\n\nabout graphs")
    text = asyncio.run(extract_text(b"\x89PNG", "image/png", "board.png", llm))
    assert text == "Whiteboard notes\n\nabout graphs"


def test_image_without_readable_text_is_empty_content():
    with pytest.raises(EmptyContent):
        asyncio.run(extract_text(b"\x89PNG", "image/png", "blank.png", ScriptedLLM(image_text=None)))


def test_image_without_vision_provider_is_extraction_failure():
    with pytest.raises(ExtractionFailure):
        asyncio.run(extract_text(b"\x89PNG", "image/png", "board.png", FallbackLLM()))


# ==================== Chunking ====================

def test_empty_text_gives_no_chunks():
    assert create_chunks("") == []
    assert create_chunks("   ") == []


def test_short_text_gives_one_chunk():
    chunks = create_chunks("Just one short sentence.", chunk_size=600, overlap=120)
    assert len(chunks) == 1
    assert chunks[0].text == "Just one short sentence."
    assert chunks[0].overlap == 0


def test_two_paragraphs_give_two_chunks_with_carried_tail():
    first = paragraph("science", 11)
    second = paragraph("ethics", 11)
    assert len(first) <= 600 and len(second) <= 600
    text = f"{first}\n\n{second}"

    chunks = create_chunks(text, chunk_size=600, overlap=120)

    assert len(chunks) == 2
    assert chunks[0].text == first
    assert chunks[1].body == second
    prefix = chunks[1].text[:chunks[1].overlap - 1]
    assert 0 < len(prefix) <= 120
    assert first.endswith(prefix)
    assert chunks[1].text == f"{prefix} {second}"


def test_bodies_reconstruct_sentence_sequence():
    text = " ".join(paragraph(topic, 7) for topic in ("graphs", "vectors", "documents", "timelines"))
    chunks = create_chunks(text, chunk_size=300, overlap=80)

    assert len(chunks) > 1
    assert " ".join(c.body for c in chunks) == " ".join(split_sentences(text))
    assert [c.index for c in chunks] == list(range(len(chunks)))


def test_chunk_bodies_stay_within_size_unless_one_sentence_is_longer():
    long_sentence = ("word " * 160).strip() + "."
    text = f"A short opener. {long_sentence} A short closer."
    chunks = create_chunks(text, chunk_size=200, overlap=50)

    longest = max(len(s) for s in split_sentences(text))
    for chunk in chunks:
        assert len(chunk.body) <= max(200, longest)
    assert any(chunk.body == long_sentence for chunk in chunks)


def test_chunking_is_deterministic():
    text = paragraph("determinism", 30)
    first = create_chunks(text, chunk_size=250, overlap=60)
    second = create_chunks(text, chunk_size=250, overlap=60)
    assert [(c.text, c.overlap) for c in first] == [(c.text, c.overlap) for c in second]


def test_split_sentences_keeps_trailing_fragment():
    assert split_sentences("One. Two! Three? and a tail") == ["One.", "Two!", "Three?", "and a tail"]
