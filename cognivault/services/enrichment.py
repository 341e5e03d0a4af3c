"""
Metadata enrichment service.
Asks the LLM for structured chunk and document metadata, falling back to
deterministic heuristics whenever the provider or its output lets us down.
"""
import json
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..llm import LLMProvider
from ..logging_config import logger
from ..schemas import ChunkMetadata, DocumentAnalysis
from ..text_extraction import split_sentences
from ..utils.helpers import normalize_tags, top_words

NO_SUMMARY = "No summary available for this content."

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

METADATA_PROMPT = """Analyze the following text and return ONLY a JSON object with this exact structure:
{{
  "summary": "<one or two sentence summary>",
  "tags": ["keyword1", "keyword2", "keyword3"],
  "entities": [{{"name": "Entity Name", "type": "person|organization|location|date|other"}}],
  "relations": [{{"subject": "Entity1", "predicate": "relationship", "object": "Entity2"}}]
}}

Use 3-7 short lowercase tags describing the topics. Do not add commentary.

Text:
{text}"""

DOCUMENT_PROMPT = """Analyze this document named "{filename}" and return ONLY a JSON object:
{{
  "document_type": "<article|email|notes|report|research|journal|other>",
  "main_topic": "<main topic>",
  "key_points": ["point 1", "point 2", "point 3"],
  "sentiment": "<positive|negative|neutral|analytical|informative>",
  "complexity": "<beginner|intermediate|advanced>",
  "suggested_categories": ["category1", "category2"]
}}

Document:
{text}"""


def extract_json_object(raw: str) -> Dict[str, Any]:
    """
    Return the first JSON object embedded in an LLM response.

    Code fences and any prose around the object are ignored.

    Raises:
        ValueError: If no JSON object can be decoded
    """
    cleaned = _FENCE_RE.sub("", raw or "")
    decoder = json.JSONDecoder()
    start = cleaned.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(cleaned, start)
            if isinstance(obj, dict):
                return obj
        except json.JSONDecodeError:
            pass
        start = cleaned.find("{", start + 1)
    raise ValueError("No JSON object in response")


# ==================== Chunk metadata ====================

def fallback_metadata(text: str) -> ChunkMetadata:
    """
    Deterministic metadata: first three sentences as the summary and the
    five most frequent words longer than four characters as tags.
    Never raises.
    """
    try:
        sentences = split_sentences(text or "")
        summary = " ".join(sentences[:3]) if sentences else NO_SUMMARY
        tags = top_words(text or "", limit=5, min_length=4)
    except Exception as e:
        logger.error("Fallback metadata failed", error=str(e))
        summary, tags = NO_SUMMARY, []
    return ChunkMetadata(summary=summary, tags=tags, entities=[], relations=[])


async def generate_metadata(llm: LLMProvider, text: str) -> ChunkMetadata:
    """
    Generate summary, tags, entities and relations for one chunk.

    Args:
        llm: The configured provider
        text: Chunk text

    Returns:
        Validated metadata; the fallback on any provider or parsing failure
    """
    try:
        raw = await llm.generate_text(METADATA_PROMPT.format(text=text[:4000]))
        data = extract_json_object(raw)
        data["tags"] = normalize_tags(data.get("tags") or [])
        metadata = ChunkMetadata.model_validate(data)
        if not metadata.summary.strip():
            metadata.summary = fallback_metadata(text).summary
        return metadata
    except (ValueError, ValidationError, TypeError) as e:
        logger.warning("Unusable metadata from LLM, using fallback", provider=llm.name, error=str(e))
    except Exception as e:
        logger.warning("Metadata generation failed, using fallback", provider=llm.name, error=str(e))
    return fallback_metadata(text)


# ==================== Document analysis ====================

def fallback_analysis(filename: str) -> DocumentAnalysis:
    return DocumentAnalysis(
        document_type="document",
        main_topic=filename,
        key_points=[],
        sentiment="neutral",
        complexity="intermediate",
        suggested_categories=["general"],
    )


async def analyze_document(llm: LLMProvider, text: str, filename: str) -> DocumentAnalysis:
    """Document-level type, topic, sentiment and complexity."""
    try:
        raw = await llm.generate_text(DOCUMENT_PROMPT.format(filename=filename, text=text[:8000]))
        data = extract_json_object(raw)
        analysis = DocumentAnalysis.model_validate(data)
        if not analysis.main_topic:
            analysis.main_topic = filename
        analysis.sentiment = analysis.sentiment.strip().lower() or "neutral"
        return analysis
    except Exception as e:
        logger.warning("Document analysis failed, using fallback", provider=llm.name, filename=filename, error=str(e))
        return fallback_analysis(filename)


async def generate_text(llm: LLMProvider, prompt: str, fallback: str, system: Optional[str] = None) -> str:
    """Free-form completion; returns `fallback` on any failure or empty output."""
    try:
        text = (await llm.generate_text(prompt, system=system)).strip()
        return text or fallback
    except Exception as e:
        logger.info("Text generation unavailable, using fallback", provider=llm.name, error=str(e))
        return fallback
