"""
Incognito vault.
One-shot analysis of private content that never reaches the graph, document
or vector stores. Results live only in the runtime's SessionStore.
"""
import re
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional

from ..errors import EmptyContent, NotFound
from ..llm import FallbackLLM
from ..logging_config import logger
from ..sessions import SessionStore
from ..text_extraction import extract_text
from .enrichment import extract_json_object

MAX_CONTENT_CHARS = 15000
CHAT_CONTEXT_CHARS = 5000

NOT_CONFIGURED_SUMMARY = "AI service is not configured. Set COGNIVAULT_LLM_PROVIDER to enable full analysis."
UNREACHABLE_SUMMARY = (
    "Unable to contact the AI service right now. Here are the most frequent terms from your input."
)
NOT_CONFIGURED_CHAT = "AI chat is not configured. Set COGNIVAULT_LLM_PROVIDER to enable chat."
UNREACHABLE_CHAT = "I'm having trouble processing your request right now. Please try again in a moment."
EMPTY_CHAT = "I couldn't generate a response."

POSITIVE_TERMS = ("good", "great", "excellent", "amazing", "wonderful", "positive", "happy", "success")
NEGATIVE_TERMS = ("bad", "terrible", "awful", "negative", "sad", "failure", "problem", "error")

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_URL = re.compile(r"https?://\S+")
_DATE = re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b")

ANALYSIS_PROMPT = """You are assisting in a private, non-persistent AI session. Analyze the provided content comprehensively.

Return a JSON object with this exact structure:
{{
  "summary": "<3-4 sentence summary>",
  "tags": ["keyword1", "keyword2", "keyword3"],
  "entities": [{{"label": "Entity Name", "type": "PERSON|ORG|LOCATION|DATE|OTHER"}}],
  "topics": ["topic1", "topic2", "topic3"],
  "relations": [{{"from": "Entity1", "to": "Entity2", "type": "relationship type"}}],
  "sentiment": {{"label": "Positive|Negative|Neutral", "score": 0.0}}
}}

Content:
{content}"""

CHAT_PROMPT = """You are an AI assistant in a private, temporary session. The user is asking about content they've uploaded.

Context:
{context}

User question: {message}

Provide a helpful, concise response based on the context. Remember this is a temporary session and nothing is saved."""


def sanitize_content(raw: Optional[str]) -> str:
    """Collapse all whitespace runs to single spaces."""
    return " ".join((raw or "").split())


def _word_counts(text: str, min_length: int) -> Counter:
    words = _NON_ALNUM.sub(" ", text.lower()).split()
    return Counter(w for w in words if len(w) > min_length)


def frequent_terms(text: str, limit: int = 10) -> List[str]:
    return [word for word, _ in _word_counts(text, 4).most_common(limit)]


def word_cloud(text: str, limit: int = 20) -> List[Dict[str, Any]]:
    top = _word_counts(text, 3).most_common(limit)
    if not top:
        return []
    peak = top[0][1]
    return [{"text": word, "weight": count / peak} for word, count in top]


def pattern_entities(text: str, limit: int = 10) -> List[Dict[str, str]]:
    """Emails, URLs and numeric dates found by regex."""
    entities = [{"label": m, "type": "EMAIL"} for m in _EMAIL.findall(text)]
    entities += [{"label": m, "type": "URL"} for m in _URL.findall(text)]
    entities += [{"label": m, "type": "DATE"} for m in _DATE.findall(text)]
    return entities[:limit]


def term_sentiment(text: str) -> Dict[str, Any]:
    lowered = text.lower()
    positive = sum(1 for term in POSITIVE_TERMS if term in lowered)
    negative = sum(1 for term in NEGATIVE_TERMS if term in lowered)
    if positive + negative == 0:
        return {"label": "Neutral", "score": 0.5}
    score = positive / (positive + negative)
    label = "Neutral"
    if score > 0.6:
        label = "Positive"
    elif score < 0.4:
        label = "Negative"
    return {"label": label, "score": score}


def fallback_analysis(content: str, summary: str, meta: Dict[str, str]) -> Dict[str, Any]:
    return {
        "summary": summary,
        "tags": frequent_terms(content),
        "entities": pattern_entities(content),
        "topics": frequent_terms(content, 5),
        "relations": [],
        "sentiment": term_sentiment(content),
        "wordCloud": word_cloud(content),
        "meta": meta,
    }


async def analyze_content(llm, content: str) -> Dict[str, Any]:
    """
    LLM analysis of private content, with a frequency-based fallback.

    Args:
        llm: The configured provider
        content: Sanitized content, already capped

    Returns:
        summary, tags, entities, topics, relations, sentiment, wordCloud, meta
    """
    if isinstance(llm, FallbackLLM):
        return fallback_analysis(content, NOT_CONFIGURED_SUMMARY, {"provider": "fallback"})
    try:
        raw = (await llm.generate_text(ANALYSIS_PROMPT.format(content=content))).strip()
    except Exception as e:
        logger.warning("Incognito analysis failed, using fallback", provider=llm.name, error=str(e))
        return fallback_analysis(
            content, UNREACHABLE_SUMMARY, {"provider": "fallback", "reason": f"{llm.name}-error"}
        )

    try:
        parsed = extract_json_object(raw)
    except ValueError:
        logger.info("Incognito analysis was not JSON", provider=llm.name)
        analysis = fallback_analysis(content, raw or "No summary generated.", {"provider": llm.name})
        analysis["meta"]["note"] = "JSON parse fallback"
        return analysis

    def listed(key: str, default):
        value = parsed.get(key)
        return value if isinstance(value, list) else default

    sentiment = parsed.get("sentiment")
    return {
        "summary": parsed.get("summary") or "No summary generated.",
        "tags": listed("tags", None) or frequent_terms(content),
        "entities": listed("entities", None) or pattern_entities(content),
        "topics": listed("topics", None) or frequent_terms(content, 5),
        "relations": listed("relations", []),
        "sentiment": sentiment if isinstance(sentiment, dict) else term_sentiment(content),
        "wordCloud": word_cloud(content),
        "meta": {"provider": llm.name},
    }


async def process(
    llm,
    sessions: SessionStore,
    user_id: str,
    data: Optional[bytes] = None,
    filename: Optional[str] = None,
    mime_type: Optional[str] = None,
    text_input: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Analyze an optional file plus optional text without persisting anything.

    Raises:
        EmptyContent: Neither the file nor the text yielded any content
        UnsupportedFileType, ExtractionFailure: The file could not be read
    """
    file_text = ""
    if data:
        file_text = await extract_text(data, mime_type, filename or "upload", llm)
    combined = sanitize_content(" ".join(t for t in (file_text, text_input) if t))
    if not combined:
        raise EmptyContent("No file or text content provided.")
    content = combined[:MAX_CONTENT_CHARS]

    analysis = await analyze_content(llm, content)
    session_id = f"{user_id}-{uuid.uuid4().hex}"
    sessions.put(session_id, {
        "user_id": user_id,
        "file_name": filename if data else None,
        "content": content,
        "analysis": analysis,
    })
    purged = sessions.purge_expired()
    logger.info(
        "Incognito session created",
        user_id=user_id,
        characters=len(content),
        provider=analysis["meta"]["provider"],
        purged_sessions=purged,
    )
    return {**analysis, "sessionId": session_id}


async def chat(llm, sessions: SessionStore, user_id: str, session_id: str, message: str) -> Dict[str, str]:
    """
    Answer a question about an incognito session's content.

    Raises:
        NotFound: The session is unknown, expired or owned by another user
    """
    session = sessions.get(session_id)
    if session is None or session["user_id"] != user_id:
        raise NotFound("Session not found or expired. Please process content again.")
    if isinstance(llm, FallbackLLM):
        return {"response": NOT_CONFIGURED_CHAT}

    context = ""
    if session.get("file_name"):
        context += f"File: {session['file_name']}\n"
    context += f"Text content: {session['content'][:CHAT_CONTEXT_CHARS]}\n"
    try:
        answer = (await llm.generate_text(CHAT_PROMPT.format(context=context, message=message))).strip()
    except Exception as e:
        logger.warning("Incognito chat failed", provider=llm.name, error=str(e))
        return {"response": UNREACHABLE_CHAT}
    return {"response": answer or EMPTY_CHAT}
