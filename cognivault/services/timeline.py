"""
Timeline and knowledge-evolution analysis.

Everything here is derived per request from the document and graph stores;
nothing is persisted. The public facet functions never raise: a failing
facet logs a warning and returns its empty default so the UI always renders.
"""
import asyncio
from collections import Counter, OrderedDict, defaultdict
from itertools import combinations
from typing import Any, Awaitable, Callable, Dict, List, Tuple

from ..logging_config import logger
from ..stores.base import Record, concept_node_id
from ..utils.helpers import isoformat, month_key, normalize_tags, snippet
from .enrichment import generate_text
from .similarity import SimilarityPolicy

POSITIVE_WORDS = (
    "good", "great", "excellent", "amazing", "wonderful", "positive",
    "success", "achievement", "learn", "understand", "insight",
)
NEGATIVE_WORDS = (
    "bad", "difficult", "problem", "challenge", "stress", "confusion",
    "error", "fail", "hard",
)
KEYWORD_SENTIMENT_LIMIT = 50
NEW_BRANCH_CUTOFF = 0.3

EMPTY_EVOLUTION = {"nodes": [], "edges": [], "new_branches": [], "source": "none"}
START_MESSAGE = "Start uploading content to see your learning journey unfold!"


# ==================== Loading ====================

async def load_user_content(runtime, user_id: str) -> Tuple[List[Record], List[Record]]:
    """Chunks (oldest first) and source files (newest first) for one user."""
    chunks, files = await asyncio.gather(
        asyncio.to_thread(runtime.documents.list_chunks, user_id),
        asyncio.to_thread(runtime.documents.list_source_files, user_id),
    )
    return chunks, files


async def run_isolated(name: str, default: Any, func: Callable[[], Awaitable[Any]]) -> Any:
    try:
        return await func()
    except Exception as e:
        logger.warning("Timeline facet failed, using empty default", facet=name, error=str(e))
        return default


# ==================== Events ====================

def build_events(chunks: List[Record], files: List[Record]) -> List[Record]:
    files_by_id = {f["id"]: f for f in files}
    events = []
    for chunk in sorted(chunks, key=lambda c: (c["created_at"], c["chunk_index"])):
        source = files_by_id.get(chunk["source_file_id"])
        analysis = (source or {}).get("analysis") or {}
        events.append({
            "id": chunk["id"],
            "timestamp": isoformat(chunk["created_at"]),
            "file_id": chunk["source_file_id"],
            "file_name": source["filename"] if source else "Direct input",
            "document_type": analysis.get("document_type", "general"),
            "summary": chunk.get("summary") or "",
            "tags": chunk.get("tags") or [],
            "snippet": snippet(chunk["text"], 200),
        })
    return events


# ==================== Topic spikes ====================

def topic_spikes(chunks: List[Record]) -> Dict[str, Dict[str, int]]:
    """
    Month (YYYY-MM) -> tag -> count. Keys are sorted so the result does not
    depend on the order of the input.
    """
    months = defaultdict(Counter)
    for chunk in chunks:
        if not chunk.get("created_at"):
            continue
        months[month_key(chunk["created_at"])].update(normalize_tags(chunk.get("tags")))
    return {
        month: dict(sorted(months[month].items()))
        for month in sorted(months)
    }


# ==================== Emotion trend ====================

def sentiment_score(label: str) -> Tuple[str, float]:
    lowered = (label or "").lower()
    if "positive" in lowered or "analytical" in lowered or "informative" in lowered:
        return "positive", 0.7
    if "negative" in lowered:
        return "negative", 0.3
    return "neutral", 0.5


def keyword_sentiment(text: str) -> float:
    """0.5 moved by 0.1 per positive/negative keyword, bounded to [0.1, 0.9]."""
    words = (text or "").lower().split()
    positive = sum(1 for w in words if w.strip(".,;:!?\"'()") in POSITIVE_WORDS)
    negative = sum(1 for w in words if w.strip(".,;:!?\"'()") in NEGATIVE_WORDS)
    score = 0.5 + 0.1 * positive - 0.1 * negative
    return round(min(0.9, max(0.1, score)), 2)


def emotion_trend(files: List[Record], chunks: List[Record]) -> List[Record]:
    """
    Sentiment points in time order: one per SourceFile carrying a sentiment
    label, or keyword scores of up to 50 chunks when none do.
    """
    labelled = [f for f in files if ((f.get("analysis") or {}).get("sentiment"))]
    if labelled:
        points = []
        for f in sorted(labelled, key=lambda f: f["uploaded_at"]):
            label, score = sentiment_score(f["analysis"]["sentiment"])
            points.append({
                "date": isoformat(f["uploaded_at"]),
                "sentiment": label,
                "score": score,
                "file_name": f["filename"],
                "source": "document",
            })
        return points

    points = []
    for chunk in chunks[:KEYWORD_SENTIMENT_LIMIT]:
        score = keyword_sentiment(chunk["text"])
        label = "positive" if score > 0.5 else "negative" if score < 0.5 else "neutral"
        points.append({
            "date": isoformat(chunk["created_at"]),
            "sentiment": label,
            "score": score,
            "chunk_id": chunk["id"],
            "source": "keywords",
        })
    return points


# ==================== Knowledge evolution ====================

def cooccurrence_from_chunks(chunks: List[Record]) -> Dict[str, List[Record]]:
    counts = Counter()
    pairs = Counter()
    for chunk in chunks:
        tags = sorted(set(normalize_tags(chunk.get("tags"))))
        counts.update(tags)
        pairs.update(combinations(tags, 2))
    return {
        "nodes": [
            {"id": concept_node_id(tag), "name": tag, "count": n}
            for tag, n in counts.most_common()
        ],
        "edges": [
            {"source": concept_node_id(a), "target": concept_node_id(b), "weight": w}
            for (a, b), w in pairs.most_common()
        ],
    }


def new_branches(chunks: List[Record]) -> List[Record]:
    """
    Topics first seen after the earliest 30% of all topics, each with up to
    three topics it co-occurs with. Needs more than three topics.
    """
    first_seen = OrderedDict()
    related = defaultdict(Counter)
    for chunk in sorted(chunks, key=lambda c: (c["created_at"], c["chunk_index"])):
        tags = normalize_tags(chunk.get("tags"))
        for tag in tags:
            first_seen.setdefault(tag, chunk["created_at"])
            related[tag].update(t for t in tags if t != tag)

    topics = list(first_seen)
    if len(topics) <= 3:
        return []
    cutoff = int(len(topics) * NEW_BRANCH_CUTOFF)
    return [
        {
            "topic": topic,
            "first_seen": isoformat(first_seen[topic]),
            "related_topics": [t for t, _ in related[topic].most_common(3)],
        }
        for topic in topics[cutoff:]
    ]


async def knowledge_evolution(runtime, user_id: str, chunks: List[Record]) -> Record:
    """
    Concept co-occurrence graph, preferring the graph store and recomputing
    from chunks when the graph query fails or comes back empty.
    """
    graph_data = None
    try:
        graph_data = await asyncio.to_thread(runtime.graph.concept_cooccurrence, user_id)
    except Exception as e:
        logger.warning("Graph co-occurrence query failed, recomputing from chunks", user_id=user_id, error=str(e))

    if graph_data and graph_data.get("nodes"):
        result = {"nodes": graph_data["nodes"], "edges": graph_data["edges"], "source": "graph"}
    else:
        result = dict(cooccurrence_from_chunks(chunks), source="chunks")
    result["new_branches"] = new_branches(chunks)
    return result


# ==================== Branch triggers ====================

def branch_triggers(
    chunks: List[Record],
    vectors: Dict[str, Record],
    policy: SimilarityPolicy,
) -> List[Record]:
    """
    Moments where new tags arrive together with genuinely new content.

    Chunks are walked in creation order. A chunk carrying tags not seen
    before triggers when its best similarity to any earlier tagged chunk is
    below the policy's branch threshold. The first tagged chunk always
    triggers.

    Args:
        chunks: The user's chunks
        vectors: chunk id -> {vector, metadata} for the chunks that have one
        policy: Similarity cutoffs

    Returns:
        [{date, trigger, new_tags, similarity, led_to}] oldest first
    """
    ordered = [
        (chunk, normalize_tags(chunk.get("tags")))
        for chunk in sorted(chunks, key=lambda c: (c["created_at"], c["chunk_index"]))
    ]
    ordered = [(chunk, tags) for chunk, tags in ordered if tags]

    triggers = []
    seen = set()
    earlier: List[Tuple[Record, List[str]]] = []
    for i, (chunk, tags) in enumerate(ordered):
        new_tags = [t for t in tags if t not in seen]
        if new_tags:
            vector = vectors.get(chunk["id"])
            max_similarity = max(
                (
                    policy.chunk_similarity(tags, prev_tags, vector, vectors.get(prev["id"]))
                    for prev, prev_tags in earlier
                ),
                default=0.0,
            )
            if not earlier or policy.is_novel(max_similarity):
                triggers.append({
                    "date": isoformat(chunk["created_at"]),
                    "chunk_id": chunk["id"],
                    "trigger": new_tags[0],
                    "new_tags": new_tags,
                    "similarity": round(max_similarity, 4),
                    "led_to": _led_to(ordered[i + 1:], new_tags, tags),
                })
        seen.update(tags)
        earlier.append((chunk, tags))
    return triggers


def _led_to(later: List[Tuple[Record, List[str]]], new_tags: List[str], current_tags: List[str]) -> List[str]:
    """Up to three tags of later chunks that share one of the new tags."""
    led_to = []
    for _, tags in later:
        if not any(t in new_tags for t in tags):
            continue
        for tag in tags:
            if tag not in new_tags and tag not in current_tags and tag not in led_to:
                led_to.append(tag)
    return led_to[:3]


async def compute_branch_triggers(runtime, chunks: List[Record]) -> List[Record]:
    vectors = {}
    tagged_ids = [c["id"] for c in chunks if c.get("tags")]
    if tagged_ids:
        try:
            vectors = await asyncio.to_thread(runtime.vectors.fetch, tagged_ids)
        except Exception as e:
            logger.warning("Vector fetch failed, using tag overlap for branch detection", error=str(e))
    return branch_triggers(chunks, vectors, runtime.policy)


# ==================== Insights ====================

def _top_topics(spikes: Dict[str, Dict[str, int]], limit: int) -> List[str]:
    totals = Counter()
    for month in spikes.values():
        totals.update(month)
    return [topic for topic, _ in totals.most_common(limit)]


def fallback_insight(events: List[Record], spikes: Dict[str, Dict[str, int]], triggers: List[Record]) -> str:
    if not events:
        return START_MESSAGE
    top = _top_topics(spikes, 3)
    parts = [f"You've created {len(events)} learning events."]
    if top:
        parts.append(f"Your top topics are: {', '.join(top)}.")
    if triggers:
        parts.append(f"{len(triggers)} new knowledge branches detected.")
    parts.append("Keep exploring!")
    return " ".join(parts)


async def generate_insights(
    runtime,
    events: List[Record],
    spikes: Dict[str, Dict[str, int]],
    emotion: List[Record],
    evolution: Record,
    triggers: List[Record],
) -> str:
    fallback = fallback_insight(events, spikes, triggers)
    if not events:
        return fallback
    prompt = (
        "Analyze this user's learning timeline and provide 2-3 insightful, encouraging "
        "sentences about their learning evolution. Be concise.\n\n"
        f"Events: {len(events)} total learning events\n"
        f"Top topics: {', '.join(_top_topics(spikes, 5)) or 'none yet'}\n"
        f"Emotion trend: {len(emotion)} sentiment data points\n"
        f"Knowledge evolution: {len(evolution.get('nodes', []))} topics, "
        f"{len(triggers)} branch triggers\n\n"
        "Return ONLY the insight text, no JSON or formatting."
    )
    return await generate_text(runtime.llm, prompt, fallback)


# ==================== Public facets ====================

async def get_timeline_events(runtime, user_id: str) -> List[Record]:
    async def run():
        chunks, files = await load_user_content(runtime, user_id)
        return build_events(chunks, files)
    return await run_isolated("events", [], run)


async def get_topic_spikes(runtime, user_id: str) -> Dict[str, Dict[str, int]]:
    async def run():
        chunks = await asyncio.to_thread(runtime.documents.list_chunks, user_id)
        return topic_spikes(chunks)
    return await run_isolated("topic_spikes", {}, run)


async def get_emotion_trend(runtime, user_id: str) -> List[Record]:
    async def run():
        chunks, files = await load_user_content(runtime, user_id)
        return emotion_trend(files, chunks)
    return await run_isolated("emotion_trend", [], run)


async def get_knowledge_evolution(runtime, user_id: str) -> Record:
    async def run():
        chunks = await asyncio.to_thread(runtime.documents.list_chunks, user_id)
        return await knowledge_evolution(runtime, user_id, chunks)
    return await run_isolated("knowledge_evolution", dict(EMPTY_EVOLUTION), run)


async def get_branch_triggers(runtime, user_id: str) -> List[Record]:
    async def run():
        chunks = await asyncio.to_thread(runtime.documents.list_chunks, user_id)
        return await compute_branch_triggers(runtime, chunks)
    return await run_isolated("branch_triggers", [], run)


async def get_insights(runtime, user_id: str) -> str:
    overview = await get_timeline_overview(runtime, user_id)
    return overview["insights"]


async def get_timeline_overview(runtime, user_id: str) -> Record:
    """
    Every timeline facet for one user. The stores are read once; derived
    facets run concurrently, each isolated from the others' failures.
    """
    try:
        chunks, files = await load_user_content(runtime, user_id)
    except Exception as e:
        logger.warning("Timeline content unavailable", user_id=user_id, error=str(e))
        chunks, files = [], []

    async def pure(func, *args):
        return func(*args)

    events, spikes, emotion, evolution, triggers = await asyncio.gather(
        run_isolated("events", [], lambda: pure(build_events, chunks, files)),
        run_isolated("topic_spikes", {}, lambda: pure(topic_spikes, chunks)),
        run_isolated("emotion_trend", [], lambda: pure(emotion_trend, files, chunks)),
        run_isolated("knowledge_evolution", dict(EMPTY_EVOLUTION),
                  lambda: knowledge_evolution(runtime, user_id, chunks)),
        run_isolated("branch_triggers", [], lambda: compute_branch_triggers(runtime, chunks)),
    )
    insights = await run_isolated(
        "insights",
        fallback_insight(events, spikes, triggers),
        lambda: generate_insights(runtime, events, spikes, emotion, evolution, triggers),
    )
    return {
        "events": events,
        "topic_spikes": spikes,
        "emotion_trend": emotion,
        "knowledge_evolution": evolution,
        "branch_triggers": triggers,
        "insights": insights,
    }
