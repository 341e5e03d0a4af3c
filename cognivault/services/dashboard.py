"""
Dashboard aggregation service.
Folds source files, chunks, graph stats and timeline facets into the single
overview payload the UI renders. Read-only.
"""
import asyncio
from collections import Counter
from typing import Dict, List

from ..logging_config import logger
from ..stores.base import Record
from ..utils.helpers import isoformat, normalize_tags
from . import timeline
from .enrichment import generate_text

WELCOME_MESSAGE = (
    "Welcome to CogniVault! Start uploading documents to build your knowledge "
    "graph and see your learning journey unfold."
)
EMPTY_GRAPH_STATS = {"totalNodes": 0, "totalEdges": 0, "topConcepts": [], "recentNodes": []}


def _display_name(user) -> str:
    if user.name:
        return user.name
    if user.email:
        return user.email.split("@")[0]
    return "User"


def empty_dashboard(user) -> Record:
    return {
        "userName": _display_name(user),
        "userEmail": user.email or "",
        "totalUploads": 0,
        "totalTagsDetected": 0,
        "recentUploads": [],
        "topicStats": {"topTopics": [], "totalUniqueTopics": 0, "mostRecentTopic": "None"},
        "emotionalTrend": [],
        "lastUploadedFile": None,
        "knowledgeGraphStats": dict(EMPTY_GRAPH_STATS),
        "timelinePreview": [],
        "branchTriggers": [],
        "suggestedNextTopics": [],
        "aiInsights": WELCOME_MESSAGE,
    }


def suggest_topics(top_topics: List[Record], triggers: List[Record]) -> List[Record]:
    """Templated next-topic suggestions from the top tag and the latest branch."""
    suggestions = []
    if top_topics:
        suggestions.append({
            "topic": f"Advanced {top_topics[0]['topic']}",
            "reason": "You're already exploring this area",
        })
    if triggers:
        suggestions.append({
            "topic": f"Deep dive into {triggers[-1]['trigger']}",
            "reason": "You recently started exploring this",
        })
    if len(top_topics) > 1:
        suggestions.append({
            "topic": f"Connect {top_topics[0]['topic']} and {top_topics[1]['topic']}",
            "reason": "These topics keep appearing in your uploads",
        })
    return suggestions[:3]


def fallback_dashboard_insight(total_uploads: int, top_topics: List[Record], emotion: List[Record], branch_count: int) -> str:
    top = top_topics[0]["topic"] if top_topics else "learning"
    mood = emotion[-1]["sentiment"] if emotion else "neutral"
    parts = [f"You've uploaded {total_uploads} documents. Your focus is on {top}. Recent mood: {mood}."]
    if branch_count:
        parts.append(f"{branch_count} new knowledge branches detected.")
    parts.append("Keep exploring!")
    return " ".join(parts)


async def _graph_stats(runtime, user_id: str) -> Record:
    try:
        stats = await asyncio.to_thread(runtime.graph.stats, user_id)
    except Exception as e:
        logger.warning("Graph stats unavailable", user_id=user_id, error=str(e))
        return dict(EMPTY_GRAPH_STATS)
    return {
        "totalNodes": stats["total_nodes"],
        "totalEdges": stats["total_edges"],
        "topConcepts": stats["top_concepts"],
        "recentNodes": stats["recent_nodes"],
    }


def _recent_uploads(files: List[Record], chunks: List[Record]) -> List[Record]:
    tags_by_file: Dict[str, List[str]] = {}
    for chunk in chunks:
        file_tags = tags_by_file.setdefault(chunk["source_file_id"], [])
        for tag in chunk.get("tags") or []:
            if tag not in file_tags:
                file_tags.append(tag)
    uploads = []
    for f in files[:5]:
        analysis = f.get("analysis") or {}
        uploads.append({
            "file_id": f["id"],
            "file_name": f["filename"],
            "upload_date": isoformat(f["uploaded_at"]),
            "document_type": analysis.get("document_type", "general"),
            "main_topic": analysis.get("main_topic", "Unknown"),
            "status": f["status"],
            "total_chunks": f.get("total_chunks") or 0,
            "tags": tags_by_file.get(f["id"], [])[:5],
        })
    return uploads


async def get_dashboard_overview(runtime, user) -> Record:
    """
    Build the dashboard payload for one user.

    Returns the empty payload (with a welcome message) when the user has no
    content or the document store cannot be read.
    """
    try:
        chunks, files = await timeline.load_user_content(runtime, user.id)
    except Exception as e:
        logger.warning("Dashboard falling back to empty payload", user_id=user.id, error=str(e))
        return empty_dashboard(user)

    if not files and not chunks:
        return empty_dashboard(user)

    graph_stats, triggers = await asyncio.gather(
        _graph_stats(runtime, user.id),
        timeline.run_isolated("branch_triggers", [], lambda: timeline.compute_branch_triggers(runtime, chunks)),
    )
    emotion = timeline.emotion_trend(files, chunks)
    events = timeline.build_events(chunks, files)

    topic_counts = Counter()
    for chunk in chunks:
        topic_counts.update(normalize_tags(chunk.get("tags")))
    top_topics = [{"topic": t, "count": n} for t, n in topic_counts.most_common(10)]
    latest_topic = next(
        (tags[0] for tags in (normalize_tags(c.get("tags")) for c in reversed(chunks)) if tags),
        "None",
    )

    recent_triggers = triggers[-3:]
    last_file = files[0] if files else None
    fallback = fallback_dashboard_insight(len(files), top_topics, emotion, len(triggers))
    prompt = (
        "Analyze this user's learning dashboard and provide a brief, encouraging insight "
        "(2-3 sentences).\n\n"
        f"Total uploads: {len(files)}\n"
        f"Top topics: {', '.join(t['topic'] for t in top_topics[:5]) or 'none yet'}\n"
        f"Recent mood: {emotion[-1]['sentiment'] if emotion else 'neutral'}\n"
        f"New branches: {len(triggers)}\n"
        f"Graph nodes: {graph_stats['totalNodes']}\n\n"
        "Return ONLY the insight text, no JSON or formatting."
    )
    insight = await generate_text(runtime.llm, prompt, fallback)

    return {
        "userName": _display_name(user),
        "userEmail": user.email or "",
        "totalUploads": len(files),
        "totalTagsDetected": len(topic_counts),
        "recentUploads": _recent_uploads(files, chunks),
        "topicStats": {
            "topTopics": top_topics,
            "totalUniqueTopics": len(topic_counts),
            "mostRecentTopic": latest_topic,
        },
        "emotionalTrend": emotion[-5:],
        "lastUploadedFile": {
            "file_name": last_file["filename"],
            "upload_date": isoformat(last_file["uploaded_at"]),
            "document_type": (last_file.get("analysis") or {}).get("document_type", "general"),
        } if last_file else None,
        "knowledgeGraphStats": graph_stats,
        "timelinePreview": events[-5:],
        "branchTriggers": recent_triggers,
        "suggestedNextTopics": suggest_topics(top_topics, recent_triggers),
        "aiInsights": insight,
    }
