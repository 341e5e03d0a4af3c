import asyncio
import io

import pytest
from docx import Document
from fastapi.testclient import TestClient

from cognivault.config import Settings
from cognivault.embedding import Embedding
from cognivault.errors import FileTooLarge
from cognivault.main import create_app
from cognivault.routes.upload import read_limited
from cognivault.runtime import build_runtime
from cognivault.services import dashboard, incognito, timeline

from conftest import AUTH_HEADERS, OTHER_AUTH_HEADERS

NOTE = "Neural networks learn patterns from data. Training adjusts the weights of every layer."


def paragraph(topic: str, count: int) -> str:
    return " ".join(f"Sentence {i} about {topic} keeps the paragraph going." for i in range(count))


def upload_text(client, text=NOTE, headers=AUTH_HEADERS):
    response = client.post("/api/upload", data={"text_input": text}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def docx_bytes(*paragraphs) -> bytes:
    document = Document()
    for p in paragraphs:
        document.add_paragraph(p)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


# ==================== Health and auth ====================

def test_health_reports_memory_stores(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["store_backend"] == "memory"
    assert body["llm_provider"] == "fallback"
    assert body["stores"] == {"document": "ok", "graph": "ok", "vector": "ok"}
    assert "X-Request-ID" in response.headers


def test_health_degrades_when_a_store_is_down(client, runtime, monkeypatch):
    def broken():
        raise ConnectionError("refused")

    monkeypatch.setattr(runtime.graph, "ping", broken)
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
    assert response.json()["stores"]["graph"].startswith("unavailable")


def test_upload_health_needs_no_auth(client):
    response = client.get("/api/upload/health")
    assert response.status_code == 200
    assert "text/plain" in response.json()["supportedTypes"]


def test_missing_token_is_rejected_with_envelope(client):
    response = client.get("/api/upload/history")
    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "HTTP_401"
    assert body["error"] == "Missing bearer token"
    assert "timestamp" in body


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/nope", headers=AUTH_HEADERS)
    assert response.status_code == 404
    assert response.json()["code"] == "HTTP_404"


def test_static_auth_maps_tokens_to_users():
    settings = Settings(auth_mode="static", api_tokens={"secret-token": "carol"})
    with TestClient(create_app(runtime=build_runtime(settings))) as client:
        assert client.get("/api/upload/history", headers=AUTH_HEADERS).status_code == 401

        upload_text(client, headers={"Authorization": "Bearer secret-token"})
        history = client.get("/api/upload/history", headers={"Authorization": "Bearer secret-token"})
        assert history.json()["count"] == 1


# ==================== Upload ====================

def test_upload_text_input(client):
    body = upload_text(client)

    assert body["success"] is True
    assert body["file_name"] == "text_input.txt"
    assert body["status"] == "completed"
    assert body["total_chunks"] == 1
    assert body["total_characters"] == len(NOTE)
    assert body["store_failures"] == []
    assert body["file_id"].startswith("file_")


def test_upload_file_wins_over_text(client):
    files = {"file": ("notes.md", b"# Title\n\nMarkdown body text.", "text/markdown")}
    response = client.post("/api/upload", files=files, data={"text_input": "ignored"}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.json()["file_name"] == "notes.md"


def test_upload_docx(client):
    files = {
        "file": (
            "report.docx",
            docx_bytes("Quarterly revenue grew.", "Costs stayed flat."),
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        )
    }
    response = client.post("/api/upload", files=files, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.json()["total_chunks"] == 1


def test_two_paragraph_upload_creates_two_chunks(client):
    text = paragraph("science", 11) + "\n\n" + paragraph("ethics", 11)
    body = upload_text(client, text=text)
    assert body["total_chunks"] == 2

    details = client.get(f"/api/upload/file/{body['file_id']}", headers=AUTH_HEADERS).json()
    assert [c["chunk_index"] for c in details["chunks"]] == [0, 1]


def test_unsupported_type_is_415(client):
    files = {"file": ("tool.exe", b"MZ\x00\x00", "application/x-msdownload")}
    response = client.post("/api/upload", files=files, headers=AUTH_HEADERS)
    assert response.status_code == 415
    assert response.json()["code"] == "UNSUPPORTED_FILE_TYPE"


def test_blank_text_is_400(client):
    response = client.post("/api/upload", data={"text_input": "   "}, headers=AUTH_HEADERS)
    assert response.status_code == 400
    assert response.json()["code"] == "EMPTY_CONTENT"


def test_oversized_upload_is_413():
    settings = Settings(max_file_size_bytes=10)
    with TestClient(create_app(runtime=build_runtime(settings))) as client:
        response = client.post("/api/upload", data={"text_input": "far more than ten bytes"}, headers=AUTH_HEADERS)
    assert response.status_code == 413
    assert response.json()["code"] == "FILE_TOO_LARGE"


def test_oversized_file_is_413_on_every_upload_route():
    settings = Settings(max_file_size_bytes=10)
    files = {"file": ("big.txt", b"x" * 64, "text/plain")}
    with TestClient(create_app(runtime=build_runtime(settings))) as client:
        for path in ("/api/upload", "/api/timeline/upload", "/api/incognito/process"):
            response = client.post(path, files=files, headers=AUTH_HEADERS)
            assert response.status_code == 413, path
            assert response.json()["code"] == "FILE_TOO_LARGE"


def test_read_limited_stops_past_the_limit():
    class RecordingUpload:
        filename = "big.txt"

        def __init__(self):
            self.requested = None

        async def read(self, size=-1):
            self.requested = size
            return b"x" * size

    upload = RecordingUpload()
    with pytest.raises(FileTooLarge):
        asyncio.run(read_limited(upload, 10))
    assert upload.requested == 11


def test_history_and_file_details_are_per_user(client):
    first = upload_text(client)
    upload_text(client, text="A second note about gardening and tomatoes.")

    history = client.get("/api/upload/history", headers=AUTH_HEADERS).json()
    assert history["count"] == 2
    assert history["files"][1]["file_id"] == first["file_id"]

    details = client.get(f"/api/upload/file/{first['file_id']}", headers=AUTH_HEADERS)
    assert details.status_code == 200
    chunk = details.json()["chunks"][0]
    assert chunk["file_id"] == first["file_id"]
    assert chunk["vector_id"] == chunk["chunk_id"]
    assert chunk["graph_node_id"] == chunk["chunk_id"]

    assert client.get("/api/upload/history", headers=OTHER_AUTH_HEADERS).json()["count"] == 0
    other = client.get(f"/api/upload/file/{first['file_id']}", headers=OTHER_AUTH_HEADERS)
    assert other.status_code == 404
    assert other.json()["code"] == "NOT_FOUND"


# ==================== Graph ====================

def test_create_memory_with_given_metadata(client):
    response = client.post(
        "/api/graph/memory",
        json={
            "text": "Met Grace Hopper at the conference.",
            "summary": "Conference meeting.",
            "tags": ["Conferences"],
            "entities": [{"name": "Grace Hopper", "type": "person"}],
        },
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["memory"]["tags"] == ["conferences"]
    assert body["memory"]["file_id"] == "direct_input"
    assert body["stores"] == {"graph": "committed", "document": "committed", "vector": "committed"}
    assert body["failures"] == {}

    results = client.get("/api/graph/search", params={"query": "hopper"}, headers=AUTH_HEADERS).json()
    assert [r["type"] for r in results] == ["Entity"]


def test_create_memory_generates_missing_metadata(client):
    response = client.post("/api/graph/memory", json={"text": NOTE}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    memory = response.json()["memory"]
    assert memory["summary"]
    assert memory["tags"]


def test_create_memory_rejects_foreign_source_file(client):
    first = upload_text(client)
    response = client.post(
        "/api/graph/memory",
        json={"text": "x", "source_file_id": first["file_id"]},
        headers=OTHER_AUTH_HEADERS,
    )
    assert response.status_code == 404


def test_create_memory_validates_body(client):
    response = client.post("/api/graph/memory", json={"text": ""}, headers=AUTH_HEADERS)
    assert response.status_code == 422


def test_graph_reads(client):
    created = client.post(
        "/api/graph/memory",
        json={"text": "Rust has ownership.", "summary": "Rust", "tags": ["rust"], "entities": []},
        headers=AUTH_HEADERS,
    ).json()
    chunk_id = created["memory"]["chunk_id"]

    full = client.get("/api/graph/full", headers=AUTH_HEADERS).json()
    assert {n["id"] for n in full["nodes"]} == {chunk_id, "concept:rust"}

    sub = client.get("/api/graph/subgraph", params={"node_id": chunk_id, "depth": 1}, headers=AUTH_HEADERS)
    assert sub.status_code == 200
    assert len(sub.json()["nodes"]) == 2

    missing = client.get("/api/graph/subgraph", params={"node_id": "chunk_nope"}, headers=AUTH_HEADERS)
    assert missing.status_code == 404

    stats = client.get("/api/graph/stats", headers=AUTH_HEADERS).json()
    assert stats["total_nodes"] == 2
    assert stats["top_concepts"] == [{"name": "rust", "frequency": 1}]

    assert client.get("/api/graph/full", headers=OTHER_AUTH_HEADERS).json()["nodes"] == []


def test_similarity_edges_for_all_chunks(client):
    upload_text(client)
    report = client.post("/api/graph/edges/similarity", json={}, headers=AUTH_HEADERS).json()
    assert report["chunks"] == 1
    assert report["skipped"] == 0

    missing = client.post("/api/graph/edges/similarity", json={"chunk_id": "chunk_nope"}, headers=AUTH_HEADERS)
    assert missing.status_code == 404


def semantic_embeddings(runtime, monkeypatch):
    """Give every text the same semantic vector so any two memories link."""
    vector = [1.0] + [0.0] * (runtime.embeddings.dimension - 1)
    monkeypatch.setattr(runtime.embeddings, "embed", lambda text: Embedding(vector=vector, semantic=True))


def test_create_memory_links_similar_memories(client, runtime, monkeypatch):
    semantic_embeddings(runtime, monkeypatch)
    client.post("/api/graph/memory", json={"text": "First note on tides."}, headers=AUTH_HEADERS)
    second = client.post("/api/graph/memory", json={"text": "Second note on tides."}, headers=AUTH_HEADERS)
    assert second.status_code == 200
    assert second.json()["similarity_edges"] == 1


def test_create_memory_survives_graph_outage(client, runtime, monkeypatch):
    def neo4j_down(*args, **kwargs):
        raise ConnectionError("neo4j unreachable")

    semantic_embeddings(runtime, monkeypatch)
    monkeypatch.setattr(runtime.graph, "write_chunk", neo4j_down)
    monkeypatch.setattr(runtime.graph, "merge_similarity", neo4j_down)

    first = client.post("/api/graph/memory", json={"text": "First note on tides."}, headers=AUTH_HEADERS)
    second = client.post("/api/graph/memory", json={"text": "Second note on tides."}, headers=AUTH_HEADERS)

    assert first.status_code == 200
    assert second.status_code == 200, second.text
    body = second.json()
    assert body["stores"]["document"] == "committed"
    assert "graph" in body["failures"]
    assert body["similarity_edges"] == 0
    assert len(runtime.documents.list_chunks("alice")) == 2


def test_fallback_embeddings_create_no_similarity_edges(client):
    for topic in ("tides", "violins", "taxes", "orchids"):
        client.post("/api/graph/memory", json={"text": f"A short note about {topic}."}, headers=AUTH_HEADERS)

    report = client.post("/api/graph/edges/similarity", json={}, headers=AUTH_HEADERS).json()
    assert report == {"chunks": 4, "edges": 0, "skipped": 0, "failed": 0}


def test_clear_removes_only_own_data(client):
    upload_text(client)
    upload_text(client, headers=OTHER_AUTH_HEADERS)

    response = client.delete("/api/graph/clear", headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert response.json()["deleted"]["source_files"] == 1
    assert client.get("/api/upload/history", headers=AUTH_HEADERS).json()["count"] == 0
    assert client.get("/api/upload/history", headers=OTHER_AUTH_HEADERS).json()["count"] == 1


def test_reconcile_with_nothing_pending(client):
    upload_text(client)
    report = client.post("/api/graph/reconcile", headers=AUTH_HEADERS).json()
    assert report == {"checked": 0, "replayed": 0, "removed": 0, "failed": 0}


# ==================== Timeline and dashboard ====================

def test_timeline_upload_and_reads(client):
    response = client.post("/api/timeline/upload", data={"textInput": NOTE}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.json()["message"] == "Content uploaded and saved to your timeline"

    events = client.get("/api/timeline/events", headers=AUTH_HEADERS).json()
    assert len(events) == 1
    assert events[0]["file_name"] == "text_input.txt"

    spikes = client.get("/api/timeline/topic-spikes", headers=AUTH_HEADERS).json()
    assert len(spikes) == 1

    triggers = client.get("/api/timeline/branch-triggers", headers=AUTH_HEADERS).json()
    assert len(triggers) == 1

    emotion = client.get("/api/timeline/emotion-trend", headers=AUTH_HEADERS).json()
    assert emotion[0]["source"] == "document"

    evolution = client.get("/api/timeline/knowledge-evolution", headers=AUTH_HEADERS).json()
    assert evolution["source"] == "graph"

    insights = client.get("/api/timeline/insights", headers=AUTH_HEADERS).json()
    assert insights["insights"].startswith("You've created 1 learning events.")

    overview = client.get("/api/timeline/overview", headers=AUTH_HEADERS).json()
    assert set(overview) == {
        "events", "topic_spikes", "emotion_trend", "knowledge_evolution", "branch_triggers", "insights",
    }


def test_timeline_for_new_user(client):
    assert client.get("/api/timeline/events", headers=AUTH_HEADERS).json() == []
    insights = client.get("/api/timeline/insights", headers=AUTH_HEADERS).json()
    assert insights == {"insights": timeline.START_MESSAGE}


def test_dashboard_overview(client):
    empty = client.get("/api/dashboard/overview", headers=AUTH_HEADERS).json()
    assert empty["aiInsights"] == dashboard.WELCOME_MESSAGE
    assert empty["userName"] == "User"

    upload_text(client)
    overview = client.get("/api/dashboard/overview", headers=AUTH_HEADERS).json()
    assert overview["totalUploads"] == 1
    assert overview["recentUploads"][0]["file_name"] == "text_input.txt"


# ==================== Incognito ====================

def test_incognito_process_and_chat(client, runtime):
    before = client.get("/api/upload/history", headers=AUTH_HEADERS).json()["count"]

    response = client.post("/api/incognito/process", data={"textInput": NOTE}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["summary"] == incognito.NOT_CONFIGURED_SUMMARY
    session_id = body["sessionId"]

    assert client.get("/api/upload/history", headers=AUTH_HEADERS).json()["count"] == before
    assert runtime.documents.list_chunks("alice") == []

    chat = client.post(
        "/api/incognito/chat", json={"session_id": session_id, "message": "Summarize"}, headers=AUTH_HEADERS
    )
    assert chat.json() == {"response": incognito.NOT_CONFIGURED_CHAT}

    stolen = client.post(
        "/api/incognito/chat", json={"session_id": session_id, "message": "Summarize"}, headers=OTHER_AUTH_HEADERS
    )
    assert stolen.status_code == 404


def test_incognito_requires_content(client):
    response = client.post("/api/incognito/process", data={"textInput": ""}, headers=AUTH_HEADERS)
    assert response.status_code == 400
    assert response.json()["code"] == "EMPTY_CONTENT"
