from datetime import timedelta

import pytest

from cognivault.db import create_db_engine, create_session_factory
from cognivault.db.migrations import pending_migrations, run_sql_migrations
from cognivault.embedding import DeterministicEmbeddings
from cognivault.errors import NotFound
from cognivault.schemas import ChunkMetadata
from cognivault.services.writer import MultiStoreWriter
from cognivault.stores.base import COMMITTED, FAILED
from cognivault.stores.documents import SqlDocumentStore
from cognivault.stores.memory import InMemoryGraphStore, InMemoryVectorStore

from conftest import BASE_TIME, make_chunk


@pytest.fixture
def store():
    engine = create_db_engine("sqlite://")
    run_sql_migrations(engine)
    yield SqlDocumentStore(create_session_factory(engine))
    engine.dispose()


def source_file(file_id, user_id="alice", minutes=0):
    return {
        "id": file_id,
        "user_id": user_id,
        "filename": f"{file_id}.txt",
        "mime_type": "text/plain",
        "size_bytes": 10,
        "uploaded_at": BASE_TIME + timedelta(minutes=minutes),
        "status": "processing",
        "analysis": {"document_type": "notes"},
        "total_chunks": 1,
        "total_characters": 10,
        "error": None,
    }


def test_ping(store):
    store.ping()


def test_source_files_are_scoped_and_newest_first(store):
    store.create_source_file(source_file("f1", minutes=0))
    store.create_source_file(source_file("f2", minutes=5))
    store.create_source_file(source_file("f3", user_id="bob"))

    files = store.list_source_files("alice")
    assert [f["id"] for f in files] == ["f2", "f1"]
    assert files[0]["uploaded_at"] == BASE_TIME + timedelta(minutes=5)
    assert files[0]["analysis"] == {"document_type": "notes"}
    assert store.list_source_files("alice", limit=1)[0]["id"] == "f2"
    assert store.get_source_file("bob", "f1") is None


def test_update_source_file(store):
    store.create_source_file(source_file("f1"))
    store.update_source_file("f1", status="completed")
    assert store.get_source_file("alice", "f1")["status"] == "completed"

    with pytest.raises(NotFound):
        store.update_source_file("missing", status="failed")


def test_chunks_round_trip_json_columns(store):
    chunk = make_chunk("c1", ["science", "ethics"])
    chunk["entities"] = [{"name": "Ada Lovelace", "type": "person"}]
    store.insert_chunk(chunk)
    store.insert_chunk(make_chunk("c0", ["older"], minutes=-1))

    loaded = store.get_chunk("c1", "alice")
    assert loaded["tags"] == ["science", "ethics"]
    assert loaded["entities"] == [{"name": "Ada Lovelace", "type": "person"}]
    assert loaded["relations"] == []
    assert loaded["created_at"] == BASE_TIME
    assert store.get_chunk("c1", "bob") is None
    assert [c["id"] for c in store.list_chunks("alice")] == ["c0", "c1"]


def test_intents(store):
    store.record_intent("c1", "alice")
    store.update_intent("c1", "graph", FAILED, "neo4j down")

    [intent] = store.list_intents("alice")
    assert intent["graph_status"] == FAILED
    assert intent["errors"] == {"graph": "neo4j down"}

    for name in ("graph", "document", "vector"):
        store.update_intent("c1", name, COMMITTED)
    assert store.list_intents("alice") == []
    assert store.get_intent("c1")["errors"] == {}

    with pytest.raises(ValueError):
        store.update_intent("c1", "cache", COMMITTED)


def test_writer_over_sql_store(store):
    writer = MultiStoreWriter(store, InMemoryGraphStore(), InMemoryVectorStore(), DeterministicEmbeddings(768))

    result = writer.create_memory("alice", "Sql backed note.", ChunkMetadata(summary="note", tags=["sql"]))

    assert not result.partial
    assert store.get_chunk(result.chunk_id)["graph_node_id"] == result.chunk_id
    assert writer.clear_user_data("alice")["chunks"] == 1
    assert store.list_chunks("alice") == []


def test_pending_migrations_skips_applied(tmp_path):
    for name in ("001_initial.sql", "002_indexes.sql", "notes.txt"):
        (tmp_path / name).write_text("-- sql")

    assert pending_migrations([], str(tmp_path)) == ["001_initial.sql", "002_indexes.sql"]
    assert pending_migrations(["001_initial.sql"], str(tmp_path)) == ["002_indexes.sql"]
    assert pending_migrations([], str(tmp_path / "missing")) == []
