"""
Application runtime: the stores, providers and services one app instance uses.

Built once per app by `build_runtime` and held on `app.state.runtime`.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .config import Settings
from .embedding import EmbeddingProvider, build_embedding_provider
from .llm import LLMProvider, build_llm_provider
from .logging_config import logger
from .services.similarity import SimilarityLinker, SimilarityPolicy
from .services.writer import MultiStoreWriter
from .sessions import SessionStore, TTLSessionStore
from .stores import DocumentStore, GraphStore, VectorStore


@dataclass
class Runtime:
    settings: Settings
    documents: DocumentStore
    graph: GraphStore
    vectors: VectorStore
    llm: LLMProvider
    embeddings: EmbeddingProvider
    sessions: SessionStore
    writer: MultiStoreWriter
    linker: SimilarityLinker
    policy: SimilarityPolicy
    closers: List[Callable[[], Any]] = field(default_factory=list)

    def ping(self) -> Dict[str, str]:
        """Reachability of each backing store: "ok" or the error message."""
        status = {}
        for name, store in (("document", self.documents), ("graph", self.graph), ("vector", self.vectors)):
            try:
                store.ping()
                status[name] = "ok"
            except Exception as e:
                status[name] = f"unavailable: {e}"
        return status

    async def close(self) -> None:
        await self.llm.close()
        for closer in self.closers:
            try:
                closer()
            except Exception as e:
                logger.warning("Error while closing runtime resource", error=str(e))


def _memory_stores():
    from .stores.memory import InMemoryDocumentStore, InMemoryGraphStore, InMemoryVectorStore
    return InMemoryDocumentStore(), InMemoryGraphStore(), InMemoryVectorStore(), []


def _external_stores(settings: Settings):
    from .db import create_db_engine, create_session_factory
    from .db.migrations import run_sql_migrations
    from .stores.documents import SqlDocumentStore
    from .stores.graph import Neo4jGraphStore
    from .stores.vectors import PgVectorStore

    engine = create_db_engine(settings.database_url)
    logger.info("Running database migrations...")
    run_sql_migrations(engine)
    logger.info("Database migrations completed")

    graph = Neo4jGraphStore(settings.neo4j_uri, settings.neo4j_user, settings.neo4j_password)
    documents = SqlDocumentStore(create_session_factory(engine))
    return documents, graph, PgVectorStore(engine), [graph.close, engine.dispose]


def build_runtime(settings: Settings) -> Runtime:
    """
    Wire stores, providers and services for the configured backends.

    Args:
        settings: Loaded settings; `store_backend` picks memory or external stores

    Returns:
        A ready Runtime
    """
    if settings.store_backend == "external":
        documents, graph, vectors, closers = _external_stores(settings)
    else:
        documents, graph, vectors, closers = _memory_stores()

    embeddings = build_embedding_provider(settings)
    policy = SimilarityPolicy.from_settings(settings)
    runtime = Runtime(
        settings=settings,
        documents=documents,
        graph=graph,
        vectors=vectors,
        llm=build_llm_provider(settings),
        embeddings=embeddings,
        sessions=TTLSessionStore(ttl_seconds=settings.incognito_ttl_seconds),
        writer=MultiStoreWriter(documents, graph, vectors, embeddings),
        linker=SimilarityLinker(vectors, graph, policy),
        policy=policy,
        closers=closers,
    )
    logger.info(
        "Runtime ready",
        store_backend=settings.store_backend,
        llm_provider=runtime.llm.name,
        embedding_provider=embeddings.name,
    )
    return runtime
