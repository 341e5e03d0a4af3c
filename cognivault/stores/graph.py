"""
Neo4j-backed graph store.

Every node carries a user_id property; Concept and Entity nodes are merged
by (user_id, name) and (user_id, key, entity_type) so repeated upserts from
concurrent uploads converge on one node.
"""
from typing import Dict, List, Optional

from neo4j import GraphDatabase

from ..errors import NotFound
from ..logging_config import logger
from .base import (
    GraphStore, Record, entity_key, entity_node_id, relation_endpoints,
)

NODE_LABELS = ("Chunk", "SourceFile", "Concept", "Entity")


def _node(node) -> Record:
    props = dict(node)
    labels = [label for label in node.labels if label in NODE_LABELS]
    node_type = labels[0] if labels else "Node"
    label = props.get("name") or props.get("filename") or (props.get("summary") or "")[:80] or props.get("id")
    props.pop("user_id", None)
    return {"id": props.get("id"), "type": node_type, "label": label, "properties": props}


def _edge(rel) -> Record:
    props = dict(rel)
    return {
        "source": rel.start_node.get("id"),
        "target": rel.end_node.get("id"),
        "type": rel.type,
        "properties": props,
    }


class Neo4jGraphStore(GraphStore):
    """Neo4j operations scoped per user."""

    def __init__(self, uri: str, user: str, password: str):
        self.driver = GraphDatabase.driver(uri, auth=(user, password))
        self._ensure_indexes()

    def _ensure_indexes(self):
        """Create necessary indexes and constraints."""
        with self.driver.session() as session:
            session.run("CREATE CONSTRAINT chunk_id_unique IF NOT EXISTS FOR (c:Chunk) REQUIRE c.id IS UNIQUE")
            session.run(
                "CREATE CONSTRAINT source_file_id_unique IF NOT EXISTS "
                "FOR (f:SourceFile) REQUIRE f.id IS UNIQUE"
            )
            session.run("CREATE INDEX chunk_user IF NOT EXISTS FOR (c:Chunk) ON (c.user_id)")
            session.run("CREATE INDEX concept_user_name IF NOT EXISTS FOR (c:Concept) ON (c.user_id, c.name)")
            session.run(
                "CREATE INDEX entity_user_key IF NOT EXISTS "
                "FOR (e:Entity) ON (e.user_id, e.key, e.entity_type)"
            )

    def close(self):
        self.driver.close()

    def ping(self) -> None:
        self.driver.verify_connectivity()

    def upsert_source_file(self, record: Record) -> None:
        with self.driver.session() as session:
            session.run(
                """
                MERGE (f:SourceFile {id: $id})
                SET f.user_id = $user_id,
                    f.filename = $filename,
                    f.mime_type = $mime_type,
                    f.uploaded_at = $uploaded_at
                """,
                id=record["id"],
                user_id=record["user_id"],
                filename=record["filename"],
                mime_type=record.get("mime_type"),
                uploaded_at=record["uploaded_at"].isoformat(),
            )

    def write_chunk(self, chunk: Record) -> str:
        user_id, chunk_id = chunk["user_id"], chunk["id"]
        tags = list(chunk.get("tags") or [])
        entities = [
            {
                "id": entity_node_id(e["name"], e["type"]),
                "name": e["name"],
                "key": entity_key(e["name"]),
                "type": e["type"],
            }
            for e in chunk.get("entities") or []
        ]
        relations = [
            {
                "subject_id": entity_node_id(r["subject"], r["subject_type"]),
                "subject": r["subject"],
                "subject_key": entity_key(r["subject"]),
                "subject_type": r["subject_type"],
                "object_id": entity_node_id(r["object"], r["object_type"]),
                "object": r["object"],
                "object_key": entity_key(r["object"]),
                "object_type": r["object_type"],
                "predicate": r["predicate"],
            }
            for r in relation_endpoints(chunk)
        ]

        with self.driver.session() as session:
            session.run(
                """
                MERGE (c:Chunk {id: $id})
                SET c.user_id = $user_id,
                    c.text = $text,
                    c.summary = $summary,
                    c.tags = $tags,
                    c.chunk_index = $chunk_index,
                    c.source_file_id = $source_file_id,
                    c.created_at = $created_at
                """,
                id=chunk_id,
                user_id=user_id,
                text=chunk["text"],
                summary=chunk.get("summary") or "",
                tags=tags,
                chunk_index=chunk["chunk_index"],
                source_file_id=chunk["source_file_id"],
                created_at=chunk["created_at"].isoformat(),
            )

            if tags:
                session.run(
                    """
                    MATCH (c:Chunk {id: $id})
                    UNWIND $tags AS tag
                    MERGE (t:Concept {user_id: $user_id, name: tag})
                      ON CREATE SET t.id = 'concept:' + tag
                    MERGE (c)-[:TAGGED_WITH]->(t)
                    """,
                    id=chunk_id, user_id=user_id, tags=tags,
                )
            if entities:
                session.run(
                    """
                    MATCH (c:Chunk {id: $id})
                    UNWIND $entities AS ent
                    MERGE (e:Entity {user_id: $user_id, key: ent.key, entity_type: ent.type})
                      ON CREATE SET e.id = ent.id, e.name = ent.name
                    MERGE (c)-[:MENTIONS]->(e)
                    """,
                    id=chunk_id, user_id=user_id, entities=entities,
                )
            if relations:
                session.run(
                    """
                    UNWIND $relations AS rel
                    MERGE (s:Entity {user_id: $user_id, key: rel.subject_key, entity_type: rel.subject_type})
                      ON CREATE SET s.id = rel.subject_id, s.name = rel.subject
                    MERGE (o:Entity {user_id: $user_id, key: rel.object_key, entity_type: rel.object_type})
                      ON CREATE SET o.id = rel.object_id, o.name = rel.object
                    MERGE (s)-[r:RELATED_TO {predicate: rel.predicate}]->(o)
                    SET r.chunk_id = $id
                    """,
                    id=chunk_id, user_id=user_id, relations=relations,
                )
            session.run(
                """
                MATCH (c:Chunk {id: $id}), (f:SourceFile {id: $source_file_id, user_id: $user_id})
                MERGE (c)-[:DERIVED_FROM]->(f)
                """,
                id=chunk_id, user_id=user_id, source_file_id=chunk["source_file_id"],
            )

        logger.debug("Wrote chunk to graph", chunk_id=chunk_id, tags=len(tags), entities=len(entities))
        # the application id, never the Neo4j elementId
        return chunk_id

    def has_chunk(self, chunk_id: str) -> bool:
        with self.driver.session() as session:
            record = session.run(
                "MATCH (c:Chunk {id: $id}) RETURN count(c) AS n", id=chunk_id
            ).single()
            return bool(record and record["n"])

    def delete_chunk(self, chunk_id: str) -> None:
        with self.driver.session() as session:
            session.run("MATCH (c:Chunk {id: $id}) DETACH DELETE c", id=chunk_id)

    def merge_similarity(self, user_id: str, chunk_a: str, chunk_b: str, score: float) -> Record:
        source, target = sorted((chunk_a, chunk_b))
        with self.driver.session() as session:
            record = session.run(
                """
                MATCH (a:Chunk {id: $source, user_id: $user_id}), (b:Chunk {id: $target, user_id: $user_id})
                MERGE (a)-[r:SIMILAR_TO]-(b)
                  ON CREATE SET r.score = $score
                  ON MATCH SET r.score = CASE WHEN r.score < $score THEN $score ELSE r.score END
                RETURN r.score AS score
                """,
                source=source, target=target, user_id=user_id, score=float(score),
            ).single()
        if record is None:
            raise NotFound(f"Chunk pair {source}/{target} not found in graph")
        return {"source": source, "target": target, "score": record["score"]}

    def full_graph(self, user_id: str) -> Dict[str, List[Record]]:
        with self.driver.session() as session:
            nodes = [
                _node(r["n"]) for r in session.run(
                    "MATCH (n) WHERE n.user_id = $user_id RETURN n", user_id=user_id
                )
            ]
            edges = [
                _edge(r["r"]) for r in session.run(
                    """
                    MATCH (a)-[r]->(b)
                    WHERE a.user_id = $user_id AND b.user_id = $user_id
                    RETURN r
                    """,
                    user_id=user_id,
                )
            ]
        return {"nodes": nodes, "edges": edges}

    def subgraph(self, user_id: str, node_id: str, depth: int = 1) -> Dict[str, List[Record]]:
        depth = max(1, min(int(depth), 5))
        with self.driver.session() as session:
            start = session.run(
                "MATCH (n {id: $node_id}) WHERE n.user_id = $user_id RETURN n",
                node_id=node_id, user_id=user_id,
            ).single()
            if start is None:
                raise NotFound(f"Node {node_id} not found")
            # variable-length bounds cannot be parameters
            result = session.run(
                f"""
                MATCH p = (start {{id: $node_id}})-[*1..{depth}]-(m)
                WHERE start.user_id = $user_id AND all(x IN nodes(p) WHERE x.user_id = $user_id)
                UNWIND relationships(p) AS r
                RETURN collect(DISTINCT m) AS nodes, collect(DISTINCT r) AS rels
                """,
                node_id=node_id, user_id=user_id,
            ).single()
        nodes = {node_id: _node(start["n"])}
        for n in result["nodes"] if result else []:
            converted = _node(n)
            nodes[converted["id"]] = converted
        edges = [_edge(r) for r in result["rels"]] if result else []
        return {"nodes": list(nodes.values()), "edges": edges}

    def search(self, user_id: str, query: str, node_type: Optional[str] = None, limit: int = 20) -> List[Record]:
        label_filter = ""
        if node_type:
            if node_type not in NODE_LABELS:
                return []
            label_filter = f":{node_type}"
        with self.driver.session() as session:
            result = session.run(
                f"""
                MATCH (n{label_filter})
                WHERE n.user_id = $user_id AND (
                    toLower(coalesce(n.summary, '')) CONTAINS $q OR
                    toLower(coalesce(n.name, '')) CONTAINS $q OR
                    toLower(n.id) CONTAINS $q
                )
                RETURN n
                LIMIT $limit
                """,
                user_id=user_id, q=query.lower(), limit=limit,
            )
            return [_node(r["n"]) for r in result]

    def stats(self, user_id: str) -> Record:
        with self.driver.session() as session:
            by_label = {
                r["label"]: r["n"] for r in session.run(
                    """
                    MATCH (n) WHERE n.user_id = $user_id
                    RETURN head(labels(n)) AS label, count(n) AS n
                    """,
                    user_id=user_id,
                )
            }
            by_type = {
                r["type"]: r["n"] for r in session.run(
                    """
                    MATCH (a)-[r]->(b)
                    WHERE a.user_id = $user_id AND b.user_id = $user_id
                    RETURN type(r) AS type, count(r) AS n
                    """,
                    user_id=user_id,
                )
            }
            top_concepts = [
                {"name": r["name"], "frequency": r["frequency"]} for r in session.run(
                    """
                    MATCH (c:Chunk {user_id: $user_id})-[:TAGGED_WITH]->(t:Concept)
                    WITH t, count(*) AS frequency
                    RETURN t.name AS name, frequency
                    ORDER BY frequency DESC
                    LIMIT 10
                    """,
                    user_id=user_id,
                )
            ]
            recent_nodes = [
                {"id": r["id"], "summary": r["summary"]} for r in session.run(
                    """
                    MATCH (c:Chunk {user_id: $user_id})
                    RETURN c.id AS id, c.summary AS summary
                    ORDER BY c.created_at DESC
                    LIMIT 5
                    """,
                    user_id=user_id,
                )
            ]
        return {
            "total_nodes": sum(by_label.values()),
            "total_edges": sum(by_type.values()),
            "nodes_by_type": by_label,
            "edges_by_type": by_type,
            "top_concepts": top_concepts,
            "recent_nodes": recent_nodes,
        }

    def concept_cooccurrence(self, user_id: str) -> Dict[str, List[Record]]:
        with self.driver.session() as session:
            nodes = [
                {"id": r["id"], "name": r["name"], "count": r["count"]} for r in session.run(
                    """
                    MATCH (c:Chunk {user_id: $user_id})-[:TAGGED_WITH]->(t:Concept)
                    RETURN t.id AS id, t.name AS name, count(c) AS count
                    ORDER BY count DESC
                    """,
                    user_id=user_id,
                )
            ]
            edges = [
                {"source": r["source"], "target": r["target"], "weight": r["weight"]} for r in session.run(
                    """
                    MATCH (t1:Concept)<-[:TAGGED_WITH]-(c:Chunk {user_id: $user_id})-[:TAGGED_WITH]->(t2:Concept)
                    WHERE t1.id < t2.id
                    RETURN t1.id AS source, t2.id AS target, count(c) AS weight
                    ORDER BY weight DESC
                    """,
                    user_id=user_id,
                )
            ]
        return {"nodes": nodes, "edges": edges}

    def delete_user(self, user_id: str) -> int:
        with self.driver.session() as session:
            record = session.run(
                """
                MATCH (n) WHERE n.user_id = $user_id
                DETACH DELETE n
                RETURN count(n) AS deleted
                """,
                user_id=user_id,
            ).single()
        deleted = record["deleted"] if record else 0
        logger.info("Cleared graph data", user_id=user_id, nodes=deleted)
        return deleted
