"""
Document store schema migrations.
"""
import os
from typing import List

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ..logging_config import logger
from ..models import Base, DOCUMENT_TABLES

MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), "scripts")


def pending_migrations(applied: List[str], migrations_dir: str = MIGRATIONS_DIR) -> List[str]:
    """Sorted .sql filenames in `migrations_dir` that are not yet in `applied`."""
    if not os.path.isdir(migrations_dir):
        logger.warning("Migrations directory not found", path=migrations_dir)
        return []
    return sorted(f for f in os.listdir(migrations_dir) if f.endswith(".sql") and f not in applied)


def run_sql_migrations(engine: Engine, migrations_dir: str = MIGRATIONS_DIR) -> List[str]:
    """
    Bring the document store schema up to date.

    PostgreSQL runs the numbered scripts (001_initial.sql, ...) that are not
    yet recorded in `schema_migrations`, each in its own transaction. Other
    dialects (SQLite in tests) get the document tables from the ORM metadata,
    since the scripts need the pgvector extension.

    Returns:
        Filenames applied by this call

    Raises:
        sqlalchemy.exc.SQLAlchemyError: A script failed; earlier scripts stay applied
    """
    if engine.dialect.name != "postgresql":
        Base.metadata.create_all(engine, tables=DOCUMENT_TABLES)
        logger.info("Created document tables from metadata", dialect=engine.dialect.name)
        return []

    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            "filename TEXT PRIMARY KEY, applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW())"
        ))
        applied = [row[0] for row in conn.execute(text("SELECT filename FROM schema_migrations"))]

    todo = pending_migrations(applied, migrations_dir)
    for filename in todo:
        with open(os.path.join(migrations_dir, filename), "r", encoding="utf-8") as f:
            sql = f.read()
        logger.info("Running migration", filename=filename)
        with engine.begin() as conn:
            conn.execute(text(sql))
            conn.execute(text("INSERT INTO schema_migrations (filename) VALUES (:f)"), {"f": filename})

    logger.info("Migrations up to date", applied=len(todo), already_applied=len(applied))
    return todo
