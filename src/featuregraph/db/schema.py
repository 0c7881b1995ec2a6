"""Schema definitions for the entity store database.

Entities are stored generically:
- ``entities`` holds one row per node with its type and scalar attributes
  (JSON encoded)
- ``entity_references`` holds single-valued references
- ``entity_collections`` holds ordered collections of references

This module provides schema creation, validation and metadata helpers.
"""
from __future__ import annotations

import sqlite3


# Tables every entity store database must have
EXPECTED_TABLES = frozenset({
    "metadata",
    "entities",
    "entity_references",
    "entity_collections",
})

SCHEMA_VERSION = "1"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    attributes TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS entity_references (
    entity_id INTEGER NOT NULL,
    field TEXT NOT NULL,
    target_id INTEGER NOT NULL,
    PRIMARY KEY (entity_id, field),
    FOREIGN KEY(entity_id) REFERENCES entities(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS entity_collections (
    entity_id INTEGER NOT NULL,
    field TEXT NOT NULL,
    position INTEGER NOT NULL,
    target_id INTEGER NOT NULL,
    PRIMARY KEY (entity_id, field, position),
    FOREIGN KEY(entity_id) REFERENCES entities(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type);
CREATE INDEX IF NOT EXISTS idx_references_target ON entity_references(field, target_id);
CREATE INDEX IF NOT EXISTS idx_collections_target ON entity_collections(field, target_id);
CREATE INDEX IF NOT EXISTS idx_collections_entity ON entity_collections(entity_id, field);
"""


class SchemaError(Exception):
    """Raised when the database schema or the entity model is inconsistent."""
    pass


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create the entity store tables if they do not exist yet."""
    conn.executescript(SCHEMA_SQL)
    conn.execute(
        "INSERT OR IGNORE INTO metadata (key, value) VALUES ('version', ?)",
        (SCHEMA_VERSION,),
    )


def validate_schema(conn: sqlite3.Connection) -> None:
    """Validate that the database has the entity store schema.

    Args:
        conn: SQLite connection to validate

    Raises:
        SchemaError: If required tables are missing
    """
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table'"
    )
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing = EXPECTED_TABLES - existing_tables
    if missing:
        raise SchemaError(
            f"Database is missing required tables: {', '.join(sorted(missing))}. "
            "Run 'featuregraph init' to create an entity store."
        )


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a metadata value from the database.

    Args:
        conn: SQLite connection
        key: Metadata key to retrieve

    Returns:
        The metadata value, or None if not found
    """
    row = conn.execute(
        "SELECT value FROM metadata WHERE key = ?",
        (key,)
    ).fetchone()
    return row[0] if row else None


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO metadata (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )
