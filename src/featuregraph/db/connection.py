"""Database connection utilities for the entity store.

Connections run in autocommit mode: the store opens and closes transactions
itself so that one materialization pass maps to exactly one transaction.
"""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .schema import apply_schema, validate_schema


def _configure_connection(conn: sqlite3.Connection, read_only: bool) -> None:
    """Configure row access and PRAGMAs for the connection."""
    # Set row factory for dict-like access
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")

    if read_only:
        conn.execute("PRAGMA query_only = ON;")
    else:
        conn.execute("PRAGMA synchronous = NORMAL;")
        # Precomputed join results can be large
        conn.execute("PRAGMA temp_store = FILE;")


def connect(
    db_path: Path,
    validate: bool = True,
    read_only: bool = False,
    create: bool = False,
) -> sqlite3.Connection:
    """Open a connection to an entity store database.

    Args:
        db_path: Path to the SQLite database
        validate: If True, validate that expected tables exist
        read_only: Open with mode=ro and query_only
        create: Create the file and apply the schema if needed

    Returns:
        Configured SQLite connection in autocommit mode

    Raises:
        FileNotFoundError: If database file doesn't exist and create is False
        SchemaError: If validation fails (missing tables)
    """
    if not db_path.exists() and not create:
        raise FileNotFoundError(f"Database not found: {db_path}")

    if read_only:
        uri = f"file:{db_path}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, isolation_level=None)
    else:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), isolation_level=None)
    _configure_connection(conn, read_only)

    if create and not read_only:
        apply_schema(conn)
    if validate:
        validate_schema(conn)

    return conn


@contextmanager
def get_connection(
    db_path: Path,
    validate: bool = True,
    read_only: bool = False,
    create: bool = False,
) -> Iterator[sqlite3.Connection]:
    """Context manager for database connection.

    Args:
        db_path: Path to the SQLite database
        validate: If True, validate schema on connection
        read_only: Open the database read-only
        create: Create the database if it is missing

    Yields:
        Configured SQLite connection
    """
    conn = connect(db_path, validate=validate, read_only=read_only, create=create)
    try:
        yield conn
    finally:
        conn.close()
