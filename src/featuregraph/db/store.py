"""Persisted entity store backed by SQLite.

The store is the only shared mutable resource of a materialization run. It
provides explicit transactions, upsert-by-id of immutable ``Entity`` values,
batched streaming of join results and schema metadata lookups.
"""
from __future__ import annotations

import itertools
import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from ..models.metadata import FieldDescriptor, Model
from ..models.records import Entity, FieldKind
from .cache import DEFAULT_CACHE_SIZE, EntityCache
from .queries import JoinQuery
from .schema import SchemaError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

# Keeps IN (...) lists well below SQLite's bound parameter limit
_HYDRATE_CHUNK = 500


class StorageError(Exception):
    """Raised when query execution, iteration, a store or a commit fails."""
    pass


@dataclass(frozen=True, slots=True)
class JoinRow:
    lead: Entity
    related: Entity
    connecting_id: Optional[int] = None


class EntityStore:
    """Entity store over an autocommit SQLite connection.

    Transactions are explicit: ``begin_transaction`` / ``commit`` /
    ``rollback``. A ``store`` outside a transaction runs in its own short
    transaction.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        model: Model,
        cache: Optional[EntityCache] = None,
    ) -> None:
        self.conn = conn
        self.model = model
        self.cache = cache if cache is not None else EntityCache(DEFAULT_CACHE_SIZE)
        self._temp_names = itertools.count(1)

    # --- transactions ---
    @property
    def in_transaction(self) -> bool:
        return self.conn.in_transaction

    def begin_transaction(self) -> None:
        if self.conn.in_transaction:
            raise StorageError("A transaction is already open")
        self._execute("BEGIN")

    def commit(self) -> None:
        if not self.conn.in_transaction:
            raise StorageError("No transaction to commit")
        self._execute("COMMIT")

    def rollback(self) -> None:
        try:
            if self.conn.in_transaction:
                self._execute("ROLLBACK")
        finally:
            self.cache.invalidate()

    @contextmanager
    def _write(self) -> Iterator[None]:
        if self.conn.in_transaction:
            yield
            return
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()

    # --- metadata ---
    def field_descriptor(self, type_name: str, field_name: str) -> FieldDescriptor:
        return self.model.field_descriptor(type_name, field_name)

    # --- entities ---
    def clone(self, entity: Entity) -> Entity:
        """Return an independent copy of ``entity`` keeping its id."""
        return entity.copy()

    def store(self, entity: Entity) -> Entity:
        """Upsert ``entity`` by id and return the stored value.

        An entity without an id is inserted and returned with its new id.
        The stored row's attributes, references and collections are replaced
        by those of the given entity.
        """
        self._check_fields(entity)
        attributes = json.dumps(entity.attributes, sort_keys=True)
        with self._write():
            try:
                if entity.id is None:
                    cur = self.conn.execute(
                        "INSERT INTO entities (type, version, attributes) VALUES (?, ?, ?)",
                        (entity.type, entity.version, attributes),
                    )
                    entity = entity.with_id(int(cur.lastrowid))
                else:
                    self.conn.execute(
                        """
                        INSERT INTO entities (id, type, version, attributes)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            type = excluded.type,
                            version = excluded.version,
                            attributes = excluded.attributes
                        """,
                        (entity.id, entity.type, entity.version, attributes),
                    )
                    self.conn.execute(
                        "DELETE FROM entity_references WHERE entity_id = ?", (entity.id,)
                    )
                    self.conn.execute(
                        "DELETE FROM entity_collections WHERE entity_id = ?", (entity.id,)
                    )
                self.conn.executemany(
                    "INSERT INTO entity_references (entity_id, field, target_id) VALUES (?, ?, ?)",
                    [
                        (entity.id, name, target)
                        for name, target in entity.references.items()
                        if target is not None
                    ],
                )
                self.conn.executemany(
                    """
                    INSERT INTO entity_collections (entity_id, field, position, target_id)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (entity.id, name, position, target)
                        for name, targets in entity.collections.items()
                        for position, target in enumerate(targets)
                    ],
                )
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to store {entity.type} {entity.id}: {exc}") from exc
        self.cache.evict(entity.id)
        return entity

    def get(self, entity_id: int) -> Optional[Entity]:
        return self.get_many([entity_id]).get(entity_id)

    def get_many(self, entity_ids: Iterable[int]) -> Dict[int, Entity]:
        """Hydrate entities by id, serving cached values where possible."""
        found: Dict[int, Entity] = {}
        missing: List[int] = []
        for entity_id in dict.fromkeys(entity_ids):
            cached = self.cache.get(entity_id)
            if cached is None:
                missing.append(entity_id)
            else:
                found[entity_id] = cached
        for start in range(0, len(missing), _HYDRATE_CHUNK):
            for entity in self._load(missing[start:start + _HYDRATE_CHUNK]):
                self.cache.put(entity)
                found[entity.id] = entity
        return found

    def count(self, type_name: Optional[str] = None) -> int:
        if type_name is None:
            row = self._execute("SELECT COUNT(*) FROM entities").fetchone()
            return int(row[0])
        types = self.model.subtypes(type_name)
        placeholders = ", ".join("?" for _ in types)
        row = self._execute(
            f"SELECT COUNT(*) FROM entities WHERE type IN ({placeholders})", types
        ).fetchone()
        return int(row[0])

    def counts_by_type(self) -> Dict[str, int]:
        rows = self._execute(
            "SELECT type, COUNT(*) AS n FROM entities GROUP BY type ORDER BY type"
        ).fetchall()
        return {row["type"]: int(row["n"]) for row in rows}

    # --- queries ---
    def query(self, join: JoinQuery, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[JoinRow]:
        """Execute ``join`` and stream its rows in ``ORDER BY`` order.

        On the first ``next()`` the join is precomputed into a temporary
        table, so writes made while iterating (in the same transaction) cannot
        change what is read. Rows are fetched ``batch_size`` at a time and each
        batch's entities are hydrated in bulk.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        table = f"precomputed_{next(self._temp_names)}"
        return self._iterate(join, table, batch_size)

    def _iterate(self, join: JoinQuery, table: str, batch_size: int) -> Iterator[JoinRow]:
        cursor: Optional[sqlite3.Cursor] = None
        try:
            try:
                self.conn.execute(f"CREATE TEMP TABLE {table} AS {join.sql}", join.params)
            except sqlite3.Error as exc:
                raise StorageError(f"Query for stage {join.spec.name} failed: {exc}") from exc
            logger.debug("Precomputed %s into %s", join.spec.name, table)
            cursor = self.conn.execute(
                f"SELECT lead_id, related_id, connecting_id FROM {table} ORDER BY {join.order_by}"
            )
            while True:
                batch = cursor.fetchmany(batch_size)
                if not batch:
                    break
                entities = self.get_many(
                    itertools.chain.from_iterable(
                        (row["lead_id"], row["related_id"]) for row in batch
                    )
                )
                for row in batch:
                    yield JoinRow(
                        lead=entities[row["lead_id"]],
                        related=entities[row["related_id"]],
                        connecting_id=row["connecting_id"],
                    )
        except sqlite3.Error as exc:
            raise StorageError(f"Reading {table} failed: {exc}") from exc
        finally:
            self._drop_temp(table, cursor)

    def _drop_temp(self, table: str, cursor: Optional[sqlite3.Cursor]) -> None:
        # An open cursor keeps the table locked
        try:
            if cursor is not None:
                cursor.close()
            self.conn.execute(f"DROP TABLE IF EXISTS temp.{table}")
        except sqlite3.Error as exc:
            logger.warning("Could not drop %s: %s", table, exc)

    # --- statistics ---
    def refresh_statistics(self, type_name: str) -> None:
        """Recompute planner statistics for the tables holding ``type_name``."""
        tables = ["entities"]
        kinds = {d.kind for d in self.model.fields(type_name).values()}
        if FieldKind.REFERENCE in kinds:
            tables.append("entity_references")
        if FieldKind.COLLECTION in kinds:
            tables.append("entity_collections")
        for table in tables:
            self._execute(f"ANALYZE {table}")
        logger.debug("Analysed %s for %s", ", ".join(tables), type_name)

    # --- helpers ---
    def _execute(self, sql: str, params: Sequence = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StorageError(f"{exc} (while executing {sql.split()[0]})") from exc

    def _load(self, entity_ids: Sequence[int]) -> List[Entity]:
        if not entity_ids:
            return []
        placeholders = ", ".join("?" for _ in entity_ids)
        try:
            rows = self.conn.execute(
                f"SELECT id, type, version, attributes FROM entities WHERE id IN ({placeholders})",
                entity_ids,
            ).fetchall()
            references: Dict[int, Dict[str, Optional[int]]] = {}
            for ref in self.conn.execute(
                f"""
                SELECT entity_id, field, target_id FROM entity_references
                WHERE entity_id IN ({placeholders})
                """,
                entity_ids,
            ):
                references.setdefault(ref["entity_id"], {})[ref["field"]] = ref["target_id"]
            collections: Dict[int, Dict[str, List[int]]] = {}
            for col in self.conn.execute(
                f"""
                SELECT entity_id, field, target_id FROM entity_collections
                WHERE entity_id IN ({placeholders})
                ORDER BY entity_id, field, position
                """,
                entity_ids,
            ):
                collections.setdefault(col["entity_id"], {}).setdefault(
                    col["field"], []
                ).append(col["target_id"])
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to load entities: {exc}") from exc

        entities = []
        for row in rows:
            entity_id = int(row["id"])
            entities.append(
                Entity(
                    type=row["type"],
                    id=entity_id,
                    attributes=json.loads(row["attributes"]),
                    references=references.get(entity_id, {}),
                    collections={
                        name: tuple(ids)
                        for name, ids in collections.get(entity_id, {}).items()
                    },
                    version=int(row["version"]),
                )
            )
        return entities

    def _check_fields(self, entity: Entity) -> None:
        fields = self.model.fields(entity.type)
        for names, kind in (
            (entity.attributes, FieldKind.ATTRIBUTE),
            (entity.references, FieldKind.REFERENCE),
            (entity.collections, FieldKind.COLLECTION),
        ):
            for name in names:
                descriptor = fields.get(name)
                if descriptor is None or descriptor.kind is not kind:
                    raise SchemaError(
                        f"{entity.type} has no {kind.value} field named {name}"
                    )
