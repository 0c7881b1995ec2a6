from __future__ import annotations

import logging
import sqlite3
from types import TracebackType
from typing import Optional, Type

from ..db.store import EntityStore, StorageError
from ..models.records import Entity

logger = logging.getLogger(__name__)


class Batch:
    """One transaction around one materialization pass.

    Usage:
        with Batch(store, "Gene") as batch:
            batch.add(updated_gene, edges=3)

    The transaction is committed when the block exits cleanly and rolled back
    when it raises or the commit itself fails; nothing of a failed pass is
    committed. After a commit the store is asked to refresh statistics for
    ``stats_type``; a failed refresh is logged and does not undo the commit.
    """

    def __init__(
        self,
        store: EntityStore,
        stats_type: str,
        refresh_statistics: bool = True,
    ) -> None:
        self.store = store
        self.stats_type = stats_type
        self.refresh_statistics = refresh_statistics
        self.entities_written = 0
        self.edges_created = 0
        self.committed = False

    def __enter__(self) -> "Batch":
        self.store.begin_transaction()
        return self

    def add(self, entity: Entity, edges: int = 0) -> Entity:
        stored = self.store.store(entity)
        self.entities_written += 1
        self.edges_created += edges
        return stored

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is not None:
            logger.warning(
                "Rolling back %s batch after %d writes: %s",
                self.stats_type, self.entities_written, exc,
            )
            self.store.rollback()
            if isinstance(exc, sqlite3.Error):
                raise StorageError(str(exc)) from exc
            return None

        try:
            self.store.commit()
        except StorageError:
            self.store.rollback()
            raise
        self.committed = True
        if self.refresh_statistics:
            # The pass is already committed
            try:
                self.store.refresh_statistics(self.stats_type)
            except StorageError as exc:
                logger.warning("Could not refresh statistics for %s: %s", self.stats_type, exc)
