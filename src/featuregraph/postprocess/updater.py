from __future__ import annotations

import logging
from typing import Sequence, Union

from ..db.store import EntityStore
from ..models.accessors import FieldAccessorRegistry
from ..models.records import Cardinality, Entity, FieldKind, PartialFieldError

logger = logging.getLogger(__name__)

UpdateResult = Union[Entity, PartialFieldError]

_EXPECTED_KIND = {
    Cardinality.SINGLE: FieldKind.REFERENCE,
    Cardinality.COLLECTION: FieldKind.COLLECTION,
}


class CopyOnWriteUpdater:
    """Builds updated copies of entities without touching the originals.

    The entity handed in may be shared with the store's cache or any other
    reader; ``prepare`` only ever works on a clone.
    """

    def __init__(self, store: EntityStore, registry: FieldAccessorRegistry) -> None:
        self.store = store
        self.registry = registry

    def prepare(
        self,
        entity: Entity,
        field_name: str,
        related: Sequence[Entity],
        cardinality: Cardinality,
        merge_existing: bool = False,
    ) -> UpdateResult:
        """Return a copy of ``entity`` with ``field_name`` set from ``related``.

        Returns a PartialFieldError instead when the entity's own type has no
        such field, or the field kind does not match ``cardinality``.
        """
        accessor = self.registry.accessor(entity.type, field_name)
        if accessor is None:
            return PartialFieldError(entity.id, entity.type, field_name)
        if accessor.kind is not _EXPECTED_KIND[cardinality]:
            return PartialFieldError(
                entity.id,
                entity.type,
                field_name,
                reason=f"{accessor.kind.value} field cannot hold a {cardinality.value} value",
            )

        copy = self.store.clone(entity)
        if cardinality is Cardinality.SINGLE:
            if len(related) > 1:
                logger.debug(
                    "%s %s: %d candidates for %s, keeping the last",
                    entity.type, entity.id, len(related), field_name,
                )
            value = related[-1] if related else None
            return accessor.set(copy, value)

        new_ids = [item.id for item in related]
        if merge_existing:
            merged = list(accessor.get(copy))
            seen = set(merged)
            for item_id in new_ids:
                if item_id not in seen:
                    merged.append(item_id)
                    seen.add(item_id)
            new_ids = merged
        return accessor.set(copy, new_ids)
