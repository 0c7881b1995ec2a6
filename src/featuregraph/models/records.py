from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union


class FieldKind(str, Enum):
    ATTRIBUTE = "attribute"
    REFERENCE = "reference"
    COLLECTION = "collection"


class Cardinality(str, Enum):
    SINGLE = "single"
    COLLECTION = "collection"


class GroupBy(str, Enum):
    SOURCE = "source"
    DESTINATION = "destination"


class JoinShape(str, Enum):
    RELATION = "relation"  # source <- relation.object, relation.subject -> destination
    PATH = "path"  # source.field -> connecting.field -> destination
    FILTER = "filter"  # source.field -> connecting (typed subset)


EntityLike = Union["Entity", int]


def _ref_id(value: Optional[EntityLike]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, Entity):
        if value.id is None:
            raise ValueError(f"Cannot reference unsaved {value.type} entity")
        return value.id
    return int(value)


@dataclass(frozen=True, slots=True)
class Entity:
    """An immutable node of the entity graph.

    Updates never happen in place: the ``with_*`` builders return a new value
    carrying the same id and a bumped version, so a reader holding a cached
    entity keeps seeing the state it loaded.
    """

    type: str
    id: Optional[int] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    references: Dict[str, Optional[int]] = field(default_factory=dict)
    collections: Dict[str, Tuple[int, ...]] = field(default_factory=dict)
    version: int = 0

    @classmethod
    def new(cls, type_name: str, **attributes: Any) -> "Entity":
        return cls(type=type_name, attributes=dict(attributes))

    def copy(self) -> "Entity":
        return Entity(
            type=self.type,
            id=self.id,
            attributes=dict(self.attributes),
            references=dict(self.references),
            collections=dict(self.collections),
            version=self.version,
        )

    def with_id(self, entity_id: int) -> "Entity":
        return Entity(
            type=self.type,
            id=entity_id,
            attributes=dict(self.attributes),
            references=dict(self.references),
            collections=dict(self.collections),
            version=self.version,
        )

    def with_attribute(self, name: str, value: Any) -> "Entity":
        attributes = dict(self.attributes)
        attributes[name] = value
        return self._evolve(attributes=attributes)

    def with_reference(self, name: str, value: Optional[EntityLike]) -> "Entity":
        references = dict(self.references)
        references[name] = _ref_id(value)
        return self._evolve(references=references)

    def with_collection(self, name: str, values: Iterable[EntityLike]) -> "Entity":
        collections = dict(self.collections)
        collections[name] = tuple(_ref_id(v) for v in values)
        return self._evolve(collections=collections)

    def _evolve(self, **changes: Any) -> "Entity":
        return Entity(
            type=self.type,
            id=self.id,
            attributes=changes.get("attributes", dict(self.attributes)),
            references=changes.get("references", dict(self.references)),
            collections=changes.get("collections", dict(self.collections)),
            version=self.version + 1,
        )


@dataclass(frozen=True, slots=True)
class DerivedEdgeSpec:
    """Declarative description of one materialization stage."""

    name: str
    source_type: str
    connecting_type: str
    destination_type: str
    target_field: str
    source_field: Optional[str] = None
    connecting_field: Optional[str] = None
    cardinality: Cardinality = Cardinality.COLLECTION
    group_by: GroupBy = GroupBy.SOURCE
    shape: JoinShape = JoinShape.PATH
    merge_existing: bool = False

    @property
    def leading_type(self) -> str:
        if self.group_by is GroupBy.SOURCE:
            return self.source_type
        return self.destination_type

    @property
    def related_type(self) -> str:
        if self.group_by is GroupBy.SOURCE:
            return self.destination_type
        return self.source_type

    @property
    def object_field(self) -> str:
        return self.source_field or "object"

    @property
    def subject_field(self) -> str:
        return self.connecting_field or "subject"

    def describe(self) -> str:
        if self.shape is JoinShape.RELATION:
            path = (
                f"{self.source_type} <-{self.object_field}- {self.connecting_type} "
                f"-{self.subject_field}-> {self.destination_type}"
            )
        elif self.shape is JoinShape.FILTER:
            path = f"{self.source_type}.{self.source_field} -> {self.connecting_type}"
        else:
            path = (
                f"{self.source_type}.{self.source_field} -> "
                f"{self.connecting_type}.{self.connecting_field} -> {self.destination_type}"
            )
        merge = ", merge" if self.merge_existing else ""
        return (
            f"{self.name}: {path} => {self.leading_type}.{self.target_field} "
            f"({self.cardinality.value}{merge})"
        )


@dataclass(frozen=True, slots=True)
class PartialFieldError:
    """A resolved entity whose actual type lacks the field being written.

    Returned by the updater instead of raised: the group is skipped and the
    pass carries on.
    """

    entity_id: Optional[int]
    entity_type: str
    field_name: str
    reason: str = "field not declared"

    def __str__(self) -> str:
        return (
            f"{self.entity_type} {self.entity_id} has no usable "
            f"'{self.field_name}' field: {self.reason}"
        )


@dataclass(slots=True)
class StageReport:
    stage: str
    entities_written: int = 0
    edges_created: int = 0
    skipped: List[PartialFieldError] = field(default_factory=list)
