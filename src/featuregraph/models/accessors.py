from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .metadata import Model
from .records import Entity, FieldKind

Getter = Callable[[Entity], Any]
Setter = Callable[[Entity, Any], Entity]


@dataclass(frozen=True, slots=True)
class FieldAccessor:
    name: str
    kind: FieldKind
    get: Getter
    set: Setter


def _attribute_accessor(name: str) -> FieldAccessor:
    return FieldAccessor(
        name=name,
        kind=FieldKind.ATTRIBUTE,
        get=lambda entity: entity.attributes.get(name),
        set=lambda entity, value: entity.with_attribute(name, value),
    )


def _reference_accessor(name: str) -> FieldAccessor:
    return FieldAccessor(
        name=name,
        kind=FieldKind.REFERENCE,
        get=lambda entity: entity.references.get(name),
        set=lambda entity, value: entity.with_reference(name, value),
    )


def _collection_accessor(name: str) -> FieldAccessor:
    return FieldAccessor(
        name=name,
        kind=FieldKind.COLLECTION,
        get=lambda entity: entity.collections.get(name, ()),
        set=lambda entity, values: entity.with_collection(name, values),
    )


_FACTORIES = {
    FieldKind.ATTRIBUTE: _attribute_accessor,
    FieldKind.REFERENCE: _reference_accessor,
    FieldKind.COLLECTION: _collection_accessor,
}


class FieldAccessorRegistry:
    """Maps (entity type, field name) to typed get/set closures.

    Built once from the model; a type only gets accessors for the fields it
    declares or inherits, so a lookup miss means the field does not exist on
    that concrete type.
    """

    def __init__(self) -> None:
        self._registry: Dict[Tuple[str, str], FieldAccessor] = {}

    @classmethod
    def from_model(cls, model: Model) -> "FieldAccessorRegistry":
        registry = cls()
        for type_name in model.class_names:
            for descriptor in model.fields(type_name).values():
                registry.register(type_name, _FACTORIES[descriptor.kind](descriptor.name))
        return registry

    def register(self, type_name: str, accessor: FieldAccessor) -> None:
        self._registry[(type_name, accessor.name)] = accessor

    def accessor(self, type_name: str, field_name: str) -> Optional[FieldAccessor]:
        return self._registry.get((type_name, field_name))

    def has_field(self, type_name: str, field_name: str) -> bool:
        return (type_name, field_name) in self._registry

    def __len__(self) -> int:
        return len(self._registry)
