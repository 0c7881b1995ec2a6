"""Schema metadata for the entity graph.

The model describes which entity types exist, how they inherit from each
other and which attribute, reference and collection fields each declares.
Queries use it to resolve the kind of a join field and to make every type
filter polymorphic.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set, Tuple

from ..db.schema import SchemaError
from .records import FieldKind

if TYPE_CHECKING:
    from ..config import ModelConfig


@dataclass(slots=True)
class ClassDescriptor:
    name: str
    extends: Tuple[str, ...] = ()
    attributes: Tuple[str, ...] = ()
    references: Dict[str, str] = field(default_factory=dict)
    collections: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class FieldDescriptor:
    name: str
    kind: Optional[FieldKind] = None
    referenced_type: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.kind is not None

    @property
    def is_reference(self) -> bool:
        return self.kind is FieldKind.REFERENCE

    @property
    def is_collection(self) -> bool:
        return self.kind is FieldKind.COLLECTION


class Model:
    """A set of class descriptors with (multiple) inheritance."""

    def __init__(self, classes: Iterable[ClassDescriptor]) -> None:
        self._classes: Dict[str, ClassDescriptor] = {}
        for cld in classes:
            if cld.name in self._classes:
                raise SchemaError(f"Class {cld.name} is declared twice")
            self._classes[cld.name] = cld
        for cld in self._classes.values():
            for parent in cld.extends:
                if parent not in self._classes:
                    raise SchemaError(
                        f"Class {cld.name} extends unknown class {parent}"
                    )
        self._fields: Dict[str, Dict[str, FieldDescriptor]] = {}
        self._subtypes: Dict[str, Tuple[str, ...]] = {}
        for name in self._classes:
            self._fields[name] = self._collect_fields(name, set())
        for name in self._classes:
            self._subtypes[name] = self._collect_subtypes(name)

    @classmethod
    def from_config(cls, config: "ModelConfig") -> "Model":
        return cls(
            ClassDescriptor(
                name=item.name,
                extends=tuple(item.extends),
                attributes=tuple(item.attributes),
                references=dict(item.references),
                collections=dict(item.collections),
            )
            for item in config.classes
        )

    @property
    def class_names(self) -> List[str]:
        return sorted(self._classes)

    def has_class(self, name: str) -> bool:
        return name in self._classes

    def get_class(self, name: str) -> ClassDescriptor:
        try:
            return self._classes[name]
        except KeyError as exc:
            raise SchemaError(f"Unknown entity type: {name}") from exc

    def fields(self, type_name: str) -> Dict[str, FieldDescriptor]:
        self.get_class(type_name)
        return dict(self._fields[type_name])

    def field_descriptor(self, type_name: str, field_name: str) -> FieldDescriptor:
        """Look up a field declared on ``type_name`` or one of its ancestors.

        Returns a descriptor whose ``exists`` is False when the field is not
        declared. Raises SchemaError for an unknown type.
        """
        self.get_class(type_name)
        found = self._fields[type_name].get(field_name)
        if found is None:
            return FieldDescriptor(field_name)
        return found

    def subtypes(self, type_name: str) -> Tuple[str, ...]:
        """Return ``type_name`` and all of its transitive subclasses, sorted."""
        self.get_class(type_name)
        return self._subtypes[type_name]

    def declared_on_any_subtype(self, type_name: str, field_name: str) -> bool:
        return any(
            field_name in self._fields[sub] for sub in self.subtypes(type_name)
        )

    def is_subtype(self, type_name: str, ancestor: str) -> bool:
        return type_name in self.subtypes(ancestor)

    # --- helpers ---
    def _collect_fields(
        self, name: str, seen: Set[str]
    ) -> Dict[str, FieldDescriptor]:
        if name in seen:
            raise SchemaError(f"Inheritance cycle through class {name}")
        seen = seen | {name}
        cld = self._classes[name]
        collected: Dict[str, FieldDescriptor] = {}
        for parent in cld.extends:
            collected.update(self._collect_fields(parent, seen))
        for attr in cld.attributes:
            collected[attr] = FieldDescriptor(attr, FieldKind.ATTRIBUTE)
        for ref, target in cld.references.items():
            collected[ref] = FieldDescriptor(ref, FieldKind.REFERENCE, target)
        for col, target in cld.collections.items():
            collected[col] = FieldDescriptor(col, FieldKind.COLLECTION, target)
        return collected

    def _collect_subtypes(self, name: str) -> Tuple[str, ...]:
        result = {name}
        pending = [name]
        while pending:
            current = pending.pop()
            for cld in self._classes.values():
                if current in cld.extends and cld.name not in result:
                    result.add(cld.name)
                    pending.append(cld.name)
        return tuple(sorted(result))
