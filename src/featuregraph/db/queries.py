"""Join queries over the stored entity graph.

Each derived-edge stage is turned into one SQL statement selecting
``(lead_id, related_id, connecting_id, sort_key)`` rows. The store orders the
result by ``lead_id, sort_key``; grouping relies on that order.

Three shapes are supported:

- relation: ``source <- relation.object`` and ``relation.subject -> destination``
- path:     ``source.field ∋ connecting`` and ``connecting.field ∋ destination``
- filter:   ``source.field ∋ connecting`` restricted to a connecting subtype

A hop is a reference-equality test when the field is a reference and a
containment test when it is a collection; both tables share the
``(entity_id, field, target_id)`` columns so the join is written the same way.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from ..models.metadata import FieldDescriptor, Model
from ..models.records import Cardinality, DerivedEdgeSpec, FieldKind, GroupBy, JoinShape
from .schema import SchemaError

ORDER_BY = "lead_id, sort_key"

_HOP_TABLES = {
    FieldKind.REFERENCE: "entity_references",
    FieldKind.COLLECTION: "entity_collections",
}


@dataclass(frozen=True, slots=True)
class JoinQuery:
    spec: DerivedEdgeSpec
    sql: str
    params: Dict[str, Any]
    leading_type: str
    order_by: str = ORDER_BY


class _Params:
    def __init__(self) -> None:
        self.values: Dict[str, Any] = {}

    def add(self, value: Any) -> str:
        key = f"p{len(self.values)}"
        self.values[key] = value
        return f":{key}"

    def type_filter(self, column: str, types: Sequence[str]) -> str:
        placeholders = ", ".join(self.add(t) for t in types)
        return f"{column} IN ({placeholders})"


def _join_field(model: Model, type_name: str, field_name: str | None, role: str) -> FieldDescriptor:
    if not field_name:
        raise SchemaError(f"No {role} field given for {type_name}")
    descriptor = model.field_descriptor(type_name, field_name)
    if not descriptor.exists:
        raise SchemaError(f'cannot find field "{field_name}" in class {type_name}')
    if descriptor.kind not in _HOP_TABLES:
        raise SchemaError(
            f"Field {type_name}.{field_name} is an attribute and cannot be joined on"
        )
    return descriptor


def _check_target(model: Model, spec: DerivedEdgeSpec) -> None:
    leading = spec.leading_type
    if not model.declared_on_any_subtype(leading, spec.target_field):
        raise SchemaError(
            f"Target field {spec.target_field} is not declared on {leading} "
            "or any of its subclasses"
        )
    descriptor = model.field_descriptor(leading, spec.target_field)
    if not descriptor.exists:
        # Only some subclasses carry the field; checked per entity.
        return
    expected = (
        FieldKind.REFERENCE if spec.cardinality is Cardinality.SINGLE else FieldKind.COLLECTION
    )
    if descriptor.kind is not expected:
        raise SchemaError(
            f"Target field {leading}.{spec.target_field} is a {descriptor.kind.value}, "
            f"cannot write a {spec.cardinality.value} value to it"
        )


def _lead_and_related(spec: DerivedEdgeSpec, source: str, destination: str) -> List[str]:
    if spec.group_by is GroupBy.SOURCE:
        return [source, destination]
    return [destination, source]


def _relation_query(spec: DerivedEdgeSpec, model: Model) -> tuple[str, Dict[str, Any]]:
    for role, field_name in (("object", spec.object_field), ("subject", spec.subject_field)):
        descriptor = _join_field(model, spec.connecting_type, field_name, role)
        if not descriptor.is_reference:
            raise SchemaError(
                f"Relation field {spec.connecting_type}.{field_name} must be a reference"
            )
    params = _Params()
    lead, related = _lead_and_related(spec, "src.id", "dst.id")
    sql = f"""
        SELECT
            {lead} AS lead_id,
            {related} AS related_id,
            rel.id AS connecting_id,
            rel.id AS sort_key
        FROM entities rel
        JOIN entity_references r_obj
            ON r_obj.entity_id = rel.id AND r_obj.field = {params.add(spec.object_field)}
        JOIN entities src ON src.id = r_obj.target_id
        JOIN entity_references r_sub
            ON r_sub.entity_id = rel.id AND r_sub.field = {params.add(spec.subject_field)}
        JOIN entities dst ON dst.id = r_sub.target_id
        WHERE {params.type_filter("rel.type", model.subtypes(spec.connecting_type))}
          AND {params.type_filter("src.type", model.subtypes(spec.source_type))}
          AND {params.type_filter("dst.type", model.subtypes(spec.destination_type))}
        ORDER BY {ORDER_BY}
    """
    return sql, params.values


def _path_query(spec: DerivedEdgeSpec, model: Model) -> tuple[str, Dict[str, Any]]:
    first = _join_field(model, spec.source_type, spec.source_field, "source")
    second = _join_field(model, spec.connecting_type, spec.connecting_field, "connecting")
    params = _Params()
    lead, related = _lead_and_related(spec, "src.id", "dst.id")
    # One row per (source, destination) pair however many connecting paths exist
    sql = f"""
        SELECT
            {lead} AS lead_id,
            {related} AS related_id,
            MIN(con.id) AS connecting_id,
            {related} AS sort_key
        FROM entities src
        JOIN {_HOP_TABLES[first.kind]} hop1
            ON hop1.entity_id = src.id AND hop1.field = {params.add(spec.source_field)}
        JOIN entities con ON con.id = hop1.target_id
        JOIN {_HOP_TABLES[second.kind]} hop2
            ON hop2.entity_id = con.id AND hop2.field = {params.add(spec.connecting_field)}
        JOIN entities dst ON dst.id = hop2.target_id
        WHERE {params.type_filter("src.type", model.subtypes(spec.source_type))}
          AND {params.type_filter("con.type", model.subtypes(spec.connecting_type))}
          AND {params.type_filter("dst.type", model.subtypes(spec.destination_type))}
        GROUP BY src.id, dst.id
        ORDER BY {ORDER_BY}
    """
    return sql, params.values


def _filter_query(spec: DerivedEdgeSpec, model: Model) -> tuple[str, Dict[str, Any]]:
    if spec.destination_type != spec.connecting_type:
        raise SchemaError(
            f"Filter stage {spec.name} must use the same connecting and destination type"
        )
    first = _join_field(model, spec.source_type, spec.source_field, "source")
    params = _Params()
    lead, related = _lead_and_related(spec, "src.id", "con.id")
    position = "hop1.position" if first.is_collection else "0"
    sql = f"""
        SELECT
            {lead} AS lead_id,
            {related} AS related_id,
            con.id AS connecting_id,
            {position if spec.group_by is GroupBy.SOURCE else "src.id"} AS sort_key
        FROM entities src
        JOIN {_HOP_TABLES[first.kind]} hop1
            ON hop1.entity_id = src.id AND hop1.field = {params.add(spec.source_field)}
        JOIN entities con ON con.id = hop1.target_id
        WHERE {params.type_filter("src.type", model.subtypes(spec.source_type))}
          AND {params.type_filter("con.type", model.subtypes(spec.connecting_type))}
        ORDER BY {ORDER_BY}
    """
    return sql, params.values


_BUILDERS = {
    JoinShape.RELATION: _relation_query,
    JoinShape.PATH: _path_query,
    JoinShape.FILTER: _filter_query,
}


def build_join_query(spec: DerivedEdgeSpec, model: Model) -> JoinQuery:
    """Build the ordered join for one derived-edge stage.

    Args:
        spec: The stage declaration
        model: Schema metadata used to resolve field kinds and subtypes

    Returns:
        A JoinQuery the store can execute lazily

    Raises:
        SchemaError: If a type is unknown, a join field is not declared on its
            type, or the target field cannot be written on the leading type
    """
    for type_name in (spec.source_type, spec.connecting_type, spec.destination_type):
        model.get_class(type_name)
    sql, params = _BUILDERS[spec.shape](spec, model)
    _check_target(model, spec)
    return JoinQuery(spec=spec, sql=sql, params=params, leading_type=spec.leading_type)
