"""Shared test fixtures for featuregraph tests.

These fixtures create entity stores over a small genomic model and helpers to
populate them the way a data loader would.
"""
import sqlite3
from pathlib import Path
from typing import Dict

import pytest

from featuregraph.db.connection import connect
from featuregraph.db.store import EntityStore
from featuregraph.models.metadata import ClassDescriptor, Model
from featuregraph.models.records import Entity


def build_model() -> Model:
    """A cut-down genomic model.

    Intron is a SequenceFeature without a ``gene`` reference, which makes
    SequenceFeature.gene a field only some subclasses carry.
    """
    return Model([
        ClassDescriptor(
            "BioEntity",
            attributes=("identifier",),
            collections={"subjects": "Relation", "objects": "Relation"},
        ),
        ClassDescriptor(
            "SequenceFeature",
            extends=("BioEntity",),
            references={"chromosome": "Chromosome"},
        ),
        ClassDescriptor(
            "Chromosome",
            extends=("BioEntity",),
            collections={"exons": "Exon"},
        ),
        ClassDescriptor(
            "Gene",
            extends=("SequenceFeature",),
            attributes=("symbol",),
            collections={"transcripts": "Transcript", "exons": "Exon"},
        ),
        ClassDescriptor(
            "Transcript",
            extends=("SequenceFeature",),
            references={"gene": "Gene", "protein": "Protein"},
            collections={"exons": "Exon"},
        ),
        ClassDescriptor("MRNA", extends=("Transcript",)),
        ClassDescriptor(
            "Exon",
            extends=("SequenceFeature",),
            references={"gene": "Gene"},
            collections={"transcripts": "Transcript"},
        ),
        ClassDescriptor("Intron", extends=("SequenceFeature",)),
        ClassDescriptor(
            "Protein",
            extends=("BioEntity",),
            collections={"genes": "Gene", "interactions": "ProteinInteraction"},
        ),
        ClassDescriptor(
            "Relation",
            references={"object": "BioEntity", "subject": "BioEntity"},
        ),
        ClassDescriptor("SimpleRelation", extends=("Relation",)),
        ClassDescriptor("RankedRelation", extends=("Relation",), attributes=("rank",)),
        ClassDescriptor("Location", extends=("Relation",), attributes=("start", "end")),
        ClassDescriptor("ProteinInteraction", extends=("Relation",)),
    ])


class GraphBuilder:
    """Populates a store the way a loader would."""

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def add(self, type_name: str, **attributes) -> Entity:
        return self.store.store(Entity.new(type_name, **attributes))

    def relate(self, relation_type: str, obj: Entity, subj: Entity, **attributes) -> Entity:
        """Store a relation and register it in obj.subjects / subj.objects."""
        relation = self.store.store(
            Entity.new(relation_type, **attributes)
            .with_reference("object", obj)
            .with_reference("subject", subj)
        )
        self._append(obj.id, "subjects", relation.id)
        self._append(subj.id, "objects", relation.id)
        return relation

    def link(self, entity: Entity, field_name: str, *targets: Entity) -> Entity:
        current = self.store.get(entity.id)
        existing = current.collections.get(field_name, ())
        return self.store.store(
            current.with_collection(field_name, existing + tuple(t.id for t in targets))
        )

    def _append(self, entity_id: int, field_name: str, relation_id: int) -> None:
        current = self.store.get(entity_id)
        if field_name not in self.store.model.fields(current.type):
            return
        existing = current.collections.get(field_name, ())
        self.store.store(current.with_collection(field_name, existing + (relation_id,)))


def seed_gene_graph(graph: GraphBuilder) -> Dict[str, Entity]:
    """Seed one chromosome, one gene with two transcripts and three exons.

    Creates:
    - chr1 with Locations to e1, e2, e3
    - g1 with SimpleRelations to t1 (MRNA) and t2
    - t1 -> e1, e2 by RankedRelation; t2 -> e2, e3 by SimpleRelation
    - i1, an Intron located on chr1 and related to g1
    """
    chr1 = graph.add("Chromosome", identifier="chr1")
    g1 = graph.add("Gene", identifier="FBgn0001", symbol="ab")
    t1 = graph.add("MRNA", identifier="FBtr0001")
    t2 = graph.add("Transcript", identifier="FBtr0002")
    e1 = graph.add("Exon", identifier="e1")
    e2 = graph.add("Exon", identifier="e2")
    e3 = graph.add("Exon", identifier="e3")
    i1 = graph.add("Intron", identifier="i1")

    graph.relate("SimpleRelation", g1, t1)
    graph.relate("SimpleRelation", g1, t2)
    graph.relate("RankedRelation", t1, e1, rank=1)
    graph.relate("RankedRelation", t1, e2, rank=2)
    graph.relate("SimpleRelation", t2, e2)
    graph.relate("SimpleRelation", t2, e3)
    for exon in (e1, e2, e3):
        graph.relate("Location", chr1, exon, start=1, end=100)
    graph.relate("Location", chr1, i1, start=101, end=200)
    graph.relate("SimpleRelation", g1, i1)

    return {
        "chr1": chr1, "g1": g1, "t1": t1, "t2": t2,
        "e1": e1, "e2": e2, "e3": e3, "i1": i1,
    }


@pytest.fixture
def model() -> Model:
    return build_model()


@pytest.fixture
def conn(tmp_path: Path) -> sqlite3.Connection:
    connection = connect(tmp_path / "graph.db", create=True)
    yield connection
    connection.close()


@pytest.fixture
def store(conn: sqlite3.Connection, model: Model) -> EntityStore:
    return EntityStore(conn, model)


@pytest.fixture
def graph(store: EntityStore) -> GraphBuilder:
    return GraphBuilder(store)


@pytest.fixture
def gene_graph(graph: GraphBuilder) -> Dict[str, Entity]:
    return seed_gene_graph(graph)
