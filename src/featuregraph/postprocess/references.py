"""Fill in references and collections that loaders could not set directly.

Each stage joins the stored graph, groups the rows by the leading entity and
writes the target field on a copy of that entity, all within one
transaction:

    BioEntity1 -> Relation -> BioEntity2       ==>  BioEntity1 -> BioEntity2
    BioEntity1 -> BioEntity2 -> BioEntity3     ==>  BioEntity1 -> BioEntity3
    BioEntity.collection -> Relation subtype   ==>  BioEntity.new_collection

Stages run in the order given. A stage may join on a field an earlier stage
wrote, so running them out of order produces missing edges, not an error.
"""
from __future__ import annotations

import logging
from contextlib import closing
from typing import Iterable, List, Optional, Sequence

from ..db.queries import build_join_query
from ..db.schema import SchemaError
from ..db.store import DEFAULT_BATCH_SIZE, EntityStore, StorageError
from ..models.accessors import FieldAccessorRegistry
from ..models.records import Cardinality, DerivedEdgeSpec, PartialFieldError, StageReport
from .batch import Batch
from .grouping import group_rows
from .updater import CopyOnWriteUpdater

logger = logging.getLogger(__name__)


class StageFailed(Exception):
    """A fatal error stopped a multi-stage run.

    Attributes:
        stage: Name of the stage that failed
        completed: Reports of the stages committed before it
    """

    def __init__(self, stage: str, completed: Sequence[StageReport], cause: Exception) -> None:
        super().__init__(f"Stage {stage} failed: {cause}")
        self.stage = stage
        self.completed = list(completed)
        self.cause = cause


class ReferenceMaterializer:
    def __init__(
        self,
        store: EntityStore,
        registry: Optional[FieldAccessorRegistry] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        refresh_statistics: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry or FieldAccessorRegistry.from_model(store.model)
        self.updater = CopyOnWriteUpdater(store, self.registry)
        self.batch_size = batch_size
        self.refresh_statistics = refresh_statistics

    def run(self, spec: DerivedEdgeSpec) -> StageReport:
        """Materialize one derived-edge stage in a single transaction.

        Raises:
            SchemaError: The stage names a type or field the model lacks;
                raised before any row is read
            StorageError: Query, iteration, store or commit failed; nothing
                of the stage is committed
        """
        logger.info("Beginning %s", spec.describe())
        join = build_join_query(spec, self.store.model)
        report = StageReport(stage=spec.name)

        with Batch(self.store, spec.leading_type, self.refresh_statistics) as batch:
            with closing(self.store.query(join, batch_size=self.batch_size)) as rows:
                for group in group_rows(rows):
                    result = self.updater.prepare(
                        group.lead,
                        spec.target_field,
                        group.related,
                        spec.cardinality,
                        merge_existing=spec.merge_existing,
                    )
                    if isinstance(result, PartialFieldError):
                        logger.warning("Skipping %s in %s: %s", group.lead.id, spec.name, result)
                        report.skipped.append(result)
                        continue
                    edges = 1 if spec.cardinality is Cardinality.SINGLE else len(group.related)
                    batch.add(result, edges=edges)

        report.entities_written = batch.entities_written
        report.edges_created = batch.edges_created
        logger.info(
            "Created %d references in %s.%s on %d entities (%d skipped)",
            report.edges_created, spec.leading_type, spec.target_field,
            report.entities_written, len(report.skipped),
        )
        return report

    def run_stages(self, specs: Iterable[DerivedEdgeSpec]) -> List[StageReport]:
        """Run stages strictly in the given order.

        A fatal error stops the sequence: earlier stages stay committed and
        the remaining ones are not run.
        """
        reports: List[StageReport] = []
        for spec in specs:
            try:
                reports.append(self.run(spec))
            except (SchemaError, StorageError) as exc:
                logger.error("Stage %s failed, %d stage(s) committed", spec.name, len(reports))
                raise StageFailed(spec.name, reports, exc) from exc
        return reports
