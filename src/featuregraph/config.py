"""Configuration for featuregraph.

Configuration describes:
- db_path: Path to the SQLite entity store
- model: the entity classes and their fields
- stages: the derived-edge stages, in the order they must run
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .db.cache import DEFAULT_CACHE_SIZE
from .models.records import Cardinality, DerivedEdgeSpec, GroupBy, JoinShape


class ClassConfig(BaseModel):
    """One entity class of the model."""

    name: str
    extends: List[str] = Field(default_factory=list)
    attributes: List[str] = Field(default_factory=list)
    references: Dict[str, str] = Field(default_factory=dict)
    collections: Dict[str, str] = Field(default_factory=dict)


class ModelConfig(BaseModel):
    classes: List[ClassConfig] = Field(default_factory=list)


class StageConfig(BaseModel):
    """One derived-edge stage."""

    name: str
    shape: JoinShape = JoinShape.PATH
    source_type: str
    source_field: Optional[str] = None
    connecting_type: str
    connecting_field: Optional[str] = None
    destination_type: Optional[str] = None
    target_field: str
    cardinality: Cardinality = Cardinality.COLLECTION
    group_by: GroupBy = GroupBy.SOURCE
    merge_existing: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> "StageConfig":
        if self.shape is JoinShape.FILTER:
            if self.destination_type is None:
                self.destination_type = self.connecting_type
        elif self.destination_type is None:
            raise ValueError(f"stage {self.name}: destination_type is required")
        if self.shape is JoinShape.PATH and not (self.source_field and self.connecting_field):
            raise ValueError(
                f"stage {self.name}: path stages need source_field and connecting_field"
            )
        if self.shape is JoinShape.FILTER and not self.source_field:
            raise ValueError(f"stage {self.name}: filter stages need source_field")
        return self

    def to_spec(self) -> DerivedEdgeSpec:
        return DerivedEdgeSpec(
            name=self.name,
            source_type=self.source_type,
            source_field=self.source_field,
            connecting_type=self.connecting_type,
            connecting_field=self.connecting_field,
            destination_type=self.destination_type or self.connecting_type,
            target_field=self.target_field,
            cardinality=self.cardinality,
            group_by=self.group_by,
            shape=self.shape,
            merge_existing=self.merge_existing,
        )


class Settings(BaseModel):
    """featuregraph settings."""

    db_path: Path = Field(
        default_factory=lambda: Path("featuregraph.db").resolve(),
        description="Path to the SQLite entity store"
    )
    batch_size: int = Field(
        default=500,
        ge=1,
        le=100_000,
        description="Rows fetched per round trip while streaming a join"
    )
    cache_size: int = Field(
        default=DEFAULT_CACHE_SIZE,
        ge=1,
        description="Most hydrated entities kept in memory at once"
    )
    refresh_statistics: bool = Field(
        default=True,
        description="Run ANALYZE for the written type after each stage"
    )
    log_level: str = "INFO"
    model: ModelConfig = Field(default_factory=ModelConfig)
    stages: List[StageConfig] = Field(default_factory=list)

    @field_validator("db_path", mode="before")
    def _coerce_path(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()

    @field_validator("log_level")
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _unique_stage_names(self) -> "Settings":
        names = [stage.name for stage in self.stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate stage names: {', '.join(duplicates)}")
        return self

    def specs(self, only: Optional[List[str]] = None) -> List[DerivedEdgeSpec]:
        """Return stage specs in configured order, optionally only the named ones."""
        if only:
            known = {stage.name for stage in self.stages}
            unknown = [name for name in only if name not in known]
            if unknown:
                raise KeyError(f"Unknown stage(s): {', '.join(unknown)}")
        return [
            stage.to_spec()
            for stage in self.stages
            if not only or stage.name in only
        ]


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load configuration from YAML if provided, otherwise use defaults."""
    path = config_path or Path(__file__).resolve().parent.parent.parent / "config.yaml"
    if path.exists():
        data = yaml.safe_load(path.read_text()) or {}
    else:
        data = {}
    return Settings(**data)
