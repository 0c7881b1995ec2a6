"""Tests for settings and the shipped stage configuration."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from featuregraph.config import Settings, StageConfig, load_settings
from featuregraph.db.cache import DEFAULT_CACHE_SIZE
from featuregraph.db.queries import build_join_query
from featuregraph.models.metadata import Model
from featuregraph.models.records import Cardinality, GroupBy, JoinShape


SHIPPED_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


def _stage(**overrides):
    values = {
        "name": "exon_gene",
        "source_type": "Gene",
        "source_field": "transcripts",
        "connecting_type": "Transcript",
        "connecting_field": "exons",
        "destination_type": "Exon",
        "target_field": "gene",
    }
    values.update(overrides)
    return values


def test_shipped_config_builds_every_stage():
    """Verify every shipped stage resolves against the shipped model."""
    settings = load_settings(SHIPPED_CONFIG)
    model = Model.from_config(settings.model)

    specs = settings.specs()

    assert specs
    for spec in specs:
        join = build_join_query(spec, model)
        assert model.has_class(join.leading_type)


def test_shipped_config_keeps_dependent_order():
    """Verify stages reading derived fields come after the stages writing them."""
    names = [spec.name for spec in load_settings(SHIPPED_CONFIG).specs()]

    assert names.index("gene_transcripts") < names.index("exon_gene")
    assert names.index("transcript_exons") < names.index("exon_gene")
    assert names.index("chromosome_exons") < names.index("gene_chromosome")
    assert names.index("exon_gene") < names.index("gene_chromosome")


def test_load_settings_from_yaml(tmp_path: Path):
    """Verify values in the YAML file override defaults."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({
        "db_path": str(tmp_path / "graph.db"),
        "batch_size": 50,
        "log_level": "debug",
        "stages": [_stage()],
    }))

    settings = load_settings(config_path)

    assert settings.db_path == (tmp_path / "graph.db").resolve()
    assert settings.batch_size == 50
    assert settings.log_level == "DEBUG"
    assert settings.refresh_statistics is True
    assert [spec.name for spec in settings.specs()] == ["exon_gene"]


def test_missing_config_file_uses_defaults(tmp_path: Path):
    """Verify a missing file gives the default settings."""
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings.batch_size == 500
    assert settings.stages == []


def test_batch_size_bounds():
    """Verify batch sizes outside the allowed range are rejected."""
    with pytest.raises(ValidationError):
        Settings(batch_size=0)
    with pytest.raises(ValidationError):
        Settings(batch_size=100_001)


def test_stage_defaults_to_path_collection_by_source():
    """Verify the defaults of a stage declaration."""
    spec = StageConfig(**_stage()).to_spec()

    assert spec.shape is JoinShape.PATH
    assert spec.cardinality is Cardinality.COLLECTION
    assert spec.group_by is GroupBy.SOURCE
    assert spec.merge_existing is False


def test_path_stage_requires_both_fields():
    """Verify path stages need a source and a connecting field."""
    with pytest.raises(ValidationError):
        StageConfig(**_stage(connecting_field=None))


def test_relation_stage_requires_destination():
    """Verify only filter stages may omit the destination type."""
    with pytest.raises(ValidationError):
        StageConfig(**_stage(shape="relation", destination_type=None))


def test_filter_stage_defaults_destination_to_connecting_type():
    """Verify a filter stage reads the connecting entities themselves."""
    stage = StageConfig(
        name="protein_interactions",
        shape="filter",
        source_type="Protein",
        source_field="subjects",
        connecting_type="ProteinInteraction",
        target_field="interactions",
    )

    assert stage.to_spec().destination_type == "ProteinInteraction"


def test_filter_stage_requires_source_field():
    """Verify a filter stage must name the collection it filters."""
    with pytest.raises(ValidationError):
        StageConfig(
            name="protein_interactions",
            shape="filter",
            source_type="Protein",
            connecting_type="ProteinInteraction",
            target_field="interactions",
        )


def test_duplicate_stage_names_rejected():
    """Verify stage names must be unique."""
    with pytest.raises(ValidationError) as exc_info:
        Settings(stages=[_stage(), _stage()])

    assert "exon_gene" in str(exc_info.value)


def test_specs_subset_keeps_configured_order():
    """Verify --stage selection runs in configured order, not argument order."""
    settings = Settings(stages=[_stage(name="first"), _stage(name="second"), _stage(name="third")])

    specs = settings.specs(["third", "first"])

    assert [spec.name for spec in specs] == ["first", "third"]


def test_specs_unknown_name_raises():
    """Verify selecting an unconfigured stage is an error."""
    settings = Settings(stages=[_stage()])

    with pytest.raises(KeyError):
        settings.specs(["exon_chromosome"])


def test_cache_size_defaults_to_bounded():
    """Verify the entity cache is bounded unless configured otherwise."""
    assert Settings().cache_size == DEFAULT_CACHE_SIZE
    assert load_settings(SHIPPED_CONFIG).cache_size == 50_000
    with pytest.raises(ValidationError):
        Settings(cache_size=0)
