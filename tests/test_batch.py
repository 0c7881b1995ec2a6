"""Tests for the per-pass transaction manager."""

import sqlite3

import pytest

from featuregraph.db.store import StorageError
from featuregraph.models.records import Entity
from featuregraph.postprocess.batch import Batch


def test_batch_commits_and_refreshes_statistics(store, monkeypatch):
    """Verify a clean exit commits and analyses the written type."""
    analysed = []
    monkeypatch.setattr(store, "refresh_statistics", analysed.append)

    with Batch(store, "Gene") as batch:
        assert store.in_transaction
        batch.add(Entity.new("Gene", symbol="ab"), edges=2)
        batch.add(Entity.new("Gene", symbol="cd"), edges=1)

    assert batch.committed
    assert not store.in_transaction
    assert batch.entities_written == 2
    assert batch.edges_created == 3
    assert store.count("Gene") == 2
    assert analysed == ["Gene"]


def test_batch_can_skip_statistics(store, monkeypatch):
    """Verify refresh_statistics=False skips the ANALYZE."""
    analysed = []
    monkeypatch.setattr(store, "refresh_statistics", analysed.append)

    with Batch(store, "Gene", refresh_statistics=False):
        pass

    assert analysed == []


def test_batch_rolls_back_on_error(store):
    """Verify nothing of a failed pass is committed."""
    with pytest.raises(RuntimeError):
        with Batch(store, "Gene") as batch:
            batch.add(Entity.new("Gene", symbol="ab"))
            raise RuntimeError("boom")

    assert not batch.committed
    assert not store.in_transaction
    assert store.count("Gene") == 0


def test_batch_wraps_sqlite_errors(store):
    """Verify raw sqlite errors leave the batch as StorageError."""
    with pytest.raises(StorageError) as exc_info:
        with Batch(store, "Gene"):
            raise sqlite3.OperationalError("disk I/O error")

    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
    assert store.count() == 0


def test_batch_rolls_back_when_commit_fails(store):
    """Verify a commit rejected by the database leaves no open transaction."""
    gene = store.store(Entity.new("Gene", symbol="ab"))

    with pytest.raises(StorageError):
        with Batch(store, "Gene") as batch:
            batch.add(gene.with_attribute("symbol", "cd"))
            store.conn.execute("PRAGMA defer_foreign_keys = ON")
            store.conn.execute(
                "INSERT INTO entity_references (entity_id, field, target_id) VALUES (999, 'gene', 1)"
            )

    assert not batch.committed
    assert not store.in_transaction
    assert store.get(gene.id).attributes["symbol"] == "ab"
    store.begin_transaction()
    store.rollback()


def test_batch_statistics_failure_keeps_commit(store, monkeypatch):
    """Verify a failed ANALYZE after commit is logged, not raised."""
    def failing_refresh(type_name):
        raise StorageError("database is locked")

    monkeypatch.setattr(store, "refresh_statistics", failing_refresh)

    with Batch(store, "Gene") as batch:
        batch.add(Entity.new("Gene", symbol="ab"))

    assert batch.committed
    assert store.count("Gene") == 1
