"""Integration tests for the PostgreSQL user store and store-backed CLI modes.

Requires a real PostgreSQL database (via pytest-postgresql).
No live HTTP requests are made; lookups are patched.
"""

from __future__ import annotations

import json
from unittest.mock import patch

import psycopg
import pytest
from click.testing import CliRunner

from federation_sync.cli import main
from federation_sync.geo import City
from federation_sync.models import Metadata, Structure
from federation_sync.store import PostgresUserStore, StaleRecordError, UserRecord
from federation_sync.sync import OP_CREATE, OP_UPDATE_METADATA, WriteOp, apply_plan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def conn(db_conn):
    connection, _ = db_conn
    yield connection


@pytest.fixture()
def store(conn):
    return PostgresUserStore(conn)


def _insert(store: PostgresUserStore, record: UserRecord) -> UserRecord:
    with store.transaction():
        return store.compare_and_set(record, 0)


def _new(first="Jane", last="Doe", metadata: Metadata | None = None) -> UserRecord:
    return UserRecord.new(first, last, 19900412, "jane@example.com", metadata)


# ---------------------------------------------------------------------------
# Compare-and-set
# ---------------------------------------------------------------------------

class TestCompareAndSet:
    def test_insert_then_read(self, store):
        md = Metadata(myffme_user_id="u1", license_number=111,
                      latest_structure=Structure(10, "Club", department="69"))
        written = _insert(store, _new(metadata=md))
        assert written.version == 1
        stored = store.get(written.key)
        assert stored == written
        assert stored.parsed_metadata() == md

    def test_list_by_prefix(self, store):
        a = _insert(store, _new("Anne"))
        b = _insert(store, _new("Paul"))
        assert sorted(r.key for r in store.list("acc/")) == sorted([a.key, b.key])
        assert store.list("other/") == []

    def test_update_bumps_version(self, store):
        record = _insert(store, _new())
        with store.transaction():
            updated = store.compare_and_set(record.with_metadata(Metadata(city="Lyon")), 1)
        assert updated.version == 2
        assert store.get(record.key).parsed_metadata().city == "Lyon"

    def test_stale_update_raises(self, store):
        record = _insert(store, _new())
        with pytest.raises(StaleRecordError):
            with store.transaction():
                store.compare_and_set(record, 7)
        assert store.get(record.key).version == 1

    def test_insert_existing_key_is_stale(self, store):
        record = _insert(store, _new())
        with pytest.raises(StaleRecordError):
            with store.transaction():
                store.compare_and_set(record, 0)


# ---------------------------------------------------------------------------
# apply_plan
# ---------------------------------------------------------------------------

class TestApplyPlan:
    def test_conflict_rolls_back_whole_plan(self, store):
        existing = _insert(store, _new())
        fresh = _new("Paul")
        ops = [
            WriteOp(OP_CREATE, fresh, 0),
            WriteOp(OP_UPDATE_METADATA, existing.with_metadata(Metadata(city="Lyon")), 3),
        ]
        with pytest.raises(StaleRecordError):
            apply_plan(store, ops)
        assert store.get(fresh.key) is None
        assert store.get(existing.key).metadata is None

    def test_dry_run_rolls_back(self, store):
        fresh = _new("Paul")
        written = apply_plan(store, [WriteOp(OP_CREATE, fresh, 0)], dry_run=True)
        assert written[0].version == 1
        assert store.get(fresh.key) is None

    def test_commit(self, store):
        fresh = _new("Paul")
        apply_plan(store, [WriteOp(OP_CREATE, fresh, 0)])
        assert store.get(fresh.key).version == 1


# ---------------------------------------------------------------------------
# CLI: insee_backfill
# ---------------------------------------------------------------------------

class TestInseeBackfillCli:
    def _run(self, dsn, tmp_path, monkeypatch, *extra):
        monkeypatch.chdir(tmp_path)
        with patch(
            "federation_sync.cli.cities_by_zip_code",
            return_value=[City("Saint-Étienne", "42218")],
        ) as lookup:
            result = CliRunner().invoke(main, [
                "--mode", "insee_backfill", "--db-dsn", dsn, "--run-id", "insee-run", *extra,
            ])
        return result, lookup

    def test_fills_missing_insee(self, conn, store, db_conn, tmp_path, monkeypatch):
        _, dsn = db_conn
        record = _insert(store, _new(metadata=Metadata(city="Saint-Etienne", zip_code="42000")))
        result, lookup = self._run(dsn, tmp_path, monkeypatch)
        assert result.exit_code == 0, result.output
        assert lookup.call_count == 1
        conn.rollback()
        stored = store.get(record.key)
        assert stored.parsed_metadata().insee == "42218"
        assert stored.version == 2
        report = json.loads((tmp_path / "artifacts" / "reports" / "insee-run.json").read_text())
        assert report["counters"]["insee_filled"] == 1

    def test_dry_run_writes_nothing(self, conn, store, db_conn, tmp_path, monkeypatch):
        _, dsn = db_conn
        record = _insert(store, _new(metadata=Metadata(city="Saint-Etienne", zip_code="42000")))
        result, _ = self._run(dsn, tmp_path, monkeypatch, "--dry-run")
        assert result.exit_code == 0, result.output
        conn.rollback()
        assert store.get(record.key).parsed_metadata().insee is None
