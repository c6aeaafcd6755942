"""
Unit tests for storage layer.

Tests schema creation, record retrieval, and compare-and-swap semantics.
"""

import os
import tempfile
from decimal import Decimal

import pytest

from usage_guard.storage.db import get_connection
from usage_guard.storage.models import UsageRecord
from usage_guard.storage.repository import (
    InMemoryUsageStore,
    SQLiteUsageStore,
    StorageUnavailable,
    UsageStore,
)

PERIOD = "2024-03-14"


class TestUsageRecord:
    """Test the usage record value type."""

    def test_empty_record(self):
        record = UsageRecord.empty("u1", PERIOD)

        assert record.units_consumed == 0
        assert record.cost_accrued == Decimal("0")
        assert record.is_empty

    def test_record_with_cost_is_not_empty(self):
        assert not UsageRecord("u1", PERIOD, 0, Decimal("0.01")).is_empty

    def test_negative_units_rejected(self):
        with pytest.raises(ValueError, match="units_consumed cannot be negative"):
            UsageRecord("u1", PERIOD, units_consumed=-1)

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError, match="cost_accrued cannot be negative"):
            UsageRecord("u1", PERIOD, units_consumed=1, cost_accrued=Decimal("-0.01"))

    def test_record_is_immutable(self):
        record = UsageRecord("u1", PERIOD, units_consumed=5)

        with pytest.raises(AttributeError):
            record.units_consumed = 10


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify table is created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            SQLiteUsageStore(db_path).initialize_schema()

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name='usage_record'
                """)
                tables = cursor.fetchall()
                assert len(tables) == 1

                cursor = conn.execute("PRAGMA table_info(usage_record)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'user_id', 'period_key', 'units_consumed', 'cost_accrued', 'updated_at'
                ]
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        """Initializing twice leaves existing records in place."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SQLiteUsageStore(os.path.join(temp_dir, "test.db"))
            store.initialize_schema()
            store.compare_and_swap(
                UsageRecord.empty("u1", PERIOD),
                UsageRecord("u1", PERIOD, 1000, Decimal("0.01")),
            )

            store.initialize_schema()

            assert store.get("u1", PERIOD).units_consumed == 1000


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path):
    """Each store backend, ready for use."""
    if request.param == "sqlite":
        sqlite_store = SQLiteUsageStore(str(tmp_path / "test.db"))
        sqlite_store.initialize_schema()
        return sqlite_store
    return InMemoryUsageStore()


class TestCompareAndSwap:
    """Test atomic conditional upsert semantics shared by all backends."""

    def test_satisfies_protocol(self, store):
        assert isinstance(store, UsageStore)

    def test_get_missing_returns_none(self, store):
        assert store.get("u1", PERIOD) is None

    def test_insert_when_missing(self, store):
        """An empty expected record matches a missing row."""
        new = UsageRecord("u1", PERIOD, 300000, Decimal("3.00"))

        assert store.compare_and_swap(UsageRecord.empty("u1", PERIOD), new) is True
        assert store.get("u1", PERIOD) == new

    def test_update_when_expected_matches(self, store):
        first = UsageRecord("u1", PERIOD, 1000, Decimal("0.01"))
        second = UsageRecord("u1", PERIOD, 3000, Decimal("0.03"))
        store.compare_and_swap(UsageRecord.empty("u1", PERIOD), first)

        assert store.compare_and_swap(first, second) is True

        stored = store.get("u1", PERIOD)
        assert stored.units_consumed == 3000
        assert stored.cost_accrued == Decimal("0.03")

    def test_stale_insert_is_rejected(self, store):
        """A second writer that also saw no record loses."""
        empty = UsageRecord.empty("u1", PERIOD)
        store.compare_and_swap(empty, UsageRecord("u1", PERIOD, 1000, Decimal("0.01")))

        assert store.compare_and_swap(empty, UsageRecord("u1", PERIOD, 2000, Decimal("0.02"))) is False
        assert store.get("u1", PERIOD).units_consumed == 1000

    def test_stale_update_is_rejected(self, store):
        """A writer holding an outdated read loses and changes nothing."""
        first = UsageRecord("u1", PERIOD, 1000, Decimal("0.01"))
        second = UsageRecord("u1", PERIOD, 2000, Decimal("0.02"))
        store.compare_and_swap(UsageRecord.empty("u1", PERIOD), first)
        store.compare_and_swap(first, second)

        stale = UsageRecord("u1", PERIOD, 5000, Decimal("0.05"))
        assert store.compare_and_swap(first, stale) is False
        assert store.get("u1", PERIOD).units_consumed == 2000

    def test_cost_mismatch_is_rejected(self, store):
        """Matching units with a different cost is still a conflict."""
        stored = UsageRecord("u1", PERIOD, 1000, Decimal("0.01"))
        store.compare_and_swap(UsageRecord.empty("u1", PERIOD), stored)

        repriced = UsageRecord("u1", PERIOD, 1000, Decimal("0.02"))
        assert store.compare_and_swap(repriced, UsageRecord("u1", PERIOD, 2000, Decimal("0.04"))) is False
        assert store.get("u1", PERIOD) == stored

    def test_keys_are_independent(self, store):
        """Users and periods never share a record."""
        empty = UsageRecord.empty("u1", PERIOD)
        store.compare_and_swap(empty, UsageRecord("u1", PERIOD, 1000, Decimal("0.01")))

        assert store.compare_and_swap(
            UsageRecord.empty("u2", PERIOD), UsageRecord("u2", PERIOD, 7, Decimal("0.00007"))
        ) is True
        assert store.compare_and_swap(
            UsageRecord.empty("u1", "2024-03-15"), UsageRecord("u1", "2024-03-15", 9, Decimal("0.00009"))
        ) is True
        assert store.get("u1", PERIOD).units_consumed == 1000

    def test_mismatched_keys_rejected(self, store):
        with pytest.raises(ValueError, match="same user and period"):
            store.compare_and_swap(
                UsageRecord.empty("u1", PERIOD),
                UsageRecord("u2", PERIOD, 1, Decimal("0.00001")),
            )


class TestSQLiteFailures:
    """Test backend errors surface as StorageUnavailable."""

    def test_missing_table(self, tmp_path):
        """Reading before the schema exists is a storage failure."""
        store = SQLiteUsageStore(str(tmp_path / "empty.db"))

        with pytest.raises(StorageUnavailable):
            store.get("u1", PERIOD)

    def test_unopenable_database(self, tmp_path):
        """A path inside a missing directory cannot be opened."""
        store = SQLiteUsageStore(str(tmp_path / "missing" / "dir" / "test.db"))

        with pytest.raises(StorageUnavailable):
            store.initialize_schema()

    def test_cost_stored_as_text(self, tmp_path):
        """Cost is persisted as decimal text, not a float."""
        db_path = str(tmp_path / "test.db")
        store = SQLiteUsageStore(db_path)
        store.initialize_schema()
        store.compare_and_swap(
            UsageRecord.empty("u1", PERIOD),
            UsageRecord("u1", PERIOD, 1234, Decimal("0.0169058")),
        )

        conn = get_connection(db_path)
        try:
            row = conn.execute("SELECT cost_accrued, typeof(cost_accrued) FROM usage_record").fetchone()
        finally:
            conn.close()
        assert row == ("0.0169058", "text")
