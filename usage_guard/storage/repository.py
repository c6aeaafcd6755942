"""
Repository pattern for data access.

Handles persistence of usage records behind a small store protocol with
swappable backends (SQLite, in-memory).
"""

import sqlite3
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord


class StorageUnavailable(Exception):
    """Raised when the backing store cannot be read or written."""


@runtime_checkable
class UsageStore(Protocol):
    """Persistence interface used by the usage guard.

    Implementations must make compare_and_swap atomic per
    (user_id, period_key); different keys are fully independent.
    """

    def get(self, user_id: str, period_key: str) -> Optional[UsageRecord]:
        """Return the stored record, or None if the period has no record yet."""
        ...

    def compare_and_swap(self, expected: UsageRecord, new: UsageRecord) -> bool:
        """Replace ``expected`` with ``new`` if the stored state still matches.

        Both units_consumed and cost_accrued must match the stored record.
        A missing record matches an empty ``expected``, in which case
        ``new`` is inserted.

        Returns:
            True if ``new`` was written, False if another writer got there first
        """
        ...


class SQLiteUsageStore:
    """SQLite-backed usage store.

    Every write is a single conditional statement, so the check against the
    previously read state and the write happen atomically inside SQLite.
    A fresh connection is opened per call, which makes one instance safe to
    share between request threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a locked database
        """
        self.db_path = db_path
        self.timeout = timeout

    def initialize_schema(self) -> None:
        """Create the usage_record table if it doesn't exist.

        Cost is stored as decimal text, never REAL, to keep accumulation exact.
        """
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS usage_record (
                    user_id TEXT NOT NULL,
                    period_key TEXT NOT NULL,
                    units_consumed INTEGER NOT NULL DEFAULT 0,
                    cost_accrued TEXT NOT NULL DEFAULT '0',
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, period_key)
                )
            """)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Failed to initialize schema: {e}") from e
        finally:
            conn.close()

    def get(self, user_id: str, period_key: str) -> Optional[UsageRecord]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT user_id, period_key, units_consumed, cost_accrued
                FROM usage_record
                WHERE user_id = ? AND period_key = ?
                """,
                (user_id, period_key),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Failed to read usage for {user_id}/{period_key}: {e}") from e
        finally:
            conn.close()

        if row is None:
            return None
        return UsageRecord(
            user_id=row[0],
            period_key=row[1],
            units_consumed=row[2],
            cost_accrued=Decimal(row[3]),
        )

    def compare_and_swap(self, expected: UsageRecord, new: UsageRecord) -> bool:
        _check_same_key(expected, new)
        updated_at = datetime.now(timezone.utc).isoformat()

        conn = self._connect()
        try:
            if expected.is_empty:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO usage_record
                    (user_id, period_key, units_consumed, cost_accrued, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (new.user_id, new.period_key, new.units_consumed,
                     str(new.cost_accrued), updated_at),
                )
                if cursor.rowcount == 1:
                    return True

            # Merge update: only the counters change, other columns are preserved
            cursor = conn.execute(
                """
                UPDATE usage_record
                SET units_consumed = ?, cost_accrued = ?, updated_at = ?
                WHERE user_id = ? AND period_key = ?
                  AND units_consumed = ? AND cost_accrued = ?
                """,
                (new.units_consumed, str(new.cost_accrued), updated_at,
                 new.user_id, new.period_key, expected.units_consumed,
                 str(expected.cost_accrued)),
            )
            return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise StorageUnavailable(
                f"Failed to write usage for {new.user_id}/{new.period_key}: {e}"
            ) from e
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open usage database {self.db_path}: {e}") from e


class InMemoryUsageStore:
    """Process-local usage store for tests and single-process deployments."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], UsageRecord] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, period_key: str) -> Optional[UsageRecord]:
        with self._lock:
            return self._records.get((user_id, period_key))

    def compare_and_swap(self, expected: UsageRecord, new: UsageRecord) -> bool:
        _check_same_key(expected, new)
        key = (new.user_id, new.period_key)

        with self._lock:
            current = self._records.get(key)
            if current is None:
                current = UsageRecord.empty(*key)
            if (current.units_consumed, current.cost_accrued) != (
                expected.units_consumed, expected.cost_accrued
            ):
                return False
            self._records[key] = new
            return True


def _check_same_key(expected: UsageRecord, new: UsageRecord) -> None:
    if (expected.user_id, expected.period_key) != (new.user_id, new.period_key):
        raise ValueError("compare_and_swap requires records for the same user and period")
