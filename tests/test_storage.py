"""
Unit tests for storage layer.

Tests schema creation, generic row operations and the stored procedures.
"""

import os
import shutil
import tempfile
import threading
from datetime import date, datetime, timedelta

import pytest

from abuse_guard.core.errors import ConflictError, StoreError
from abuse_guard.storage.db import get_connection
from abuse_guard.storage.models import BanType, EventType, Severity
from abuse_guard.storage.repository import SQLiteStore, format_timestamp, initialize_schema


def _ban_row(ip: str, banned_at: datetime, expires_at=None, is_active=True) -> dict:
    return {
        "ip_address": ip,
        "reason": "test",
        "severity": Severity.MEDIUM,
        "ban_type": BanType.MANUAL,
        "is_active": is_active,
        "banned_at": banned_at,
        "expires_at": expires_at,
        "banned_by": "admin",
    }


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify every table is created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                tables = {row[0] for row in cursor.fetchall()}
                assert {"security_events", "ip_bans", "user_bans", "daily_usage"} <= tables
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            store = initialize_schema(db_path)
            store.initialize_schema()
            assert store.count("security_events") == 0


class TestRowOperations:
    """Test insert, query, count and update."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = initialize_schema(os.path.join(self.temp_dir, "test.db"))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _event(self, ip: str, created_at: datetime, event_type=EventType.INVALID_INPUT) -> dict:
        return {
            "ip_address": ip,
            "event_type": event_type,
            "severity": Severity.LOW,
            "description": "test event",
            "metadata": {"path": "/api/chat", "attempt": 2},
            "created_at": created_at,
        }

    def test_insert_returns_generated_id(self):
        first = self.store.insert("security_events", self._event("1.1.1.1", datetime(2024, 1, 1)))
        second = self.store.insert("security_events", self._event("1.1.1.1", datetime(2024, 1, 2)))
        assert first["id"] is not None
        assert second["id"] == first["id"] + 1

    def test_query_decodes_values(self):
        created_at = datetime(2024, 1, 1, 12, 30, 0, 123)
        self.store.insert("security_events", self._event("1.1.1.1", created_at))

        rows = self.store.query("security_events")
        assert len(rows) == 1
        row = rows[0]
        assert row["created_at"] == created_at
        assert row["metadata"] == {"path": "/api/chat", "attempt": 2}
        assert row["event_type"] == "invalid_input"
        assert row["user_id"] is None

    def test_query_filters_order_and_limit(self):
        base = datetime(2024, 1, 1)
        for i in range(5):
            self.store.insert("security_events", self._event("1.1.1.1", base + timedelta(minutes=i)))
        self.store.insert("security_events", self._event("2.2.2.2", base))

        rows = self.store.query(
            "security_events",
            {"ip_address": "1.1.1.1", "created_at__gte": base + timedelta(minutes=2)},
            order_by="created_at",
            descending=True,
            limit=2,
        )
        assert [r["created_at"] for r in rows] == [base + timedelta(minutes=4), base + timedelta(minutes=3)]

    def test_count_with_null_filter(self):
        self.store.insert("security_events", self._event("1.1.1.1", datetime(2024, 1, 1)))
        assert self.store.count("security_events", {"user_id": None}) == 1
        assert self.store.count("security_events", {"user_id__ne": None}) == 0

    def test_update_returns_changed_rows(self):
        now = datetime(2024, 1, 1)
        self.store.insert("ip_bans", _ban_row("1.1.1.1", now))
        changed = self.store.update("ip_bans", {"ip_address": "1.1.1.1"}, {"is_active": False})
        assert changed == 1
        assert self.store.query("ip_bans")[0]["is_active"] is False

    def test_unknown_table_raises_store_error(self):
        with pytest.raises(StoreError):
            self.store.query("users")

    def test_unknown_column_raises_store_error(self):
        with pytest.raises(StoreError):
            self.store.query("ip_bans", {"owner": "x"})
        with pytest.raises(StoreError):
            self.store.insert("ip_bans", {"owner": "x"})

    def test_store_error_hides_detail(self):
        with pytest.raises(StoreError) as exc_info:
            self.store.query("ip_bans", {"ip_address__like": "x"})
        assert exc_info.value.message == "Storage error"
        assert exc_info.value.status_code == 500

    def test_missing_schema_raises_store_error(self):
        store = SQLiteStore(os.path.join(self.temp_dir, "empty.db"))
        with pytest.raises(StoreError):
            store.count("ip_bans")

    def test_timestamps_sort_as_strings(self):
        assert format_timestamp(datetime(2024, 1, 1, 9)) < format_timestamp(datetime(2024, 1, 1, 10, 0, 0, 1))


class TestActiveBanConstraint:
    """At most one active ban per subject."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = initialize_schema(os.path.join(self.temp_dir, "test.db"))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_second_active_ban_conflicts(self):
        now = datetime(2024, 1, 1)
        self.store.insert("ip_bans", _ban_row("1.1.1.1", now))
        with pytest.raises(ConflictError):
            self.store.insert("ip_bans", _ban_row("1.1.1.1", now))

    def test_inactive_bans_do_not_conflict(self):
        now = datetime(2024, 1, 1)
        self.store.insert("ip_bans", _ban_row("1.1.1.1", now, is_active=False))
        self.store.insert("ip_bans", _ban_row("1.1.1.1", now, is_active=False))
        self.store.insert("ip_bans", _ban_row("1.1.1.1", now))
        assert self.store.count("ip_bans", {"ip_address": "1.1.1.1"}) == 3


class TestProcedures:
    """Test the stored procedures."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.store = initialize_schema(self.db_path)
        self.day = date(2024, 3, 1)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _increment(self, limit: int, user_id: str = "u1", store=None):
        return (store or self.store).call_procedure("atomic_usage_check_and_increment", {
            "user_id": user_id,
            "usage_type": "conversation_count",
            "daily_limit": limit,
            "usage_date": self.day,
        })

    def test_unknown_procedure(self):
        with pytest.raises(StoreError):
            self.store.call_procedure("drop_everything")

    def test_increment_up_to_limit(self):
        results = [self._increment(3) for _ in range(4)]
        assert [r["allowed"] for r in results] == [True, True, True, False]
        assert [r["new_count"] for r in results] == [1, 2, 3, 3]

    def test_increment_is_per_user_and_day(self):
        self._increment(1, "u1")
        assert self._increment(1, "u2")["allowed"] is True
        result = self.store.call_procedure("atomic_usage_check_and_increment", {
            "user_id": "u1",
            "usage_type": "conversation_count",
            "daily_limit": 1,
            "usage_date": self.day + timedelta(days=1),
        })
        assert result["allowed"] is True

    def test_decrement_floors_at_zero(self):
        self._increment(5)
        args = {"user_id": "u1", "usage_type": "conversation_count", "usage_date": self.day}
        assert self.store.call_procedure("decrement_usage_count", args) == 0
        assert self.store.call_procedure("decrement_usage_count", args) == 0

    def test_decrement_without_row(self):
        args = {"user_id": "nobody", "usage_type": "conversation_count", "usage_date": self.day}
        assert self.store.call_procedure("decrement_usage_count", args) == 0

    def test_concurrent_increments_never_overshoot(self):
        """Twenty threads racing for a limit of ten get exactly ten slots."""
        limit = 10
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def worker():
            store = SQLiteStore(self.db_path)
            barrier.wait()
            outcome = self._increment(limit, store=store)
            with lock:
                results.append(outcome["allowed"])

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == limit
        assert results.count(False) == 10
        rows = self.store.query("daily_usage", {"user_id": "u1"})
        assert rows[0]["count"] == limit

    def test_expire_bans(self):
        now = datetime(2024, 1, 1, 12)
        self.store.insert("ip_bans", _ban_row("1.1.1.1", now, expires_at=now - timedelta(minutes=1)))
        self.store.insert("ip_bans", _ban_row("2.2.2.2", now, expires_at=now + timedelta(minutes=1)))
        self.store.insert("ip_bans", _ban_row("3.3.3.3", now))

        expired = self.store.call_procedure("expire_bans", {"table": "ip_bans", "now": now})

        assert expired == 1
        row = self.store.query("ip_bans", {"ip_address": "1.1.1.1"})[0]
        assert row["is_active"] is False
        assert row["unban_reason"] == "expired"
        assert row["unbanned_at"] == now
        assert self.store.count("ip_bans", {"is_active": True}) == 2

    def test_ban_statistics(self):
        now = datetime(2024, 1, 2)
        self.store.insert("ip_bans", _ban_row("1.1.1.1", now))
        self.store.insert("ip_bans", _ban_row("2.2.2.2", now - timedelta(days=3), is_active=False))

        stats = self.store.call_procedure("ban_statistics", {"table": "ip_bans", "since": now - timedelta(days=1)})

        assert stats["total_active"] == 1
        assert stats["total_inactive"] == 1
        assert stats["by_type"] == {"manual": 2}
        assert stats["by_severity"] == {"medium": 2}
        assert stats["recent"] == 1

    def test_ban_procedures_reject_other_tables(self):
        with pytest.raises(StoreError):
            self.store.call_procedure("expire_bans", {"table": "security_events", "now": datetime.now()})
