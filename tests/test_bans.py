"""
Tests for IP and user ban management.
"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from abuse_guard.config.loader import AutoBanRule
from abuse_guard.core.bans import SYSTEM_ADDRESS, BanManager, BanPage, IPBanManager, UserBanManager
from abuse_guard.core.errors import StoreError
from abuse_guard.core.events import SecurityEventLogger
from abuse_guard.storage.models import BanType, EventType, SecurityEvent, Severity
from abuse_guard.storage.repository import initialize_schema


class FakeClock:

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class BanTestCase:
    """Shared fixture: a fresh store, event logger and both managers."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = initialize_schema(os.path.join(self.temp_dir, "test.db"))
        self.clock = FakeClock(datetime(2024, 6, 1, 10, 0, 0))
        self.events = SecurityEventLogger(self.store, clock=self.clock)
        self.ip_bans = IPBanManager(self.store, self.events, clock=self.clock)
        self.user_bans = UserBanManager(self.store, self.events, clock=self.clock)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def log(self, count, event_type=EventType.RATE_LIMIT_EXCEEDED, ip="1.1.1.1", user_id=None):
        for _ in range(count):
            self.events.log_security_event(SecurityEvent(
                ip_address=ip,
                user_id=user_id,
                event_type=event_type,
                severity=Severity.LOW,
                description="test",
            ))

    def maintenance_events(self):
        return self.store.query("security_events", {"event_type": EventType.SYSTEM_MAINTENANCE}, order_by="id")


class TestBanLifecycle(BanTestCase):

    def test_unbanned_by_default(self):
        assert self.ip_bans.is_banned("1.1.1.1") is False
        assert self.ip_bans.get_ban_details("1.1.1.1") is None

    def test_manual_ban(self):
        result = self.ip_bans.ban_subject("1.1.1.1", "spam", duration_minutes=30, severity=Severity.HIGH, actor_id="admin")

        assert result.success is True
        assert result.data.ban_type is BanType.MANUAL
        assert result.data.expires_at == self.clock.now + timedelta(minutes=30)
        assert result.data.id is not None
        assert self.ip_bans.is_banned("1.1.1.1") is True

        details = self.ip_bans.get_ban_details("1.1.1.1")
        assert details.subject == "1.1.1.1"
        assert details.reason == "spam"
        assert details.severity is Severity.HIGH
        assert details.banned_by == "admin"

    def test_ban_without_actor_is_automatic(self):
        result = self.user_bans.ban_subject("u1", "rule hit")
        assert result.data.ban_type is BanType.AUTOMATIC
        assert result.data.banned_by is None

    def test_zero_duration_is_permanent(self):
        result = self.ip_bans.ban_subject("1.1.1.1", "spam", actor_id="admin")
        assert result.data.is_permanent
        self.clock.advance(days=365)
        assert self.ip_bans.is_banned("1.1.1.1") is True

    def test_double_ban_conflicts(self):
        self.ip_bans.ban_subject("1.1.1.1", "spam", actor_id="admin")

        result = self.ip_bans.ban_subject("1.1.1.1", "again", actor_id="admin")

        assert result.success is False
        assert result.status_code == 409
        assert self.store.count("ip_bans", {"ip_address": "1.1.1.1"}) == 1

    def test_unban(self):
        self.user_bans.ban_subject("u1", "abuse", actor_id="admin")

        result = self.user_bans.unban_subject("u1", "appeal accepted")

        assert result.success is True
        assert result.data.is_active is False
        assert result.data.unban_reason == "appeal accepted"
        assert self.user_bans.is_banned("u1") is False
        row = self.store.query("user_bans", {"user_id": "u1"})[0]
        assert row["unbanned_at"] == self.clock.now

    def test_unban_without_ban_conflicts(self):
        result = self.ip_bans.unban_subject("1.1.1.1")
        assert result.success is False
        assert result.status_code == 409

    def test_double_unban_conflicts(self):
        self.ip_bans.ban_subject("1.1.1.1", "spam", actor_id="admin")
        assert self.ip_bans.unban_subject("1.1.1.1").success
        assert self.ip_bans.unban_subject("1.1.1.1").status_code == 409

    def test_ban_after_unban(self):
        self.ip_bans.ban_subject("1.1.1.1", "spam", actor_id="admin")
        self.ip_bans.unban_subject("1.1.1.1")
        assert self.ip_bans.ban_subject("1.1.1.1", "spam again", actor_id="admin").success

    def test_invalid_input(self):
        assert self.ip_bans.ban_subject("", "spam").status_code == 400
        assert self.ip_bans.ban_subject("1.1.1.1", "spam", duration_minutes=-5).status_code == 400
        assert self.ip_bans.unban_subject("").status_code == 400

    def test_ip_and_user_bans_are_independent(self):
        self.ip_bans.ban_subject("u1", "odd but allowed", actor_id="admin")
        assert self.user_bans.is_banned("u1") is False

    def test_manual_actions_write_maintenance_events(self):
        self.ip_bans.ban_subject("1.1.1.1", "spam", actor_id="admin")
        self.ip_bans.unban_subject("1.1.1.1", "mistake", actor_id="admin")
        self.user_bans.ban_subject("u1", "abuse", actor_id="admin")

        rows = self.maintenance_events()
        assert [r["description"] for r in rows] == [
            "IP manually banned: spam",
            "IP unbanned: mistake",
            "User manually banned: abuse",
        ]
        assert rows[0]["ip_address"] == "1.1.1.1"
        assert rows[0]["metadata"]["admin_id"] == "admin"
        assert rows[2]["ip_address"] == SYSTEM_ADDRESS
        assert rows[2]["user_id"] == "u1"
        assert all(r["severity"] == "low" for r in rows)

    def test_store_failure_returns_result(self):
        store = MagicMock()
        store.call_procedure.side_effect = StoreError("down")
        store.query.side_effect = StoreError("down")
        manager = IPBanManager(store, SecurityEventLogger(store), clock=self.clock)

        result = manager.ban_subject("1.1.1.1", "spam", actor_id="admin")

        assert result.success is False
        assert result.status_code == 500
        assert result.error == "Storage error"
        assert manager.is_banned("1.1.1.1") is False
        assert manager.get_ban_details("1.1.1.1") is None
        assert manager.list_bans() == BanPage()
        assert "error" in manager.get_ban_stats()


class TestExpiry(BanTestCase):
    """Every read path agrees on whether a timed ban has run out."""

    def test_expired_ban_is_not_active_anywhere(self):
        self.ip_bans.ban_subject("1.1.1.1", "spam", duration_minutes=30, actor_id="admin")
        self.clock.advance(minutes=30)

        assert self.ip_bans.is_banned("1.1.1.1") is False
        assert self.ip_bans.get_ban_details("1.1.1.1") is None
        page = self.ip_bans.list_bans()
        assert page.records == []
        assert page.total == 0

    def test_read_sweeps_expired_rows(self):
        self.ip_bans.ban_subject("1.1.1.1", "spam", duration_minutes=30, actor_id="admin")
        self.clock.advance(minutes=31)

        self.ip_bans.is_banned("1.1.1.1")

        row = self.store.query("ip_bans")[0]
        assert row["is_active"] is False
        assert row["unban_reason"] == "expired"

    def test_rebanning_after_expiry(self):
        self.user_bans.ban_subject("u1", "abuse", duration_minutes=5, actor_id="admin")
        self.clock.advance(minutes=10)

        assert self.user_bans.ban_subject("u1", "abuse again", actor_id="admin").success
        assert self.store.count("user_bans", {"user_id": "u1"}) == 2

    def test_unban_after_expiry_conflicts(self):
        self.ip_bans.ban_subject("1.1.1.1", "spam", duration_minutes=5, actor_id="admin")
        self.clock.advance(minutes=10)
        assert self.ip_bans.unban_subject("1.1.1.1").status_code == 409

    def test_sweep_expired(self):
        self.ip_bans.ban_subject("1.1.1.1", "a", duration_minutes=5, actor_id="admin")
        self.ip_bans.ban_subject("2.2.2.2", "b", duration_minutes=60, actor_id="admin")
        self.ip_bans.ban_subject("3.3.3.3", "c", actor_id="admin")
        self.clock.advance(minutes=10)

        assert self.ip_bans.sweep_expired() == 1
        assert self.ip_bans.sweep_expired() == 0


class TestListingAndStats(BanTestCase):

    def test_list_bans_newest_first(self):
        for i in range(3):
            self.ip_bans.ban_subject(f"10.0.0.{i}", "spam", actor_id="admin")
            self.clock.advance(minutes=1)

        page = self.ip_bans.list_bans(page=1, limit=2)
        assert page.total == 3
        assert [r.subject for r in page.records] == ["10.0.0.2", "10.0.0.1"]
        assert [r.subject for r in self.ip_bans.list_bans(page=2, limit=2).records] == ["10.0.0.0"]

    def test_ban_stats(self):
        self.ip_bans.ban_subject("1.1.1.1", "a", actor_id="admin")
        self.ip_bans.ban_subject("2.2.2.2", "b", severity=Severity.HIGH)
        self.ip_bans.unban_subject("2.2.2.2")

        stats = self.ip_bans.get_ban_stats()

        assert stats["total_active"] == 1
        assert stats["total_inactive"] == 1
        assert stats["by_type"] == {"manual": 1, "automatic": 1}
        assert stats["by_severity"] == {"medium": 1, "high": 1}
        assert stats["recent"] == 2


class TestAutoBan(BanTestCase):

    def test_ip_auto_ban_at_threshold(self):
        self.log(4)
        self.ip_bans.check_and_auto_ban("1.1.1.1")
        assert self.ip_bans.is_banned("1.1.1.1") is False

        self.log(1)
        self.ip_bans.check_and_auto_ban("1.1.1.1")

        details = self.ip_bans.get_ban_details("1.1.1.1")
        assert details.ban_type is BanType.AUTOMATIC
        assert details.severity is Severity.MEDIUM
        assert details.expires_at == self.clock.now + timedelta(minutes=30)
        assert details.metadata["event_count"] == 5

    def test_ip_lookback_window(self):
        self.log(3)
        self.clock.advance(minutes=11)
        self.log(3)
        self.ip_bans.check_and_auto_ban("1.1.1.1")
        assert self.ip_bans.is_banned("1.1.1.1") is False

    def test_user_auto_ban(self):
        self.log(3, ip="5.5.5.5", user_id="u1")
        self.user_bans.check_and_auto_ban("u1")

        details = self.user_bans.get_ban_details("u1")
        assert details.expires_at == self.clock.now + timedelta(minutes=60)
        # Three events are below the IP threshold.
        assert self.ip_bans.is_banned("5.5.5.5") is False

    def test_auto_ban_only_once(self):
        self.log(10)
        self.ip_bans.check_and_auto_ban("1.1.1.1")
        self.ip_bans.check_and_auto_ban("1.1.1.1")

        assert self.store.count("ip_bans", {"ip_address": "1.1.1.1"}) == 1
        automatic = [r for r in self.maintenance_events() if "automatically" in r["description"]]
        assert len(automatic) == 1
        assert automatic[0]["severity"] == "medium"

    def test_manual_ban_not_replaced(self):
        self.ip_bans.ban_subject("1.1.1.1", "manual", actor_id="admin")
        self.log(10)
        self.ip_bans.check_and_auto_ban("1.1.1.1")
        assert self.ip_bans.get_ban_details("1.1.1.1").ban_type is BanType.MANUAL

    def test_first_matching_rule_wins(self):
        rules = (
            AutoBanRule(EventType.INVALID_INPUT, 2, 10, 15, Severity.LOW),
            AutoBanRule(EventType.BRUTE_FORCE_ATTEMPT, 1, 10, 0, Severity.CRITICAL),
        )
        manager = IPBanManager(self.store, self.events, rules=rules, clock=self.clock)
        self.log(2, EventType.INVALID_INPUT)
        self.log(1, EventType.BRUTE_FORCE_ATTEMPT)

        manager.check_and_auto_ban("1.1.1.1")

        details = manager.get_ban_details("1.1.1.1")
        assert details.severity is Severity.LOW
        assert details.expires_at == self.clock.now + timedelta(minutes=15)

    def test_permanent_rule(self):
        self.log(2, EventType.DATA_INJECTION_ATTEMPT)
        self.ip_bans.check_and_auto_ban("1.1.1.1")
        details = self.ip_bans.get_ban_details("1.1.1.1")
        assert details.is_permanent
        assert details.severity is Severity.CRITICAL

    def test_auto_ban_after_expiry(self):
        self.log(5)
        self.ip_bans.check_and_auto_ban("1.1.1.1")
        self.clock.advance(minutes=31)
        assert self.ip_bans.is_banned("1.1.1.1") is False

        self.log(5)
        self.ip_bans.check_and_auto_ban("1.1.1.1")
        assert self.ip_bans.is_banned("1.1.1.1") is True


class TestUsageEventsDoNotBan(BanTestCase):

    def test_usage_limit_events_are_not_rate_limit_events(self):
        self.log(10, EventType.USAGE_LIMIT_EXCEEDED, user_id="u1")

        self.ip_bans.check_and_auto_ban("1.1.1.1")
        self.user_bans.check_and_auto_ban("u1")

        assert self.ip_bans.is_banned("1.1.1.1") is False
        assert self.user_bans.is_banned("u1") is False


class TestBanManagerBase:

    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            BanManager(MagicMock(), MagicMock())
