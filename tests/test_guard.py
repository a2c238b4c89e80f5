"""
Tests for the request-boundary facade.
"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta

import pytest

from abuse_guard.config.loader import GuardConfig, RateLimitConfig, RateWindow
from abuse_guard.core.errors import ForbiddenError, RateLimitedError, UnauthorizedError
from abuse_guard.core.guard import AbuseGuard, RequestContext
from abuse_guard.core.rate_limiter import MemoryCounterStore
from abuse_guard.core.usage import API_CALL_USAGE
from abuse_guard.storage.models import Severity


class FakeClock:

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class GuardTestCase:

    user_per_minute = 1
    ip_per_minute = 100

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        config = GuardConfig(
            db_path=os.path.join(self.temp_dir, "test.db"),
            rate_limits=RateLimitConfig(
                user_windows=(RateWindow("per_minute", self.user_per_minute, 60),),
                ip_windows=(RateWindow("per_minute", self.ip_per_minute, 60),),
            ),
        )
        self.clock = FakeClock(datetime(2024, 8, 1, 22, 0, 0))
        self.guard = AbuseGuard(config, counter_store=MemoryCounterStore(), clock=self.clock)
        self.guard.initialize()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestGateRequest(GuardTestCase):

    def test_clean_request_passes(self):
        self.guard.gate_request(RequestContext("1.1.1.1", "u1"))

    def test_banned_ip_rejected(self):
        self.guard.ip_bans.ban_subject("1.1.1.1", "abuse")

        with pytest.raises(ForbiddenError) as exc:
            self.guard.gate_request(RequestContext("1.1.1.1", "u1"))

        assert exc.value.message == "IP address is banned"
        assert exc.value.status_code == 403

    def test_banned_user_rejected_from_any_ip(self):
        self.guard.user_bans.ban_subject("u1", "abuse")

        with pytest.raises(ForbiddenError) as exc:
            self.guard.gate_request(RequestContext("8.8.8.8", "u1"))

        assert exc.value.message == "User is banned"

    def test_expired_ban_no_longer_rejects(self):
        self.guard.ip_bans.ban_subject("1.1.1.1", "abuse", duration_minutes=5)
        self.clock.advance(minutes=6)
        self.guard.gate_request(RequestContext("1.1.1.1"))

    def test_rate_limited(self):
        ctx = RequestContext("1.1.1.1", "u1", "pytest")
        self.guard.gate_request(ctx)

        with pytest.raises(RateLimitedError) as exc:
            self.guard.gate_request(ctx)

        assert exc.value.status_code == 429
        assert exc.value.limit_type == "user_per_minute"
        assert exc.value.retry_after == 60

        rows = self.guard.store.query("security_events")
        assert rows[0]["event_type"] == "rate_limit_exceeded"
        assert rows[0]["severity"] == Severity.MEDIUM.value
        assert rows[0]["metadata"]["limit_type"] == "user_per_minute"
        assert rows[0]["user_agent"] == "pytest"

    def test_repeated_violations_ban_the_user(self):
        ctx = RequestContext("1.1.1.1", "u1")
        self.guard.gate_request(ctx)
        for _ in range(3):
            with pytest.raises(RateLimitedError):
                self.guard.gate_request(ctx)

        assert self.guard.user_bans.is_banned("u1") is True
        assert self.guard.ip_bans.is_banned("1.1.1.1") is False
        with pytest.raises(ForbiddenError):
            self.guard.gate_request(ctx)

        ban = self.guard.user_bans.get_ban_details("u1")
        assert ban.expires_at == self.clock.now + timedelta(minutes=60)
        assert ban.reason.startswith("Auto-banned for rate_limit_exceeded")


class TestIPAutoBan(GuardTestCase):

    ip_per_minute = 1

    def test_repeated_anonymous_violations_ban_the_ip(self):
        ctx = RequestContext("6.6.6.6")
        self.guard.gate_request(ctx)
        for _ in range(5):
            with pytest.raises(RateLimitedError):
                self.guard.gate_request(ctx)

        assert self.guard.ip_bans.is_banned("6.6.6.6") is True
        with pytest.raises(ForbiddenError):
            self.guard.gate_request(ctx)
        self.guard.gate_request(RequestContext("7.7.7.7"))

    def test_four_violations_do_not_ban(self):
        ctx = RequestContext("6.6.6.6")
        self.guard.gate_request(ctx)
        for _ in range(4):
            with pytest.raises(RateLimitedError):
                self.guard.gate_request(ctx)
        assert self.guard.ip_bans.is_banned("6.6.6.6") is False


class TestChargeQuota(GuardTestCase):

    def test_charge(self):
        decision = self.guard.charge_quota(RequestContext("1.1.1.1", "u1"), 1)
        assert decision.allowed is True
        assert decision.new_count == 1

    def test_anonymous_rejected(self):
        with pytest.raises(UnauthorizedError):
            self.guard.charge_quota(RequestContext("1.1.1.1"), 1)

    def test_level_zero_forbidden(self):
        with pytest.raises(ForbiddenError) as exc:
            self.guard.charge_quota(RequestContext("1.1.1.1", "u1"), 0)
        assert exc.value.message == "Trust level insufficient for AI services"
        assert self.guard.store.count("daily_usage") == 0

    def test_exhausted_quota_retries_after_midnight(self):
        ctx = RequestContext("1.1.1.1", "u1")
        for _ in range(40):
            self.guard.charge_quota(ctx, 1)

        with pytest.raises(RateLimitedError) as exc:
            self.guard.charge_quota(ctx, 1)

        assert exc.value.message == "Daily limit exceeded"
        assert exc.value.retry_after == 2 * 3600
        assert exc.value.limit_type == "conversation_count"

    def test_quota_denial_does_not_auto_ban(self):
        ctx = RequestContext("1.1.1.1", "u1")
        for _ in range(40):
            self.guard.charge_quota(ctx, 1)
        for _ in range(5):
            with pytest.raises(RateLimitedError):
                self.guard.charge_quota(ctx, 1)

        assert self.guard.user_bans.is_banned("u1") is False
        assert self.guard.ip_bans.is_banned("1.1.1.1") is False

    def test_quota_denials_do_not_count_toward_rate_limit_ban(self):
        ctx = RequestContext("1.1.1.1", "u1")
        for _ in range(40):
            self.guard.charge_quota(ctx, 1)
        for _ in range(3):
            with pytest.raises(RateLimitedError):
                self.guard.charge_quota(ctx, 1)

        self.guard.gate_request(ctx)
        with pytest.raises(RateLimitedError):
            self.guard.gate_request(ctx)

        assert self.guard.user_bans.is_banned("u1") is False
        rows = self.guard.store.query("security_events", {"event_type": "usage_limit_exceeded"})
        assert len(rows) == 3

    def test_rollback(self):
        ctx = RequestContext("1.1.1.1", "u1")
        self.guard.charge_quota(ctx, 1, API_CALL_USAGE)
        self.guard.charge_quota(ctx, 1, API_CALL_USAGE)

        self.guard.rollback_quota(ctx, API_CALL_USAGE)

        check = self.guard.usage.get_user_limit_info("u1", 1)["info"]
        assert check["daily_limits"][API_CALL_USAGE]["current"] == 1

    def test_rollback_anonymous_is_noop(self):
        self.guard.rollback_quota(RequestContext("1.1.1.1"))

    def test_seconds_until_reset_at_least_one(self):
        self.clock.now = datetime(2024, 8, 1, 23, 59, 59, 900000)
        assert self.guard.seconds_until_reset() == 1
