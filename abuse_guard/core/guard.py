"""
Request-boundary facade.

``AbuseGuard`` builds every component from one ``GuardConfig`` and exposes
the two checks an inbound request goes through: ``gate_request`` (bans and
rate limits, for every request) and ``charge_quota`` (daily quota, for
metered operations billed to shared credentials). Unlike the components it
wraps, the facade raises ``GuardError`` subclasses so a web layer can map
them straight to HTTP responses.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from abuse_guard.config.loader import GuardConfig, default_guard_config
from abuse_guard.config.trust_levels import TrustLevelTable
from abuse_guard.core.bans import SYSTEM_ADDRESS, IPBanManager, UserBanManager
from abuse_guard.core.errors import ForbiddenError, RateLimitedError, UnauthorizedError
from abuse_guard.core.events import SecurityEventLogger
from abuse_guard.core.rate_limiter import CounterStore, SyncRateLimiter
from abuse_guard.core.usage import CONVERSATION_USAGE, UsageDecision, UsageManager
from abuse_guard.storage.models import EventType, SecurityEvent, Severity
from abuse_guard.storage.repository import SQLiteStore, Store

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Who is making the request. ``user_id`` is None for anonymous callers."""
    ip_address: str
    user_id: Optional[str] = None
    user_agent: Optional[str] = None


class AbuseGuard:
    """Wires the store, event logger, rate limiter, ban managers and quotas."""

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        store: Optional[Store] = None,
        counter_store: Optional[CounterStore] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or default_guard_config()
        self.clock = clock
        self.store = store if store is not None else SQLiteStore(self.config.db_path)
        self.events = SecurityEventLogger(self.store, clock=clock)
        self.rate_limiter = SyncRateLimiter(
            self.config.rate_limits,
            store=counter_store,
            clock=lambda: clock().timestamp(),
        )
        self.ip_bans = IPBanManager(self.store, self.events, self.config.ip_ban_rules, clock=clock)
        self.user_bans = UserBanManager(self.store, self.events, self.config.user_ban_rules, clock=clock)
        self.trust_levels = TrustLevelTable(self.config.trust_levels)
        self.usage = UsageManager(self.store, self.trust_levels, events=self.events, clock=clock)
        self.events.add_listener(self._auto_ban)

    def initialize(self) -> None:
        """Create the store schema."""
        self.store.initialize_schema()

    def _auto_ban(self, event: SecurityEvent) -> None:
        if event.ip_address and event.ip_address != SYSTEM_ADDRESS:
            self.ip_bans.check_and_auto_ban(event.ip_address)
        if event.user_id:
            self.user_bans.check_and_auto_ban(event.user_id)

    def gate_request(self, context: RequestContext) -> None:
        """Admit or reject a request before any work is done.

        Raises:
            ForbiddenError: If the IP or the user is banned
            RateLimitedError: If a rate limit window is full. The violation
                is recorded, which may trigger an automatic ban.
        """
        if self.ip_bans.is_banned(context.ip_address):
            logger.info("request_rejected_ip_banned", ip_address=context.ip_address)
            raise ForbiddenError("IP address is banned")
        if context.user_id and self.user_bans.is_banned(context.user_id):
            logger.info("request_rejected_user_banned", user_id=context.user_id)
            raise ForbiddenError("User is banned")

        decision = self.rate_limiter.check_sync_limit(context.user_id, context.ip_address)
        if decision.allowed:
            return

        # Logged at medium severity so the auto-ban listener evaluates both subjects.
        self.events.log_security_event(SecurityEvent(
            ip_address=context.ip_address,
            user_id=context.user_id,
            user_agent=context.user_agent,
            event_type=EventType.RATE_LIMIT_EXCEEDED,
            severity=Severity.MEDIUM,
            description=decision.reason or "Rate limit exceeded",
            metadata={"limit_type": decision.limit_type, "retry_after": decision.retry_after},
        ))
        raise RateLimitedError(decision.reason, retry_after=decision.retry_after or 1, limit_type=decision.limit_type)

    def charge_quota(
        self,
        context: RequestContext,
        trust_level: int,
        usage_type: str = CONVERSATION_USAGE,
    ) -> UsageDecision:
        """Charge one unit of the user's daily quota.

        Raises:
            UnauthorizedError: If the request has no user
            ForbiddenError: If the trust level grants no quota
            RateLimitedError: If the quota is exhausted or cannot be
                verified; ``retry_after`` counts down to the daily reset
        """
        if not context.user_id:
            raise UnauthorizedError()
        if self.usage.daily_limit(trust_level, usage_type) <= 0:
            raise ForbiddenError("Trust level insufficient for AI services")

        decision = self.usage.check_and_record_usage(
            context.user_id,
            trust_level,
            usage_type,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        if not decision.allowed:
            raise RateLimitedError(
                decision.error,
                retry_after=self.seconds_until_reset(),
                limit_type=usage_type,
            )
        return decision

    def rollback_quota(self, context: RequestContext, usage_type: str = CONVERSATION_USAGE) -> None:
        """Refund a unit charged by ``charge_quota`` after a downstream failure."""
        if not context.user_id:
            return
        result = self.usage.rollback_usage(context.user_id, usage_type)
        if not result.success:
            logger.error("quota_rollback_failed", user_id=context.user_id, usage_type=usage_type)

    def seconds_until_reset(self) -> int:
        return max(1, math.ceil((self.usage.next_reset_time() - self.clock()).total_seconds()))
