"""
Daily usage quotas.

Charges a user's daily quota for metered operations (conversations, API
calls) against the limit of their trust level. The check and the increment
happen in one store procedure, so concurrent requests can never push a user
past the limit. Any failure denies the request.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from abuse_guard.config.trust_levels import TrustLevelTable
from abuse_guard.core.events import SecurityEventLogger
from abuse_guard.storage.models import EventType, SecurityEvent, Severity, UsageRecord
from abuse_guard.storage.repository import Store

logger = structlog.get_logger(__name__)

USAGE_TABLE = "daily_usage"

CONVERSATION_USAGE = "conversation_count"
API_CALL_USAGE = "api_call_count"

# Trust level limit field charged by each usage type; anything else counts
# against the conversation quota.
USAGE_LIMIT_FIELDS = {
    CONVERSATION_USAGE: "daily_conversations",
    API_CALL_USAGE: "daily_api_calls",
}

UNKNOWN_ADDRESS = "unknown"

ERROR_TRUST_LEVEL = "Trust level insufficient for AI services"
ERROR_LIMIT_EXCEEDED = "Daily limit exceeded"
ERROR_STORE = "Usage could not be verified"


@dataclass(frozen=True)
class UsageDecision:
    """Result of charging one unit of quota."""
    allowed: bool
    new_count: int
    limit: int
    error: Optional[str] = None


@dataclass(frozen=True)
class RollbackResult:
    success: bool
    new_count: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class UsageCheck:
    """Read-only view of a user's quota for today."""
    allowed: bool
    current_usage: int
    daily_limit: int
    remaining: int
    reset_time: datetime
    error: Optional[str] = None


class UsageManager:
    """Per-user daily quota enforcement backed by the store.

    Days follow the local calendar: usage is keyed by the local date and
    resets at local midnight.
    """

    def __init__(
        self,
        store: Store,
        trust_levels: Optional[TrustLevelTable] = None,
        events: Optional[SecurityEventLogger] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.trust_levels = trust_levels or TrustLevelTable()
        self.events = events
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    def next_reset_time(self) -> datetime:
        """Next local midnight."""
        return datetime.combine(self.today() + timedelta(days=1), time.min)

    def daily_limit(self, trust_level: int, usage_type: str = CONVERSATION_USAGE) -> int:
        limits = self.trust_levels.get(trust_level).limits
        return getattr(limits, USAGE_LIMIT_FIELDS.get(usage_type, "daily_conversations"))

    def check_and_record_usage(
        self,
        user_id: str,
        trust_level: int,
        usage_type: str = CONVERSATION_USAGE,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UsageDecision:
        """Atomically charge one unit of quota if the user is under the limit.

        Args:
            user_id: User to charge
            trust_level: The user's trust level, which selects the limit
            usage_type: Counter to charge
            ip_address: Client address, recorded on limit violations
            user_agent: Client user agent, recorded on limit violations

        Returns:
            UsageDecision. ``new_count`` is the count after charging, or the
            current count when denied.
        """
        limit = 0
        try:
            limit = self.daily_limit(trust_level, usage_type)
            if limit <= 0:
                return UsageDecision(allowed=False, new_count=0, limit=0, error=ERROR_TRUST_LEVEL)

            result = self.store.call_procedure("atomic_usage_check_and_increment", {
                "user_id": user_id,
                "usage_type": usage_type,
                "daily_limit": limit,
                "usage_date": self.today(),
                "now": self.clock(),
            })
            allowed = bool(result["allowed"])
            new_count = int(result["new_count"])
        except Exception:
            logger.exception("usage_check_failed", user_id=user_id, usage_type=usage_type)
            return UsageDecision(allowed=False, new_count=0, limit=limit, error=ERROR_STORE)

        if allowed:
            return UsageDecision(allowed=True, new_count=new_count, limit=limit)

        logger.info("usage_limit_reached", user_id=user_id, usage_type=usage_type, limit=limit)
        self._log_violation(user_id, trust_level, usage_type, new_count + 1, limit, ip_address, user_agent)
        return UsageDecision(allowed=False, new_count=new_count, limit=limit, error=ERROR_LIMIT_EXCEEDED)

    def rollback_usage(self, user_id: str, usage_type: str = CONVERSATION_USAGE) -> RollbackResult:
        """Give back one unit charged earlier today, never going below zero."""
        try:
            new_count = self.store.call_procedure("decrement_usage_count", {
                "user_id": user_id,
                "usage_type": usage_type,
                "usage_date": self.today(),
            })
        except Exception:
            logger.exception("usage_rollback_failed", user_id=user_id, usage_type=usage_type)
            return RollbackResult(success=False, error=ERROR_STORE)
        logger.info("usage_rolled_back", user_id=user_id, usage_type=usage_type, new_count=new_count)
        return RollbackResult(success=True, new_count=new_count)

    def _log_violation(
        self,
        user_id: str,
        trust_level: int,
        usage_type: str,
        attempted_usage: int,
        limit: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        if self.events is None:
            return
        # Not rate_limit_exceeded: quota denials never feed the auto-ban rules.
        self.events.log_security_event(SecurityEvent(
            ip_address=ip_address or UNKNOWN_ADDRESS,
            user_id=user_id,
            user_agent=user_agent,
            event_type=EventType.USAGE_LIMIT_EXCEEDED,
            severity=Severity.LOW,
            description=f"Daily {usage_type} limit of {limit} exceeded",
            metadata={
                "trust_level": trust_level,
                "usage_type": usage_type,
                "attempted_usage": attempted_usage,
                "daily_limit": limit,
            },
        ))

    # -- read-only views -------------------------------------------------------

    def _usage_records(self, filters: Dict[str, Any], order_by: Optional[str] = None) -> List[UsageRecord]:
        return [
            UsageRecord(
                user_id=row["user_id"],
                usage_date=row["usage_date"],
                usage_type=row["usage_type"],
                count=row["count"],
            )
            for row in self.store.query(USAGE_TABLE, filters, order_by=order_by)
        ]

    def _today_count(self, user_id: str, usage_type: str) -> int:
        records = self._usage_records({
            "user_id": user_id,
            "usage_date": self.today(),
            "usage_type": usage_type,
        })
        return records[0].count if records else 0

    def check_conversation_limit(self, user_id: str, trust_level: int) -> UsageCheck:
        """Preview whether a conversation would be allowed, without charging."""
        reset_time = self.next_reset_time()
        limit = self.daily_limit(trust_level, CONVERSATION_USAGE)
        if limit <= 0:
            return UsageCheck(False, 0, 0, 0, reset_time, error=ERROR_TRUST_LEVEL)
        try:
            current = self._today_count(user_id, CONVERSATION_USAGE)
        except Exception:
            logger.exception("usage_read_failed", user_id=user_id)
            return UsageCheck(False, 0, limit, 0, reset_time, error=ERROR_STORE)
        return UsageCheck(
            allowed=current < limit,
            current_usage=current,
            daily_limit=limit,
            remaining=max(0, limit - current),
            reset_time=reset_time,
        )

    def get_user_usage_stats(self, user_id: str, days: int = 7) -> Dict[str, Any]:
        """Per-day counters for the last ``days`` days, today included."""
        start = self.today() - timedelta(days=days - 1)
        try:
            records = self._usage_records(
                {"user_id": user_id, "usage_date__gte": start},
                order_by="usage_date",
            )
        except Exception:
            logger.exception("usage_stats_failed", user_id=user_id)
            return {"success": False, "error": ERROR_STORE}

        totals: Dict[str, int] = {}
        daily: Dict[str, Dict[str, int]] = {}
        for record in records:
            totals[record.usage_type] = totals.get(record.usage_type, 0) + record.count
            daily.setdefault(record.usage_date.isoformat(), {})[record.usage_type] = record.count

        return {
            "success": True,
            "stats": {
                "totals": totals,
                "daily_stats": [{"date": day, **counts} for day, counts in daily.items()],
                "average_daily": {usage_type: round(total / days) for usage_type, total in totals.items()},
            },
        }

    def get_user_limit_info(self, user_id: str, trust_level: int) -> Dict[str, Any]:
        """Today's usage against every daily limit of the user's trust level."""
        config = self.trust_levels.get(trust_level)
        try:
            daily_limits = {}
            for usage_type in USAGE_LIMIT_FIELDS:
                current = self._today_count(user_id, usage_type)
                limit = self.daily_limit(trust_level, usage_type)
                daily_limits[usage_type] = {
                    "current": current,
                    "limit": limit,
                    "remaining": max(0, limit - current),
                }
        except Exception:
            logger.exception("usage_limit_info_failed", user_id=user_id)
            return {"success": False, "error": ERROR_STORE}

        return {
            "success": True,
            "info": {
                "trust_level": config.level,
                "trust_level_name": config.name,
                "daily_limits": daily_limits,
                "reset_time": self.next_reset_time(),
            },
        }
