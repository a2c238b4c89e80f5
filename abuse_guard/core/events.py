"""
Security event logging.

Appends security events to the store and exposes read helpers over the
recorded trail. Writing is fire-and-forget: a failure to record an event is
logged and never reaches the request that triggered it.
"""

from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from abuse_guard.storage.models import EventType, SecurityEvent, Severity
from abuse_guard.storage.repository import Store

logger = structlog.get_logger(__name__)

EVENTS_TABLE = "security_events"

# Trailing window and per-type thresholds for detect_suspicious_pattern.
SUSPICIOUS_LOOKBACK = timedelta(hours=1)
SUSPICIOUS_THRESHOLDS = {
    EventType.RATE_LIMIT_EXCEEDED: 5,
    EventType.INVALID_INPUT: 10,
    EventType.UNAUTHORIZED_ACCESS: 3,
}
SUSPICIOUS_TOTAL = 20

EventListener = Callable[[SecurityEvent], None]


def event_from_row(row: Dict[str, Any]) -> SecurityEvent:
    return SecurityEvent(
        id=row["id"],
        user_id=row["user_id"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        event_type=EventType(row["event_type"]),
        severity=Severity(row["severity"]),
        description=row["description"],
        metadata=row["metadata"] or {},
        created_at=row["created_at"],
    )


class SecurityEventLogger:
    """Append-only writer and reader for security events.

    Listeners registered through ``add_listener`` are called with every
    stored event of medium severity or above. The guard facade uses this to
    run automatic ban checks.
    """

    def __init__(self, store: Store, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock
        self.listeners: List[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        self.listeners.append(listener)

    def log_security_event(self, event: SecurityEvent) -> None:
        """Record an event. Never raises."""
        created_at = event.created_at or self.clock()
        try:
            row = self.store.insert(EVENTS_TABLE, {
                "user_id": event.user_id,
                "ip_address": event.ip_address,
                "user_agent": event.user_agent,
                "event_type": event.event_type,
                "severity": event.severity,
                "description": event.description,
                "metadata": event.metadata,
                "created_at": created_at,
            })
        except Exception:
            logger.exception(
                "security_event_write_failed",
                event_type=event.event_type.value,
                ip_address=event.ip_address,
                user_id=event.user_id,
            )
            return

        stored = replace(event, id=row.get("id"), created_at=created_at)
        logger.warning(
            "security_event",
            event_type=event.event_type.value,
            severity=event.severity.value,
            ip_address=event.ip_address,
            user_id=event.user_id,
            description=event.description,
        )

        if event.severity is Severity.CRITICAL:
            self._escalate(stored)
        if event.severity.rank >= Severity.MEDIUM.rank:
            self._notify(stored)

    def _escalate(self, event: SecurityEvent) -> None:
        # A critical event is mirrored as suspicious activity against its source.
        self.log_security_event(SecurityEvent(
            ip_address=event.ip_address,
            user_id=event.user_id,
            event_type=EventType.SUSPICIOUS_ACTIVITY,
            severity=Severity.HIGH,
            description=f"Critical security event detected from IP {event.ip_address}",
            metadata={"original_event_id": event.id, "original_event_type": event.event_type.value},
        ))

    def _notify(self, event: SecurityEvent) -> None:
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("security_event_listener_failed", event_type=event.event_type.value)

    # -- read helpers --------------------------------------------------------

    def count_events(
        self,
        event_type: EventType,
        since: datetime,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        """Count events of a type recorded at or after ``since``.

        Returns 0 when the store cannot be read.
        """
        filters: Dict[str, Any] = {"event_type": event_type, "created_at__gte": since}
        if ip_address is not None:
            filters["ip_address"] = ip_address
        if user_id is not None:
            filters["user_id"] = user_id
        try:
            return self.store.count(EVENTS_TABLE, filters)
        except Exception:
            logger.exception("security_event_count_failed", event_type=event_type.value)
            return 0

    def recent_events(
        self,
        since: datetime,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        filters: Dict[str, Any] = {"created_at__gte": since}
        if ip_address is not None:
            filters["ip_address"] = ip_address
        if user_id is not None:
            filters["user_id"] = user_id
        try:
            rows = self.store.query(EVENTS_TABLE, filters, order_by="created_at", descending=True, limit=limit)
        except Exception:
            logger.exception("security_event_query_failed")
            return []
        return [event_from_row(row) for row in rows]

    def detect_suspicious_pattern(
        self,
        user_id: Optional[str],
        ip_address: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Return True if the user or IP looks abusive over the last hour.

        Events are matched by user id or by IP address. Any per-type
        threshold, or the overall event count, is enough to flag.
        """
        since = (now or self.clock()) - SUSPICIOUS_LOOKBACK
        events: Dict[int, SecurityEvent] = {}
        for event in self.recent_events(since, ip_address=ip_address):
            events[event.id] = event
        if user_id:
            for event in self.recent_events(since, user_id=user_id):
                events[event.id] = event

        if len(events) >= SUSPICIOUS_TOTAL:
            return True
        counts = Counter(event.event_type for event in events.values())
        return any(counts[event_type] >= threshold for event_type, threshold in SUSPICIOUS_THRESHOLDS.items())

    def get_security_stats(self, days: int = 7) -> Dict[str, Any]:
        """Aggregate the events of the last ``days`` days.

        Returns:
            ``total_events``, ``events_by_type``, ``events_by_severity``,
            ``top_suspicious_ips`` (most events first) and ``daily_trends``
            keyed by ISO date; or ``{"error": ...}`` when the store fails
        """
        since = self.clock() - timedelta(days=days)
        try:
            rows = self.store.query(EVENTS_TABLE, {"created_at__gte": since})
        except Exception:
            logger.exception("security_stats_failed", days=days)
            return {"error": "Failed to fetch security stats"}

        by_type: Counter = Counter()
        by_severity: Counter = Counter()
        by_ip: Counter = Counter()
        daily: Counter = Counter()
        for row in rows:
            by_type[row["event_type"]] += 1
            by_severity[row["severity"]] += 1
            by_ip[row["ip_address"]] += 1
            daily[row["created_at"].date().isoformat()] += 1

        return {
            "total_events": len(rows),
            "events_by_type": dict(by_type),
            "events_by_severity": dict(by_severity),
            "top_suspicious_ips": dict(by_ip.most_common(10)),
            "daily_trends": dict(sorted(daily.items())),
        }
