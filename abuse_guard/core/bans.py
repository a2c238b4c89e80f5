"""
IP and user ban management.

A subject moves between two states, unbanned and banned. Banning a subject
that is already banned, or unbanning one that is not, is a conflict rather
than a silent overwrite. The store's partial unique index guarantees at most
one active ban per subject even when two processes race.

A ban is in force while ``is_active`` is set and ``expires_at`` is unset or
in the future. Every read path first sweeps rows whose expiry has passed to
``is_active = false``, then applies the same test, so the boolean check,
the detail lookup and the listing always agree.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from abuse_guard.config.loader import AutoBanRule, DEFAULT_IP_BAN_RULES, DEFAULT_USER_BAN_RULES
from abuse_guard.core.errors import ConflictError, GuardError, StoreError, ValidationError
from abuse_guard.core.events import SecurityEventLogger
from abuse_guard.storage.models import BanRecord, BanSubject, BanType, EventType, SecurityEvent, Severity
from abuse_guard.storage.repository import Store

logger = structlog.get_logger(__name__)

# Source address recorded on maintenance events that have no client IP.
SYSTEM_ADDRESS = "system"
STATS_RECENT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class BanResult:
    """Outcome of a ban or unban. Failures carry the error's HTTP status."""
    success: bool
    error: Optional[str] = None
    status_code: int = 200
    data: Optional[BanRecord] = None

    @classmethod
    def failure(cls, error: GuardError) -> "BanResult":
        return cls(success=False, error=error.message, status_code=error.status_code)


@dataclass(frozen=True)
class BanPage:
    """One page of active bans plus the total number of active bans."""
    records: List[BanRecord] = field(default_factory=list)
    total: int = 0


class BanManager(ABC):
    """Shared ban logic; subclasses choose the table and the default rules."""

    subject_kind: BanSubject
    default_rules: Sequence[AutoBanRule] = ()

    def __init__(
        self,
        store: Store,
        events: SecurityEventLogger,
        rules: Optional[Sequence[AutoBanRule]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.events = events
        self.rules = tuple(rules if rules is not None else self.default_rules)
        self.clock = clock

    @property
    def table(self) -> str:
        return self.subject_kind.value

    @property
    def column(self) -> str:
        return self.subject_kind.column

    @property
    def label(self) -> str:
        return "IP" if self.subject_kind is BanSubject.IP else "User"

    @abstractmethod
    def _event_source(self, subject: str) -> Dict[str, Optional[str]]:
        """Address fields of an event that concerns ``subject``."""

    def _record(self, row: Dict[str, Any]) -> BanRecord:
        return BanRecord(
            id=row["id"],
            subject=row[self.column],
            reason=row["reason"],
            severity=Severity(row["severity"]),
            ban_type=BanType(row["ban_type"]),
            is_active=row["is_active"],
            banned_at=row["banned_at"],
            expires_at=row["expires_at"],
            banned_by=row["banned_by"],
            unbanned_at=row["unbanned_at"],
            unban_reason=row["unban_reason"],
            metadata=row["metadata"] or {},
        )

    # -- expiry --------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Deactivate bans whose expiry has passed. Returns how many changed.

        Raises:
            StoreError: If the store cannot be updated
        """
        expired = self.store.call_procedure("expire_bans", {"table": self.table, "now": self.clock()})
        if expired:
            logger.info("bans_expired", table=self.table, count=expired)
        return expired

    def _sweep_quietly(self) -> None:
        try:
            self.sweep_expired()
        except StoreError:
            logger.exception("ban_sweep_failed", table=self.table)

    def _active_ban(self, subject: str) -> Optional[BanRecord]:
        """Return the ban in force for ``subject``. Raises StoreError."""
        self._sweep_quietly()
        now = self.clock()
        rows = self.store.query(self.table, {self.column: subject, "is_active": True})
        for row in rows:
            record = self._record(row)
            if record.in_force(now):
                return record
        return None

    # -- queries -------------------------------------------------------------

    def is_banned(self, subject: str) -> bool:
        """Return True if a ban is in force. A store failure reads as not banned."""
        try:
            return self._active_ban(subject) is not None
        except StoreError:
            logger.exception("ban_check_failed", table=self.table)
            return False

    def get_ban_details(self, subject: str) -> Optional[BanRecord]:
        try:
            return self._active_ban(subject)
        except StoreError:
            logger.exception("ban_details_failed", table=self.table)
            return None

    def list_bans(self, page: int = 1, limit: int = 50) -> BanPage:
        """List bans in force, newest first."""
        page = max(page, 1)
        self._sweep_quietly()
        now = self.clock()
        try:
            total = self.store.count(self.table, {"is_active": True})
            rows = self.store.query(
                self.table,
                {"is_active": True},
                order_by="banned_at",
                descending=True,
                limit=limit,
                offset=(page - 1) * limit,
            )
        except StoreError:
            logger.exception("ban_list_failed", table=self.table)
            return BanPage()
        records = [record for record in map(self._record, rows) if record.in_force(now)]
        return BanPage(records=records, total=total)

    def get_ban_stats(self) -> Dict[str, Any]:
        """Counts by state, type and severity, plus bans created in the last day."""
        self._sweep_quietly()
        try:
            return self.store.call_procedure(
                "ban_statistics",
                {"table": self.table, "since": self.clock() - STATS_RECENT_WINDOW},
            )
        except StoreError:
            logger.exception("ban_stats_failed", table=self.table)
            return {"error": "Failed to fetch ban stats"}

    # -- state changes -------------------------------------------------------

    def ban_subject(
        self,
        subject: str,
        reason: str,
        duration_minutes: int = 0,
        severity: Severity = Severity.MEDIUM,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BanResult:
        """Ban ``subject``.

        Args:
            subject: IP address or user id
            reason: Human readable reason, stored with the ban
            duration_minutes: Length of the ban; 0 means permanent
            severity: Ban severity
            actor_id: Administrator issuing the ban. Without one the ban is
                recorded as automatic.
            metadata: Extra context stored with the ban

        Returns:
            BanResult; a subject that is already banned yields a 409 failure
        """
        if not subject or not reason:
            return BanResult.failure(ValidationError("Subject and reason are required"))
        if duration_minutes < 0:
            return BanResult.failure(ValidationError("Ban duration cannot be negative"))

        ban_type = BanType.MANUAL if actor_id else BanType.AUTOMATIC
        now = self.clock()
        try:
            if self._active_ban(subject) is not None:
                raise ConflictError(f"{self.label} is already banned")
            record = BanRecord(
                subject=subject,
                reason=reason,
                severity=severity,
                ban_type=ban_type,
                is_active=True,
                banned_at=now,
                expires_at=now + timedelta(minutes=duration_minutes) if duration_minutes else None,
                banned_by=actor_id,
                metadata=metadata or {},
            )
            row = self.store.insert(self.table, {
                self.column: subject,
                "reason": record.reason,
                "severity": record.severity,
                "ban_type": record.ban_type,
                "is_active": True,
                "banned_at": record.banned_at,
                "expires_at": record.expires_at,
                "banned_by": record.banned_by,
                "metadata": record.metadata,
            })
        except GuardError as e:
            logger.info("ban_rejected", table=self.table, status_code=e.status_code, error=e.message)
            return BanResult.failure(e)

        record = replace(record, id=row.get("id"))
        logger.warning(
            "subject_banned",
            table=self.table,
            ban_type=ban_type.value,
            severity=severity.value,
            duration_minutes=duration_minutes,
        )
        if ban_type is BanType.MANUAL:
            self._maintenance_event(
                subject,
                Severity.LOW,
                f"{self.label} manually banned: {reason}",
                {"ban_type": ban_type.value, "duration": duration_minutes, "admin_id": actor_id},
            )
        return BanResult(success=True, data=record)

    def unban_subject(self, subject: str, reason: str = "manual", actor_id: Optional[str] = None) -> BanResult:
        """Lift the ban in force for ``subject``; a 409 failure if there is none."""
        if not subject:
            return BanResult.failure(ValidationError("Subject is required"))
        now = self.clock()
        try:
            current = self._active_ban(subject)
            if current is None:
                raise ConflictError(f"{self.label} is not banned")
            changed = self.store.update(
                self.table,
                {"id": current.id, "is_active": True},
                {"is_active": False, "unbanned_at": now, "unban_reason": reason},
            )
            if not changed:
                raise ConflictError(f"{self.label} is not banned")
        except GuardError as e:
            logger.info("unban_rejected", table=self.table, status_code=e.status_code, error=e.message)
            return BanResult.failure(e)

        logger.info("subject_unbanned", table=self.table, reason=reason)
        metadata: Dict[str, Any] = {"unban_reason": reason}
        if actor_id:
            metadata["admin_id"] = actor_id
        self._maintenance_event(subject, Severity.LOW, f"{self.label} unbanned: {reason}", metadata)
        return BanResult(
            success=True,
            data=replace(current, is_active=False, unbanned_at=now, unban_reason=reason),
        )

    def check_and_auto_ban(self, subject: str) -> None:
        """Ban ``subject`` if any automatic rule is met.

        Rules are evaluated in order and the first one met wins. Subjects
        already banned are left alone. Never raises.
        """
        if not subject or self.is_banned(subject):
            return

        now = self.clock()
        source = self._event_source(subject)
        for rule in self.rules:
            count = self.events.count_events(
                rule.event_type,
                now - timedelta(minutes=rule.window_minutes),
                ip_address=source["ip_address"] if self.subject_kind is BanSubject.IP else None,
                user_id=source["user_id"],
            )
            if count < rule.threshold:
                continue

            reason = (
                f"Auto-banned for {rule.event_type.value} "
                f"({rule.threshold} events in {rule.window_minutes} minutes)"
            )
            rule_info = {
                "event_type": rule.event_type.value,
                "threshold": rule.threshold,
                "window_minutes": rule.window_minutes,
                "ban_minutes": rule.ban_minutes,
            }
            result = self.ban_subject(
                subject,
                reason,
                duration_minutes=rule.ban_minutes,
                severity=rule.severity,
                metadata={"rule": rule_info, "event_count": count},
            )
            if result.success:
                self._maintenance_event(
                    subject,
                    Severity.MEDIUM,
                    f"{self.label} automatically banned: {reason}",
                    {"ban_type": BanType.AUTOMATIC.value, "rule": rule_info, "duration": rule.ban_minutes},
                )
            break

    def _maintenance_event(self, subject: str, severity: Severity, description: str, metadata: Dict[str, Any]) -> None:
        self.events.log_security_event(SecurityEvent(
            event_type=EventType.SYSTEM_MAINTENANCE,
            severity=severity,
            description=description,
            metadata=metadata,
            **self._event_source(subject),
        ))


class IPBanManager(BanManager):
    """Bans keyed by client IP address."""

    subject_kind = BanSubject.IP
    default_rules = DEFAULT_IP_BAN_RULES

    def _event_source(self, subject: str) -> Dict[str, Optional[str]]:
        return {"ip_address": subject, "user_id": None}


class UserBanManager(BanManager):
    """Bans keyed by user id. Rules are stricter than for IPs."""

    subject_kind = BanSubject.USER
    default_rules = DEFAULT_USER_BAN_RULES

    def _event_source(self, subject: str) -> Dict[str, Optional[str]]:
        return {"ip_address": SYSTEM_ADDRESS, "user_id": subject}
