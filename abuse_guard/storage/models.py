"""
Data models for storage layer.

Defines the records kept in the persistent store and the enums shared
between them.
"""

from dataclasses import dataclass, field
from datetime import datetime, date
from enum import Enum
from typing import Any, Dict, Optional


class EventType(Enum):
    """Kinds of security events recorded in the evidentiary trail."""
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    DATA_INJECTION_ATTEMPT = "data_injection_attempt"
    FILE_UPLOAD_VIOLATION = "file_upload_violation"
    API_ABUSE = "api_abuse"
    PRIVILEGE_ESCALATION_ATTEMPT = "privilege_escalation_attempt"
    SYSTEM_MAINTENANCE = "system_maintenance"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"


class Severity(Enum):
    """Severity of an event or a ban, in ascending order."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class BanType(Enum):
    """How a ban was created."""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class BanSubject(Enum):
    """What a ban applies to. Values are the backing table names."""
    IP = "ip_bans"
    USER = "user_bans"

    @property
    def column(self) -> str:
        return "ip_address" if self is BanSubject.IP else "user_id"


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable security event.

    Append-only: once written, events are never updated or deleted by this
    package.
    """
    ip_address: str
    event_type: EventType
    severity: Severity
    description: str
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class BanRecord:
    """An IP or user ban.

    A ban is in force when ``is_active`` and ``expires_at`` is either unset
    (permanent) or still in the future.
    """
    subject: str
    reason: str
    severity: Severity
    ban_type: BanType
    is_active: bool
    banned_at: datetime
    expires_at: Optional[datetime] = None
    banned_by: Optional[str] = None
    unbanned_at: Optional[datetime] = None
    unban_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def in_force(self, now: datetime) -> bool:
        """Return True if the ban applies at ``now``."""
        return self.is_active and (self.expires_at is None or self.expires_at > now)


@dataclass(frozen=True)
class UsageRecord:
    """Per-user, per-day counter for one usage type."""
    user_id: str
    usage_date: date
    usage_type: str
    count: int
