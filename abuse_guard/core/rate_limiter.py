"""
Sliding-window rate limiting.

Counts requests per user and per IP over several trailing windows at once
(second, minute, hour). A request is accepted only when every window has
room; only accepted requests are recorded, so a denied request never eats
into future allowance.

Counters live behind a ``CounterStore`` so the same limiter runs against
process-local memory (limits are per instance) or Redis (limits are shared
by every instance pointing at the same server).
"""

import math
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import redis
import structlog

from abuse_guard.config.loader import RateLimitConfig, RateWindow

logger = structlog.get_logger(__name__)

USER_SCOPE = "user"
IP_SCOPE = "ip"

DENIAL_REASONS = {
    "user_per_second": "Too many requests per second. Please slow down.",
    "user_per_minute": "User rate limit exceeded. Too many requests per minute.",
    "user_per_hour": "User hourly rate limit exceeded. Please wait before trying again.",
    "ip_per_minute": "IP rate limit exceeded. Too many requests from this IP.",
    "ip_per_hour": "IP hourly rate limit exceeded. Too many requests from this IP.",
}


@dataclass(frozen=True)
class WindowCheck:
    """One window of one subject, e.g. ``user:42`` over 60 seconds."""
    subject: str
    limit_type: str
    limit: int
    window_seconds: float

    @property
    def key(self) -> str:
        return f"{self.subject}:{self.limit_type}"


@dataclass(frozen=True)
class WindowUsage:
    """Current occupancy of a window."""
    count: int
    oldest: Optional[float]


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""
    allowed: bool
    reason: Optional[str] = None
    limit_type: Optional[str] = None
    retry_after: Optional[int] = None


def retry_after_seconds(oldest: float, window_seconds: float, now: float) -> int:
    """Whole seconds until ``oldest`` leaves the window, at least 1."""
    return max(1, math.ceil(oldest + window_seconds - now))


class CounterStore(ABC):
    """Storage for sliding-window timestamps."""

    @abstractmethod
    def check_and_record(
        self, checks: Sequence[WindowCheck], now: float
    ) -> Optional[Tuple[WindowCheck, float]]:
        """Atomically test every window and record ``now`` if all pass.

        Windows are tested in the given order. Returns None when the request
        was accepted and recorded, otherwise the first full window together
        with the timestamp of its oldest entry (nothing is recorded).
        """

    @abstractmethod
    def usage(self, checks: Sequence[WindowCheck], now: float) -> List[WindowUsage]:
        """Return the occupancy of each window without recording anything."""

    @abstractmethod
    def reset(self, checks: Sequence[WindowCheck]) -> None:
        """Forget the given windows."""

    def cleanup(self, now: float) -> int:
        """Drop windows with no live entries. Returns how many were dropped."""
        return 0


class MemoryCounterStore(CounterStore):
    """Process-local counter store.

    Each subject has its own lock. A check spanning several subjects takes
    their locks in sorted order so two concurrent checks cannot deadlock.
    A subject's lock is dropped by ``cleanup`` once it has no windows left
    and no thread is holding or waiting on it.
    """

    def __init__(self):
        self._windows: Dict[str, Deque[float]] = {}
        self._spans: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _holding(self, subjects: Iterable[str]) -> Iterator[None]:
        ordered = sorted(set(subjects))
        with self._registry_lock:
            locks = []
            for subject in ordered:
                lock = self._locks.get(subject)
                if lock is None:
                    lock = self._locks[subject] = threading.Lock()
                self._holders[subject] = self._holders.get(subject, 0) + 1
                locks.append(lock)
        try:
            with ExitStack() as stack:
                for lock in locks:
                    stack.enter_context(lock)
                yield
        finally:
            with self._registry_lock:
                for subject in ordered:
                    self._holders[subject] -= 1
                    if not self._holders[subject]:
                        del self._holders[subject]

    def _purged(self, check: WindowCheck, now: float) -> Deque[float]:
        timestamps = self._windows.setdefault(check.key, deque())
        self._spans[check.key] = check.window_seconds
        cutoff = now - check.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return timestamps

    def check_and_record(
        self, checks: Sequence[WindowCheck], now: float
    ) -> Optional[Tuple[WindowCheck, float]]:
        with self._holding(c.subject for c in checks):
            windows = []
            for check in checks:
                timestamps = self._purged(check, now)
                if len(timestamps) >= check.limit:
                    return check, timestamps[0]
                windows.append(timestamps)

            for timestamps in windows:
                timestamps.append(now)
            return None

    def usage(self, checks: Sequence[WindowCheck], now: float) -> List[WindowUsage]:
        result = []
        for check in checks:
            with self._holding([check.subject]):
                timestamps = self._purged(check, now)
                result.append(WindowUsage(len(timestamps), timestamps[0] if timestamps else None))
        return result

    def reset(self, checks: Sequence[WindowCheck]) -> None:
        for check in checks:
            with self._holding([check.subject]):
                self._windows.pop(check.key, None)
                self._spans.pop(check.key, None)

    def cleanup(self, now: float) -> int:
        dropped = 0
        for key in list(self._windows):
            with self._holding([_subject_of(key)]):
                timestamps = self._windows.get(key)
                if timestamps is None:
                    continue
                cutoff = now - self._spans[key]
                while timestamps and timestamps[0] <= cutoff:
                    timestamps.popleft()
                if not timestamps:
                    del self._windows[key]
                    del self._spans[key]
                    dropped += 1

        with self._registry_lock:
            live = {_subject_of(key) for key in list(self._windows)}
            for subject in list(self._locks):
                if subject not in live and subject not in self._holders:
                    del self._locks[subject]
        return dropped


def _subject_of(key: str) -> str:
    return key.rsplit(":", 1)[0]


# KEYS: one sorted set per window.
# ARGV: now, member, then (limit, window_seconds) for each key.
# Returns {0, ""} when accepted, or {index, oldest_score} of the full window.
_CHECK_AND_RECORD_LUA = """
local now = tonumber(ARGV[1])
local member = ARGV[2]
for i = 1, #KEYS do
  local limit = tonumber(ARGV[1 + i * 2])
  local window = tonumber(ARGV[2 + i * 2])
  redis.call('ZREMRANGEBYSCORE', KEYS[i], '-inf', now - window)
  if redis.call('ZCARD', KEYS[i]) >= limit then
    local oldest = redis.call('ZRANGE', KEYS[i], 0, 0, 'WITHSCORES')
    return {i, oldest[2]}
  end
end
for i = 1, #KEYS do
  local window = tonumber(ARGV[2 + i * 2])
  redis.call('ZADD', KEYS[i], now, member)
  redis.call('PEXPIRE', KEYS[i], math.ceil(window * 1000))
end
return {0, ''}
"""


class RedisCounterStore(CounterStore):
    """Counter store shared across processes through Redis sorted sets.

    The multi-window check and the recording run in a single Lua script,
    so they are atomic with respect to every other client of the server.
    """

    def __init__(self, client: redis.Redis, prefix: str = "abuse_guard:rate"):
        self.client = client
        self.prefix = prefix
        self._script = client.register_script(_CHECK_AND_RECORD_LUA)

    def _redis_key(self, check: WindowCheck) -> str:
        return f"{self.prefix}:{check.key}"

    def check_and_record(
        self, checks: Sequence[WindowCheck], now: float
    ) -> Optional[Tuple[WindowCheck, float]]:
        args: List[object] = [repr(now), f"{now!r}:{uuid.uuid4().hex}"]
        for check in checks:
            args.extend([check.limit, check.window_seconds])
        index, oldest = self._script(keys=[self._redis_key(c) for c in checks], args=args)
        index = int(index)
        if index == 0:
            return None
        if isinstance(oldest, bytes):
            oldest = oldest.decode()
        return checks[index - 1], float(oldest)

    def usage(self, checks: Sequence[WindowCheck], now: float) -> List[WindowUsage]:
        pipe = self.client.pipeline()
        for check in checks:
            key = self._redis_key(check)
            pipe.zremrangebyscore(key, "-inf", now - check.window_seconds)
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
        results = pipe.execute()
        usage = []
        for i in range(len(checks)):
            count, oldest = results[i * 3 + 1], results[i * 3 + 2]
            usage.append(WindowUsage(int(count), float(oldest[0][1]) if oldest else None))
        return usage

    def reset(self, checks: Sequence[WindowCheck]) -> None:
        if checks:
            self.client.delete(*[self._redis_key(c) for c in checks])


def build_counter_store(config: RateLimitConfig) -> CounterStore:
    """Create the counter store selected by ``rate_limits.backend``."""
    if config.backend == "redis":
        return RedisCounterStore(redis.Redis.from_url(config.redis_url))
    return MemoryCounterStore()


class SyncRateLimiter:
    """Multi-window rate limiter for per-user and per-IP request streams.

    Thresholds are inclusive: with a limit of N, the Nth request inside a
    window is accepted and the (N+1)th is denied.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        store: Optional[CounterStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig()
        self.store = store if store is not None else build_counter_store(self.config)
        self.clock = clock

    def _checks(self, scope: str, subject: str, windows: Sequence[RateWindow]) -> List[WindowCheck]:
        return [
            WindowCheck(f"{scope}:{subject}", f"{scope}_{w.name}", w.limit, w.window_seconds)
            for w in windows
        ]

    def check_sync_limit(self, user_id: Optional[str], ip_address: str) -> RateLimitDecision:
        """Check and, if allowed, record one request.

        Anonymous requests (no ``user_id``) are limited by IP only.

        Args:
            user_id: Authenticated user, if any
            ip_address: Client IP address

        Returns:
            RateLimitDecision; on denial ``limit_type`` names the first full
            window (user before IP, finest granularity first) and
            ``retry_after`` is the seconds until it frees a slot.
        """
        checks: List[WindowCheck] = []
        if user_id:
            checks.extend(self._checks(USER_SCOPE, user_id, self.config.user_windows))
        checks.extend(self._checks(IP_SCOPE, ip_address, self.config.ip_windows))

        now = self.clock()
        denied = self.store.check_and_record(checks, now)
        if denied is None:
            return RateLimitDecision(allowed=True)

        check, oldest = denied
        retry_after = retry_after_seconds(oldest, check.window_seconds, now)
        logger.info(
            "rate_limit_denied",
            limit_type=check.limit_type,
            subject=check.subject,
            retry_after=retry_after,
        )
        return RateLimitDecision(
            allowed=False,
            reason=DENIAL_REASONS.get(check.limit_type, f"Rate limit exceeded ({check.limit_type})"),
            limit_type=check.limit_type,
            retry_after=retry_after,
        )

    def reset_user_limits(self, user_id: str) -> None:
        """Clear every window for a user (administrative escape hatch)."""
        self.store.reset(self._checks(USER_SCOPE, user_id, self.config.user_windows))
        logger.info("rate_limits_reset", scope=USER_SCOPE, subject=user_id)

    def reset_ip_limits(self, ip_address: str) -> None:
        """Clear every window for an IP address."""
        self.store.reset(self._checks(IP_SCOPE, ip_address, self.config.ip_windows))
        logger.info("rate_limits_reset", scope=IP_SCOPE, subject=ip_address)

    def get_user_stats(self, user_id: str) -> Dict[str, object]:
        return self._stats(self._checks(USER_SCOPE, user_id, self.config.user_windows))

    def get_ip_stats(self, ip_address: str) -> Dict[str, object]:
        return self._stats(self._checks(IP_SCOPE, ip_address, self.config.ip_windows))

    def cleanup(self) -> int:
        return self.store.cleanup(self.clock())

    def _stats(self, checks: Sequence[WindowCheck]) -> Dict[str, object]:
        """Summarise window occupancy.

        ``next_allowed_at`` is the earliest epoch time at which every full
        window will have a free slot, or None if none is full.
        """
        now = self.clock()
        limits = {}
        blocked_until = []
        for check, usage in zip(checks, self.store.usage(checks, now)):
            reset_at = usage.oldest + check.window_seconds if usage.oldest is not None else None
            limits[check.limit_type] = {
                "current": usage.count,
                "max": check.limit,
                "reset_at": reset_at,
            }
            if usage.count >= check.limit and reset_at is not None:
                blocked_until.append(reset_at)
        return {
            "limits": limits,
            "next_allowed_at": max(blocked_until) if blocked_until else None,
        }
