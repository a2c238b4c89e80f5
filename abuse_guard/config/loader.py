"""
Configuration management and loading.

Reads the guard configuration from YAML. Every section is optional and
falls back to the built-in defaults, but anything that is present is
validated strictly.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from abuse_guard.config.trust_levels import (
    DEFAULT_TRUST_LEVELS,
    TrustLevelConfig,
    TrustLevelLimits,
    TrustLevelPermissions,
)
from abuse_guard.storage.db import DEFAULT_DB_PATH
from abuse_guard.storage.models import EventType, Severity

WINDOW_SECONDS = {
    "per_second": 1,
    "per_minute": 60,
    "per_hour": 3600,
}

COUNTER_BACKENDS = ("memory", "redis")
LOG_FORMATS = ("console", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class RateWindow:
    """At most ``limit`` requests within a trailing ``window_seconds``."""
    name: str
    limit: int
    window_seconds: int

    def __post_init__(self):
        """Validate window values."""
        if self.limit <= 0:
            raise ValueError(f"{self.name} limit must be > 0")
        if self.window_seconds <= 0:
            raise ValueError(f"{self.name} window must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding window limits per user and per IP, smallest window first."""
    backend: str = "memory"
    redis_url: Optional[str] = None
    user_windows: Tuple[RateWindow, ...] = (
        RateWindow("per_second", 1, 1),
        RateWindow("per_minute", 30, 60),
        RateWindow("per_hour", 300, 3600),
    )
    ip_windows: Tuple[RateWindow, ...] = (
        RateWindow("per_minute", 100, 60),
        RateWindow("per_hour", 1000, 3600),
    )


@dataclass(frozen=True)
class AutoBanRule:
    """Ban a subject with ``threshold`` events of a type inside a lookback window.

    ``ban_minutes`` of 0 means a permanent ban.
    """
    event_type: EventType
    threshold: int
    window_minutes: int
    ban_minutes: int
    severity: Severity

    def __post_init__(self):
        """Validate rule values."""
        if self.threshold <= 0:
            raise ValueError("threshold must be > 0")
        if self.window_minutes <= 0:
            raise ValueError("window_minutes must be > 0")
        if self.ban_minutes < 0:
            raise ValueError("ban_minutes cannot be negative")


DEFAULT_IP_BAN_RULES: Tuple[AutoBanRule, ...] = (
    AutoBanRule(EventType.RATE_LIMIT_EXCEEDED, 5, 10, 30, Severity.MEDIUM),
    AutoBanRule(EventType.INVALID_INPUT, 20, 30, 120, Severity.MEDIUM),
    AutoBanRule(EventType.UNAUTHORIZED_ACCESS, 5, 30, 240, Severity.HIGH),
    AutoBanRule(EventType.BRUTE_FORCE_ATTEMPT, 3, 15, 0, Severity.CRITICAL),
    AutoBanRule(EventType.DATA_INJECTION_ATTEMPT, 2, 60, 0, Severity.CRITICAL),
    AutoBanRule(EventType.API_ABUSE, 15, 60, 180, Severity.HIGH),
)

# Stricter than the IP rules: a user id is not shared between people.
DEFAULT_USER_BAN_RULES: Tuple[AutoBanRule, ...] = (
    AutoBanRule(EventType.RATE_LIMIT_EXCEEDED, 3, 15, 60, Severity.MEDIUM),
    AutoBanRule(EventType.INVALID_INPUT, 15, 60, 120, Severity.MEDIUM),
    AutoBanRule(EventType.UNAUTHORIZED_ACCESS, 3, 30, 240, Severity.HIGH),
    AutoBanRule(EventType.BRUTE_FORCE_ATTEMPT, 2, 15, 0, Severity.CRITICAL),
    AutoBanRule(EventType.DATA_INJECTION_ATTEMPT, 1, 60, 0, Severity.CRITICAL),
    AutoBanRule(EventType.API_ABUSE, 20, 60, 180, Severity.HIGH),
)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"


@dataclass(frozen=True)
class GuardConfig:
    """Complete guard configuration."""
    db_path: str = DEFAULT_DB_PATH
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    ip_ban_rules: Tuple[AutoBanRule, ...] = DEFAULT_IP_BAN_RULES
    user_ban_rules: Tuple[AutoBanRule, ...] = DEFAULT_USER_BAN_RULES
    trust_levels: Dict[int, TrustLevelConfig] = field(default_factory=lambda: dict(DEFAULT_TRUST_LEVELS))
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_guard_config() -> GuardConfig:
    """Return the built-in configuration."""
    return GuardConfig()


def load_guard_config(path: str) -> GuardConfig:
    """Load and validate guard configuration from a YAML file.

    Strict validation ensures no silent misconfiguration weakens a limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Guard config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    return parse_guard_config(raw_config)


def parse_guard_config(raw_config: Dict[str, Any]) -> GuardConfig:
    """Build a GuardConfig from an already-parsed mapping."""
    allowed_top_keys = {'store', 'rate_limits', 'ip_bans', 'user_bans', 'trust_levels', 'logging'}
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    defaults = GuardConfig()
    db_path = defaults.db_path
    if 'store' in raw_config:
        store = _section(raw_config, 'store')
        _reject_unknown(store, {'db_path'}, "store")
        if 'db_path' in store:
            if not isinstance(store['db_path'], str) or not store['db_path'].strip():
                raise ValueError("'store.db_path' must be a non-empty string")
            db_path = store['db_path']

    rate_limits = defaults.rate_limits
    if 'rate_limits' in raw_config:
        rate_limits = _parse_rate_limits(_section(raw_config, 'rate_limits'))

    ip_rules = defaults.ip_ban_rules
    if 'ip_bans' in raw_config:
        ip_rules = _parse_ban_policy(_section(raw_config, 'ip_bans'), "ip_bans", ip_rules)

    user_rules = defaults.user_ban_rules
    if 'user_bans' in raw_config:
        user_rules = _parse_ban_policy(_section(raw_config, 'user_bans'), "user_bans", user_rules)

    trust_levels = defaults.trust_levels
    if 'trust_levels' in raw_config:
        trust_levels = _parse_trust_levels(_section(raw_config, 'trust_levels'))

    logging_config = defaults.logging
    if 'logging' in raw_config:
        logging_config = _parse_logging(_section(raw_config, 'logging'))

    return GuardConfig(
        db_path=db_path,
        rate_limits=rate_limits,
        ip_ban_rules=ip_rules,
        user_ban_rules=user_rules,
        trust_levels=trust_levels,
        logging=logging_config,
    )


def _section(data: Dict, key: str) -> Dict:
    value = data[key]
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' must be a dictionary")
    return value


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(value: Any, path: str, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{path}' must be {'>= 0' if allow_zero else '> 0'}")
    return value


def _parse_windows(data: Dict, path: str, defaults: Tuple[RateWindow, ...]) -> Tuple[RateWindow, ...]:
    _reject_unknown(data, set(WINDOW_SECONDS), path)
    merged = {w.name: w.limit for w in defaults}
    for name, limit in data.items():
        merged[name] = _positive_int(limit, f"{path}.{name}")
    # Keep windows ordered from the finest granularity to the coarsest.
    return tuple(
        RateWindow(name, merged[name], WINDOW_SECONDS[name])
        for name in sorted(merged, key=WINDOW_SECONDS.get)
    )


def _parse_rate_limits(data: Dict) -> RateLimitConfig:
    _reject_unknown(data, {'backend', 'redis_url', 'user', 'ip'}, "rate_limits")
    defaults = RateLimitConfig()

    backend = data.get('backend', defaults.backend)
    if backend not in COUNTER_BACKENDS:
        raise ValueError(f"'rate_limits.backend' must be one of: {list(COUNTER_BACKENDS)}")

    redis_url = data.get('redis_url', defaults.redis_url)
    if backend == "redis" and not redis_url:
        raise ValueError("'rate_limits.redis_url' is required for the redis backend")

    user_windows = defaults.user_windows
    if 'user' in data:
        user_windows = _parse_windows(_section(data, 'user'), "rate_limits.user", user_windows)
    ip_windows = defaults.ip_windows
    if 'ip' in data:
        ip_windows = _parse_windows(_section(data, 'ip'), "rate_limits.ip", ip_windows)

    return RateLimitConfig(
        backend=backend,
        redis_url=redis_url,
        user_windows=user_windows,
        ip_windows=ip_windows,
    )


def _parse_ban_policy(data: Dict, path: str, defaults: Tuple[AutoBanRule, ...]) -> Tuple[AutoBanRule, ...]:
    _reject_unknown(data, {'rules'}, path)
    if 'rules' not in data:
        return defaults
    rules_data = data['rules']
    if not isinstance(rules_data, list):
        raise ValueError(f"'{path}.rules' must be a list")

    rules: List[AutoBanRule] = []
    for index, rule in enumerate(rules_data):
        rule_path = f"{path}.rules[{index}]"
        if not isinstance(rule, dict):
            raise ValueError(f"'{rule_path}' must be a dictionary")
        required = {'event_type', 'threshold', 'window_minutes', 'ban_minutes', 'severity'}
        _reject_unknown(rule, required, rule_path)
        missing = required - set(rule.keys())
        if missing:
            raise ValueError(f"Missing keys in {rule_path}: {missing}")
        rules.append(AutoBanRule(
            event_type=_enum(EventType, rule['event_type'], f"{rule_path}.event_type"),
            threshold=_positive_int(rule['threshold'], f"{rule_path}.threshold"),
            window_minutes=_positive_int(rule['window_minutes'], f"{rule_path}.window_minutes"),
            ban_minutes=_positive_int(rule['ban_minutes'], f"{rule_path}.ban_minutes", allow_zero=True),
            severity=_enum(Severity, rule['severity'], f"{rule_path}.severity"),
        ))
    return tuple(rules)


def _enum(enum_cls, value: Any, path: str):
    if not isinstance(value, str):
        raise ValueError(f"'{path}' must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{path}' must be one of: {valid}")


def _parse_trust_levels(data: Dict) -> Dict[int, TrustLevelConfig]:
    """Parse the trust level table.

    Levels not listed keep their defaults; listed levels replace the
    default entry entirely.
    """
    levels = dict(DEFAULT_TRUST_LEVELS)
    allowed_permissions = set(TrustLevelPermissions.__dataclass_fields__)
    for raw_level, entry in data.items():
        try:
            level = int(raw_level)
        except (TypeError, ValueError):
            raise ValueError(f"Trust level key '{raw_level}' must be an integer")
        path = f"trust_levels.{level}"
        if not 0 <= level <= 4:
            raise ValueError(f"'{path}' must be between 0 and 4")
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _reject_unknown(
            entry,
            {'name', 'description', 'daily_conversations', 'daily_api_calls', 'monthly_uploads', 'permissions'},
            path,
        )
        if 'daily_conversations' not in entry:
            raise ValueError(f"Missing required 'daily_conversations' in {path}")

        permissions = entry.get('permissions', [])
        if not isinstance(permissions, list):
            raise ValueError(f"'{path}.permissions' must be a list")
        unknown = set(permissions) - allowed_permissions
        if unknown:
            raise ValueError(f"Unknown permissions in {path}: {unknown}")

        base = DEFAULT_TRUST_LEVELS.get(level)
        levels[level] = TrustLevelConfig(
            level=level,
            name=str(entry.get('name', base.name if base else f"Level {level}")),
            description=str(entry.get('description', base.description if base else "")),
            limits=TrustLevelLimits(
                daily_conversations=_positive_int(entry['daily_conversations'], f"{path}.daily_conversations", allow_zero=True),
                daily_api_calls=_positive_int(entry.get('daily_api_calls', 0), f"{path}.daily_api_calls", allow_zero=True),
                monthly_uploads=_positive_int(entry.get('monthly_uploads', 0), f"{path}.monthly_uploads", allow_zero=True),
            ),
            permissions=TrustLevelPermissions(**{name: True for name in permissions}),
        )
    return levels


def _parse_logging(data: Dict) -> LoggingConfig:
    _reject_unknown(data, {'level', 'format'}, "logging")
    level = str(data.get('level', "INFO")).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of: {list(LOG_LEVELS)}")
    fmt = str(data.get('format', "console")).lower()
    if fmt not in LOG_FORMATS:
        raise ValueError(f"'logging.format' must be one of: {list(LOG_FORMATS)}")
    return LoggingConfig(level=level, format=fmt)
