"""
Trust level table.

Maps a user's trust level (0-4) to daily quotas and permissions. The table
is static at runtime; ``load_guard_config`` may replace it at start-up.
"""

from dataclasses import dataclass, fields
from typing import Dict, List, Mapping, Optional


@dataclass(frozen=True)
class TrustLevelLimits:
    """Quotas granted at a trust level."""
    daily_conversations: int
    daily_api_calls: int = 0
    monthly_uploads: int = 0

    def __post_init__(self):
        """Validate quota values are not negative."""
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"{f.name} cannot be negative")


@dataclass(frozen=True)
class TrustLevelPermissions:
    """Features unlocked at a trust level."""
    can_use_shared_service: bool = False
    can_share_keys: bool = False
    can_manage_keys: bool = False
    can_upload_files: bool = False
    can_create_groups: bool = False


@dataclass(frozen=True)
class TrustLevelConfig:
    """Complete configuration of a single trust level."""
    level: int
    name: str
    description: str
    limits: TrustLevelLimits
    permissions: TrustLevelPermissions


_MEMBER = TrustLevelPermissions(
    can_use_shared_service=True,
    can_share_keys=True,
    can_manage_keys=True,
    can_upload_files=True,
)
_TRUSTED = TrustLevelPermissions(
    can_use_shared_service=True,
    can_share_keys=True,
    can_manage_keys=True,
    can_upload_files=True,
    can_create_groups=True,
)

DEFAULT_TRUST_LEVELS: Dict[int, TrustLevelConfig] = {
    0: TrustLevelConfig(
        level=0,
        name="New user",
        description="Newly registered account with restricted access",
        limits=TrustLevelLimits(daily_conversations=0, daily_api_calls=0, monthly_uploads=0),
        permissions=TrustLevelPermissions(),
    ),
    1: TrustLevelConfig(
        level=1,
        name="Basic",
        description="User with basic community trust",
        limits=TrustLevelLimits(daily_conversations=40, daily_api_calls=100, monthly_uploads=10),
        permissions=_MEMBER,
    ),
    2: TrustLevelConfig(
        level=2,
        name="Member",
        description="Active and reliable community member",
        limits=TrustLevelLimits(daily_conversations=80, daily_api_calls=200, monthly_uploads=25),
        permissions=_TRUSTED,
    ),
    3: TrustLevelConfig(
        level=3,
        name="Regular",
        description="Significant community contributor",
        limits=TrustLevelLimits(daily_conversations=150, daily_api_calls=500, monthly_uploads=50),
        permissions=_TRUSTED,
    ),
    4: TrustLevelConfig(
        level=4,
        name="Leader",
        description="Core member of the community",
        limits=TrustLevelLimits(daily_conversations=150, daily_api_calls=1000, monthly_uploads=100),
        permissions=_TRUSTED,
    ),
}

MIN_TRUST_LEVEL = 0
MAX_TRUST_LEVEL = 4


class TrustLevelTable:
    """Lookup helpers over a trust level table.

    Unknown levels resolve to level 0, so an unexpected value never grants
    more than the most restricted tier.
    """

    def __init__(self, levels: Optional[Mapping[int, TrustLevelConfig]] = None):
        self.levels: Dict[int, TrustLevelConfig] = dict(levels or DEFAULT_TRUST_LEVELS)
        if MIN_TRUST_LEVEL not in self.levels:
            raise ValueError("trust level table must define level 0")

    def get(self, trust_level: int) -> TrustLevelConfig:
        return self.levels.get(trust_level, self.levels[MIN_TRUST_LEVEL])

    def daily_conversation_limit(self, trust_level: int) -> int:
        return self.get(trust_level).limits.daily_conversations

    def has_permission(self, trust_level: int, permission: str) -> bool:
        """Check a permission flag such as ``can_use_shared_service``."""
        return bool(getattr(self.get(trust_level).permissions, permission, False))

    def is_valid(self, trust_level: int) -> bool:
        return MIN_TRUST_LEVEL <= trust_level <= MAX_TRUST_LEVEL and trust_level in self.levels

    def all(self) -> List[TrustLevelConfig]:
        return [self.levels[level] for level in sorted(self.levels)]

    def next_level(self, current_level: int) -> Optional[TrustLevelConfig]:
        return self.levels.get(current_level + 1)

    def level_up_benefits(self, current_level: int) -> Optional[Dict[str, object]]:
        """Describe what the next trust level adds over the current one.

        Returns:
            ``{"conversation_increase": int, "new_permissions": [...]}`` or
            None when already at the top level
        """
        current = self.get(current_level)
        upcoming = self.next_level(current_level)
        if upcoming is None:
            return None
        new_permissions = [
            f.name
            for f in fields(TrustLevelPermissions)
            if getattr(upcoming.permissions, f.name) and not getattr(current.permissions, f.name)
        ]
        return {
            "conversation_increase": upcoming.limits.daily_conversations - current.limits.daily_conversations,
            "new_permissions": new_permissions,
        }


_default_table = TrustLevelTable()


def get_trust_level_config(trust_level: int) -> TrustLevelConfig:
    """Get the default configuration for a trust level (level 0 if unknown)."""
    return _default_table.get(trust_level)


def get_daily_conversation_limit(trust_level: int) -> int:
    return _default_table.daily_conversation_limit(trust_level)


def has_permission(trust_level: int, permission: str) -> bool:
    return _default_table.has_permission(trust_level, permission)


def is_valid_trust_level(trust_level: int) -> bool:
    return _default_table.is_valid(trust_level)


def get_next_level_info(current_level: int) -> Optional[TrustLevelConfig]:
    return _default_table.next_level(current_level)


def get_level_up_benefits(current_level: int) -> Optional[Dict[str, object]]:
    return _default_table.level_up_benefits(current_level)
