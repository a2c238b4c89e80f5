"""
Guarded AI relay client.

Wraps OpenAI-compatible chat completions so that every outbound call is
checked against the base URL policy and, when billed to shared platform
credentials, charged against the user's daily quota. A failed call refunds
the quota it was charged.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog
from openai import OpenAI

from ..core.errors import ForbiddenError, ValidationError
from ..core.guard import AbuseGuard, RequestContext
from ..core.url_validator import validate_base_url
from ..core.usage import CONVERSATION_USAGE

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 60.0


class ModelSlot(Enum):
    """Role a model plays in the application."""
    AGENT = "agent"
    CHAT = "chat"
    VISION = "vision"


class ModelSource(Enum):
    """Whose credentials pay for the call."""
    SHARED = "shared"
    PRIVATE = "private"


@dataclass(frozen=True)
class ModelConfig:
    """One configured model endpoint."""
    slot: ModelSlot
    source: ModelSource
    model: str
    base_url: str
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class AIConfig:
    models: Dict[ModelSlot, ModelConfig]

    @property
    def is_shared_mode(self) -> bool:
        """True if any slot is billed to shared credentials."""
        return any(m.source is ModelSource.SHARED for m in self.models.values())

    def get(self, slot: ModelSlot) -> ModelConfig:
        try:
            return self.models[slot]
        except KeyError:
            raise ValidationError(f"No model configured for slot '{slot.value}'") from None


def parse_ai_config(raw: Mapping[str, Any]) -> AIConfig:
    """Parse an AI configuration mapping.

    Expected shape::

        {"chat": {"model": "...", "base_url": "...", "api_key": "...", "source": "shared"}, ...}

    Slots are ``agent``, ``chat`` and ``vision``; each is optional but at
    least one must be present. ``source`` defaults to ``private``.

    Raises:
        ValidationError: If the shape or any value is invalid
    """
    if not isinstance(raw, Mapping) or not raw:
        raise ValidationError("AI configuration must be a non-empty mapping")

    valid_slots = {slot.value for slot in ModelSlot}
    unknown_slots = set(raw) - valid_slots
    if unknown_slots:
        raise ValidationError(f"Unknown model slots: {sorted(unknown_slots)}")

    models: Dict[ModelSlot, ModelConfig] = {}
    for name, entry in raw.items():
        slot = ModelSlot(name)
        if not isinstance(entry, Mapping):
            raise ValidationError(f"'{name}' must be a mapping")
        unknown = set(entry) - {"model", "base_url", "api_key", "source"}
        if unknown:
            raise ValidationError(f"Unknown keys in '{name}': {sorted(unknown)}")
        for key in ("model", "base_url", "api_key"):
            value = entry.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"'{name}.{key}' is required")
        try:
            source = ModelSource(str(entry.get("source", ModelSource.PRIVATE.value)).lower())
        except ValueError:
            raise ValidationError(f"'{name}.source' must be 'shared' or 'private'") from None
        models[slot] = ModelConfig(
            slot=slot,
            source=source,
            model=entry["model"].strip(),
            base_url=entry["base_url"].strip(),
            api_key=entry["api_key"].strip(),
        )
    return AIConfig(models=models)


class GuardedRelayClient:
    """OpenAI-compatible client that enforces URL policy and shared quotas.

    Calls on private credentials are not metered; only the URL policy
    applies to them.
    """

    def __init__(
        self,
        guard: AbuseGuard,
        ai_config: AIConfig,
        slot: ModelSlot = ModelSlot.CHAT,
        timeout: float = DEFAULT_TIMEOUT,
        client_factory: Callable[..., OpenAI] = OpenAI,
    ):
        self.guard = guard
        self.ai_config = ai_config
        self.model_config = ai_config.get(slot)
        self.timeout = timeout
        self.client_factory = client_factory

    @property
    def is_shared(self) -> bool:
        """True if the slot this client calls is billed to shared credentials."""
        return self.model_config.source is ModelSource.SHARED

    def _check_base_url(self) -> None:
        result = validate_base_url(self.model_config.base_url)
        if result.is_blocked:
            logger.warning(
                "relay_url_blocked",
                slot=self.model_config.slot.value,
                blocked_domain=result.blocked_domain,
            )
            raise ForbiddenError(result.reason)
        if not result.is_valid:
            raise ValidationError(result.reason)

    def chat(
        self,
        context: RequestContext,
        trust_level: int,
        messages: List[Dict[str, Any]],
        usage_type: str = CONVERSATION_USAGE,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion on behalf of the requesting user.

        Args:
            context: Requesting user and client address
            trust_level: The user's trust level, which selects the quota
            messages: Chat messages (required)
            usage_type: Quota counter to charge in shared mode
            **kwargs: Additional completion parameters

        Returns:
            The chat completion response, unchanged

        Raises:
            ValidationError: If messages are empty or the base URL is malformed
            ForbiddenError: If the base URL is blocked or the trust level has no quota
            UnauthorizedError: If shared mode is used without a user
            RateLimitedError: If the daily quota is exhausted
            openai.OpenAIError: Propagated after the quota is refunded
        """
        if not messages:
            raise ValidationError("messages is required and cannot be empty")
        self._check_base_url()

        charged = False
        if self.is_shared:
            self.guard.charge_quota(context, trust_level, usage_type)
            charged = True

        try:
            client = self.client_factory(
                base_url=self.model_config.base_url,
                api_key=self.model_config.api_key,
                timeout=self.timeout,
            )
            return client.chat.completions.create(
                model=self.model_config.model,
                messages=messages,
                **kwargs
            )
        except Exception:
            logger.warning("relay_call_failed", slot=self.model_config.slot.value, refunded=charged)
            if charged:
                self.guard.rollback_quota(context, usage_type)
            raise
