"""
SDK for abuse-guard.

Provides a guarded client for relaying chat completions to
OpenAI-compatible endpoints.
"""

from .relay_client import (
    AIConfig,
    GuardedRelayClient,
    ModelConfig,
    ModelSlot,
    ModelSource,
    parse_ai_config,
)

__all__ = [
    "AIConfig",
    "GuardedRelayClient",
    "ModelConfig",
    "ModelSlot",
    "ModelSource",
    "parse_ai_config",
]
