"""Security utilities exposed for convenience."""

from .auth import (
    get_current_caller,
    get_current_token_payload,
    get_shadow_ban_gate,
    require_messaging_allowed,
    require_portal_role,
)
from .shadow_ban import InMemoryShadowBanGate, ShadowBanGate

__all__ = [
    "InMemoryShadowBanGate",
    "ShadowBanGate",
    "get_current_caller",
    "get_current_token_payload",
    "get_shadow_ban_gate",
    "require_messaging_allowed",
    "require_portal_role",
]
