"""JWT-backed authentication dependencies for FastAPI routers."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request, status

from app.conversations.models import CallerContext
from app.core.auth import PORTAL_ROLES, PortalTokenPayload, get_token_payload
from app.security.shadow_ban import InMemoryShadowBanGate, ShadowBanGate

_BAN_GATE: ShadowBanGate = InMemoryShadowBanGate()


async def get_current_token_payload(request: Request) -> PortalTokenPayload:
    """Decode and validate the bearer token from ``request``."""

    return await get_token_payload(request)


async def get_current_caller(
    payload: PortalTokenPayload = Depends(get_current_token_payload),
) -> CallerContext:
    """Turn the token payload into the :class:`CallerContext` passed to services."""

    return CallerContext(
        user_id=str(payload["user_id"]),
        display_name=str(payload["name"]),
        role=payload["role"],  # type: ignore[arg-type]
        email=payload.get("email"),
    )


def get_shadow_ban_gate() -> ShadowBanGate:
    return _BAN_GATE


def require_portal_role(*roles: str) -> Callable[..., CallerContext]:
    """Create a dependency admitting only callers holding one of ``roles``."""

    unknown = set(roles) - PORTAL_ROLES
    if unknown:
        raise ValueError(f"Unknown role: {', '.join(sorted(unknown))}")
    allowed = frozenset(roles or PORTAL_ROLES)

    async def dependency(caller: CallerContext = Depends(get_current_caller)) -> CallerContext:
        if caller.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role.",
            )
        return caller

    return dependency


async def require_messaging_allowed(
    caller: CallerContext = Depends(get_current_caller),
    gate: ShadowBanGate = Depends(get_shadow_ban_gate),
) -> CallerContext:
    """Reject callers under an active full-platform ban."""

    ban = gate.get_ban_status(caller.user_id)
    if ban is not None and ban.blocks_messaging:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Messaging is disabled for this account.",
        )
    return caller


__all__ = [
    "get_current_caller",
    "get_current_token_payload",
    "get_shadow_ban_gate",
    "require_messaging_allowed",
    "require_portal_role",
]
