"""Utilities for portal access-token authentication."""

from __future__ import annotations

import os
from typing import cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError
from typing_extensions import TypedDict

__all__ = [
    "PORTAL_ROLES",
    "PortalTokenPayload",
    "PortalTokenConfigurationError",
    "PortalTokenValidationError",
    "decode_access_token",
    "get_token_payload",
]

PORTAL_ROLES = frozenset({"governor", "admin", "affiliate"})


class PortalTokenConfigurationError(RuntimeError):
    """Raised when portal token configuration is invalid."""


class PortalTokenValidationError(ValueError):
    """Raised when the provided portal token cannot be validated."""


class _PortalTokenRequiredClaims(TypedDict):
    user_id: str
    name: str
    role: str


class PortalTokenPayload(_PortalTokenRequiredClaims, total=False):
    """Decoded JWT payload identifying a portal user."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    type: str


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Fetch an environment variable with optional requirement enforcement.

    Args:
        name: Name of the environment variable to read.
        required: Whether to raise when the variable is missing or empty.
        default: Value to use when ``required`` is ``False`` and the variable is
            undefined.

    Returns:
        str: Stripped environment variable value or provided default.

    Raises:
        PortalTokenConfigurationError: If ``required`` is ``True`` and the
            variable is missing or blank.
    """

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise PortalTokenConfigurationError(
            f"Environment variable '{name}' must be set for portal token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def decode_access_token(token: str) -> PortalTokenPayload:
    """Decode and validate a portal access token.

    Args:
        token: Encoded JWT token string from the ``Authorization`` header.

    Returns:
        PortalTokenPayload: Parsed payload with the caller's id, name and role.

    Raises:
        PortalTokenConfigurationError: If mandatory environment configuration is missing.
        PortalTokenValidationError: If token signature, claims, or expiry are invalid.
    """

    secret_key = _get_env("PORTAL_TOKEN_SECRET")
    audience = _get_env("PORTAL_TOKEN_AUDIENCE")
    issuer = _get_env("PORTAL_TOKEN_ISSUER")
    algorithm = _get_env("PORTAL_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise PortalTokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise PortalTokenValidationError("Access token is invalid.") from exc

    missing = [claim for claim in ("user_id", "name", "role") if not payload.get(claim)]
    if missing:
        raise PortalTokenValidationError(
            f"Access token payload is missing {', '.join(repr(c) for c in missing)}.",
        )
    if payload["role"] not in PORTAL_ROLES:
        raise PortalTokenValidationError(f"Unknown portal role {payload['role']!r}.")
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise PortalTokenValidationError("Token must be an access token.")

    return cast(PortalTokenPayload, payload)


async def get_token_payload(request: Request) -> PortalTokenPayload:
    """Extract the caller's token payload from the ``Authorization`` header.

    Args:
        request: Incoming request whose headers may contain a bearer token.

    Returns:
        PortalTokenPayload: Validated payload for downstream dependencies.

    Raises:
        HTTPException: With status ``401`` when the header is missing or invalid,
            or ``500`` if the token configuration is incorrect.
    """

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        return decode_access_token(credentials)
    except PortalTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except PortalTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
