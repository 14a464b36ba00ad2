"""Shadow-ban lookups consulted before messaging actions."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional, Protocol

from app.conversations.models import BanStatus


class ShadowBanGate(Protocol):
    def get_ban_status(self, user_id: str) -> Optional[BanStatus]: ...


class InMemoryShadowBanGate:
    """Ban registry kept in process memory.

    Expired bans are reported as inactive rather than removed.
    """

    def __init__(self) -> None:
        self._bans: dict[str, BanStatus] = {}
        self._lock = threading.Lock()

    def ban(self, user_id: str, status: BanStatus) -> None:
        with self._lock:
            self._bans[user_id] = status

    def lift(self, user_id: str) -> None:
        with self._lock:
            self._bans.pop(user_id, None)

    def get_ban_status(self, user_id: str) -> Optional[BanStatus]:
        with self._lock:
            status = self._bans.get(user_id)
        if status is None:
            return None
        if status.expires_at is not None and status.expires_at <= datetime.now(timezone.utc):
            return BanStatus(
                is_active=False,
                ban_type=status.ban_type,
                reason=status.reason,
                expires_at=status.expires_at,
            )
        return status


__all__ = ["InMemoryShadowBanGate", "ShadowBanGate"]
