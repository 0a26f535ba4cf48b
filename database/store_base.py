"""
Abstract Session Store — Interface for all session storage backends.

Implementations:
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - SqlSessionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - RedisSessionStore    (redis.asyncio, native key expiry)

Versioning contract shared by every backend:
  - a key with no live session has version 0
  - a successful compare_and_swap stores the session with version expected+1
  - compare_and_swap(key, v, None) deletes the session if it is still at v
  - expired sessions are invisible to get() and count as absent for CAS
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from models.schemas import Session, SessionKey


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get(self, key: SessionKey) -> Optional[Session]:
        """Return the live session for key; expired sessions are lazily removed."""
        ...

    @abstractmethod
    async def put(self, key: SessionKey, session: Session, ttl: Optional[timedelta] = None) -> Session:
        """Unconditional write. Bumps the version and resets expiry when ttl is given."""
        ...

    @abstractmethod
    async def delete(self, key: SessionKey) -> None:
        ...

    @abstractmethod
    async def compare_and_swap(
        self,
        key: SessionKey,
        expected_version: int,
        new_session: Optional[Session],
    ) -> bool:
        ...

    # ── Contact ledger ────────────────────────────────────────

    @abstractmethod
    async def remember_contact(self, key: SessionKey, event_id: Optional[str] = None) -> bool:
        """
        Record that key has written in. True the first time ever, and again
        whenever the event that made that first contact is processed again.
        """
        ...

    # ── Maintenance ───────────────────────────────────────────

    async def purge_expired(self) -> int:
        """Actively remove expired sessions. Returns how many were removed."""
        return 0

    async def close(self) -> None:
        pass

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _prepare(session: Session, version: int, ttl: Optional[timedelta]) -> Session:
        stored = session.model_copy(deep=True)
        stored.version = version
        if ttl is not None:
            stored.expires_at = _utcnow() + ttl
        return stored
