"""
InMemorySessionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Same versioning contract as SqlSessionStore and RedisSessionStore
  - Atomic on a single event loop: no method awaits between read and write
  - All data lost on process restart

Best for: local development, unit tests, the /automations/{id}/test sandbox.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from database.store_base import BaseSessionStore
from models.schemas import Session, SessionKey

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySessionStore(BaseSessionStore):

    def __init__(self):
        self._sessions: dict[SessionKey, Session] = {}
        self._contacts: dict[SessionKey, Optional[str]] = {}
        logger.info("inmemory_session_store_initialized")

    def _live(self, key: SessionKey, now: Optional[datetime] = None) -> Optional[Session]:
        session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_expired(now or _utcnow()):
            del self._sessions[key]
            logger.debug("session_expired", key=str(key), session_id=session.id)
            return None
        return session

    async def get(self, key: SessionKey) -> Optional[Session]:
        session = self._live(key)
        return session.model_copy(deep=True) if session else None

    async def put(self, key: SessionKey, session: Session, ttl: Optional[timedelta] = None) -> Session:
        current = self._live(key)
        stored = self._prepare(session, (current.version if current else 0) + 1, ttl)
        self._sessions[key] = stored
        return stored.model_copy(deep=True)

    async def delete(self, key: SessionKey) -> None:
        self._sessions.pop(key, None)

    async def compare_and_swap(
        self,
        key: SessionKey,
        expected_version: int,
        new_session: Optional[Session],
    ) -> bool:
        current = self._live(key)
        current_version = current.version if current else 0
        if current_version != expected_version:
            return False
        if new_session is None:
            self._sessions.pop(key, None)
        else:
            self._sessions[key] = self._prepare(new_session, expected_version + 1, None)
        return True

    async def remember_contact(self, key: SessionKey, event_id: Optional[str] = None) -> bool:
        if key in self._contacts:
            first_event_id = self._contacts[key]
            return event_id is not None and event_id == first_event_id
        self._contacts[key] = event_id
        return True

    async def purge_expired(self) -> int:
        now = _utcnow()
        expired = [k for k, s in self._sessions.items() if s.is_expired(now)]
        for key in expired:
            del self._sessions[key]
        return len(expired)

    # ── Inspection ────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._sessions)
