"""
SqlSessionStore — Portable SQL session storage for PostgreSQL, MySQL, SQLite.

Compare-and-swap is a conditional UPDATE/DELETE on (key, version, expiry)
whose rowcount tells whether the caller won. Creating a session (expected
version 0) is an INSERT that loses on the primary key when another writer
got there first.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError

from database.models import ContactHistoryRow, SessionRow
from database.session import get_session
from database.store_base import BaseSessionStore, to_epoch_ms
from models.schemas import Session, SessionKey

logger = structlog.get_logger()


def _now_ms() -> int:
    return to_epoch_ms(datetime.now(timezone.utc))


class SqlSessionStore(BaseSessionStore):
    """
    Persistent session store backed by any SQLAlchemy-supported database.
    Tables are created by database.session.init_db().
    """

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, key: SessionKey) -> Optional[Session]:
        k = str(key)
        async with get_session() as db:
            row = await db.get(SessionRow, k)
            if row is None:
                return None
            if row.expires_at_ms <= _now_ms():
                # lazy expiry, guarded by version so a concurrent refresh survives
                await db.execute(
                    delete(SessionRow).where(and_(
                        SessionRow.key == k,
                        SessionRow.version == row.version,
                        SessionRow.expires_at_ms <= _now_ms(),
                    ))
                )
                logger.debug("session_expired", key=k)
                return None
            return self._row_to_session(row)

    # ── Writes ────────────────────────────────────────────────

    async def put(self, key: SessionKey, session: Session, ttl: Optional[timedelta] = None) -> Session:
        k = str(key)
        async with get_session() as db:
            row = await db.get(SessionRow, k)
            live = row is not None and row.expires_at_ms > _now_ms()
            stored = self._prepare(session, (row.version if live else 0) + 1, ttl)
            if row is None:
                db.add(self._new_row(k, stored))
            else:
                self._apply(row, stored)
            return stored

    async def delete(self, key: SessionKey) -> None:
        async with get_session() as db:
            await db.execute(delete(SessionRow).where(SessionRow.key == str(key)))

    async def compare_and_swap(
        self,
        key: SessionKey,
        expected_version: int,
        new_session: Optional[Session],
    ) -> bool:
        if expected_version == 0:
            return await self._create(str(key), new_session)

        k = str(key)
        condition = and_(
            SessionRow.key == k,
            SessionRow.version == expected_version,
            SessionRow.expires_at_ms > _now_ms(),
        )
        async with get_session() as db:
            if new_session is None:
                result = await db.execute(delete(SessionRow).where(condition))
            else:
                stored = self._prepare(new_session, expected_version + 1, None)
                result = await db.execute(
                    update(SessionRow).where(condition).values(**self._columns(stored))
                )
            return result.rowcount == 1

    async def _create(self, k: str, new_session: Optional[Session]) -> bool:
        # an expired row still occupies the primary key
        async with get_session() as db:
            await db.execute(
                delete(SessionRow).where(and_(
                    SessionRow.key == k, SessionRow.expires_at_ms <= _now_ms(),
                ))
            )
            if new_session is None:
                existing = await db.get(SessionRow, k)
                return existing is None

        stored = self._prepare(new_session, 1, None)
        try:
            async with get_session() as db:
                db.add(self._new_row(k, stored))
                await db.flush()
        except IntegrityError:
            logger.debug("session_create_conflict", key=k)
            return False
        return True

    # ── Contact ledger ────────────────────────────────────────

    async def remember_contact(self, key: SessionKey, event_id: Optional[str] = None) -> bool:
        try:
            async with get_session() as db:
                db.add(ContactHistoryRow(key=str(key), first_event_id=event_id))
                await db.flush()
        except IntegrityError:
            if event_id is None:
                return False
            async with get_session() as db:
                first_event_id = await db.scalar(
                    select(ContactHistoryRow.first_event_id).where(ContactHistoryRow.key == str(key))
                )
            return first_event_id == event_id
        return True

    # ── Maintenance ───────────────────────────────────────────

    async def purge_expired(self) -> int:
        async with get_session() as db:
            result = await db.execute(
                delete(SessionRow).where(SessionRow.expires_at_ms <= _now_ms())
            )
            return result.rowcount or 0

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _columns(session: Session) -> dict[str, Any]:
        return {
            "session_id": session.id,
            "automation_id": session.automation_id,
            "version": session.version,
            "expires_at_ms": to_epoch_ms(session.expires_at),
            "document": session.model_dump(mode="json"),
        }

    def _new_row(self, k: str, session: Session) -> SessionRow:
        return SessionRow(key=k, **self._columns(session))

    def _apply(self, row: SessionRow, session: Session) -> None:
        for name, value in self._columns(session).items():
            setattr(row, name, value)

    @staticmethod
    def _row_to_session(row: SessionRow) -> Session:
        document = row.document
        # Handle both dict and string (some drivers hand JSON back as text)
        if isinstance(document, str):
            document = json.loads(document)
        session = Session.model_validate(document)
        session.version = row.version
        return session
