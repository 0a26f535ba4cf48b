"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Session expiry is stored as epoch milliseconds so the compare-and-swap
    predicate behaves the same on every dialect (SQLite drops tz offsets).
  - The JSON document is the source of truth; indexed columns only serve
    lookups and conditional updates.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, JSON, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "chatbot_sessions"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)   # org:channel:address
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    automation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    document: Mapped[Any] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_chatbot_sessions_expires", "expires_at_ms"),
        Index("ix_chatbot_sessions_automation", "automation_id"),
    )


class ContactHistoryRow(Base):
    """Addresses that have ever written in; never expires."""
    __tablename__ = "chatbot_contact_history"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    first_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Automations
# ──────────────────────────────────────────────────────────────

class AutomationRow(Base):
    __tablename__ = "chatbot_automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    document: Mapped[Any] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_chatbot_automations_org_active", "organization_id", "is_active"),
    )
