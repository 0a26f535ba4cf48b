"""
Database layer — Session and configuration persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - Redis (sessions only, native key expiry)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_session_store, InMemoryConfigStore
  sessions = create_session_store()
  session = await sessions.get(key)
"""
from database.models import Base, SessionRow, ContactHistoryRow, AutomationRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseSessionStore
from database.store import SqlSessionStore
from database.store_memory import InMemorySessionStore
from database.store_redis import RedisSessionStore
from database.config_store import (
    BaseConfigStore, InMemoryConfigStore, SqlConfigStore, CachedConfigStore,
)
from database.store_factory import (
    create_session_store, create_config_store,
    get_session_store, get_config_store, reset_stores,
)
from database.sweeper import SessionSweeper

__all__ = [
    # ORM models
    "Base", "SessionRow", "ContactHistoryRow", "AutomationRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Session stores
    "BaseSessionStore", "SqlSessionStore", "InMemorySessionStore", "RedisSessionStore",
    # Config stores
    "BaseConfigStore", "InMemoryConfigStore", "SqlConfigStore", "CachedConfigStore",
    # Factory
    "create_session_store", "create_config_store",
    "get_session_store", "get_config_store", "reset_stores",
    # Maintenance
    "SessionSweeper",
]
