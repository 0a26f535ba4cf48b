"""
Config Store — Automation definitions keyed by organization.

Backends:
  - InMemoryConfigStore  (dict-based, development and tests)
  - SqlConfigStore       (chatbot_automations table, JSON document)
  - RestConfigStore      (backend/connector.py, an external config service)

CachedConfigStore wraps any of them for the hot path: reads are served from
a per-organization snapshot refreshed at most every refresh_interval_s, and
a snapshot is kept when a refresh fails so a slow config backend never
stops live conversations.
"""
from __future__ import annotations

import abc
import asyncio
import json
import time
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import delete, select

from core.errors import StoreTimeout
from core.validation import ensure_valid
from database.models import AutomationRow
from database.session import get_session
from models.schemas import Automation, ChannelType

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseConfigStore(abc.ABC):
    """Interface that all config store backends must implement."""

    @abc.abstractmethod
    async def get(self, automation_id: str) -> Optional[Automation]:
        ...

    @abc.abstractmethod
    async def list_for_organization(self, organization_id: str) -> list[Automation]:
        ...

    @abc.abstractmethod
    async def _write(self, automation: Automation) -> Automation:
        ...

    @abc.abstractmethod
    async def delete(self, automation_id: str) -> bool:
        ...

    async def list_active(
        self,
        organization_id: str,
        channel: ChannelType,
        channel_id: Optional[str] = None,
    ) -> list[Automation]:
        """Active Automations of one channel scope, in evaluation order."""
        automations = await self.list_for_organization(organization_id)
        scoped = [a for a in automations if a.is_active and a.applies_to(channel, channel_id)]
        return sorted(scoped, key=lambda a: a.sort_key)

    async def save(self, automation: Automation) -> Automation:
        """Validate and store. Raises AutomationValidationError on errors."""
        ensure_valid(automation)
        stored = automation.model_copy(deep=True)
        stored.updated_at = _utcnow()
        result = await self._write(stored)
        logger.info("automation_saved",
                    automation_id=stored.id,
                    organization_id=stored.organization_id,
                    is_active=stored.is_active)
        return result

    async def set_active(self, automation_id: str, active: bool) -> Optional[Automation]:
        automation = await self.get(automation_id)
        if automation is None:
            return None
        automation.is_active = active
        return await self.save(automation)

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  In-memory
# ──────────────────────────────────────────────────────────────

class InMemoryConfigStore(BaseConfigStore):

    def __init__(self, automations: Optional[list[Automation]] = None):
        self._automations: dict[str, Automation] = {}
        for automation in automations or []:
            self._automations[automation.id] = automation.model_copy(deep=True)

    async def get(self, automation_id: str) -> Optional[Automation]:
        automation = self._automations.get(automation_id)
        return automation.model_copy(deep=True) if automation else None

    async def list_for_organization(self, organization_id: str) -> list[Automation]:
        return [
            a.model_copy(deep=True) for a in self._automations.values()
            if a.organization_id == organization_id
        ]

    async def _write(self, automation: Automation) -> Automation:
        self._automations[automation.id] = automation.model_copy(deep=True)
        return automation

    async def delete(self, automation_id: str) -> bool:
        return self._automations.pop(automation_id, None) is not None


# ──────────────────────────────────────────────────────────────
#  SQL
# ──────────────────────────────────────────────────────────────

class SqlConfigStore(BaseConfigStore):

    async def get(self, automation_id: str) -> Optional[Automation]:
        async with get_session() as db:
            row = await db.get(AutomationRow, automation_id)
            return self._row_to_automation(row) if row else None

    async def list_for_organization(self, organization_id: str) -> list[Automation]:
        async with get_session() as db:
            stmt = (
                select(AutomationRow)
                .where(AutomationRow.organization_id == organization_id)
                .order_by(AutomationRow.priority, AutomationRow.id)
            )
            result = await db.execute(stmt)
            return [self._row_to_automation(row) for row in result.scalars()]

    async def _write(self, automation: Automation) -> Automation:
        async with get_session() as db:
            row = await db.get(AutomationRow, automation.id)
            values = {
                "organization_id": automation.organization_id,
                "name": automation.name,
                "is_active": automation.is_active,
                "priority": automation.priority,
                "document": automation.model_dump(mode="json"),
            }
            if row is None:
                db.add(AutomationRow(id=automation.id, created_at=automation.created_at, **values))
            else:
                for name, value in values.items():
                    setattr(row, name, value)
            return automation

    async def delete(self, automation_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(delete(AutomationRow).where(AutomationRow.id == automation_id))
            return result.rowcount == 1

    @staticmethod
    def _row_to_automation(row: AutomationRow) -> Automation:
        document = row.document
        if isinstance(document, str):
            document = json.loads(document)
        return Automation.model_validate(document)


# ──────────────────────────────────────────────────────────────
#  Cache
# ──────────────────────────────────────────────────────────────

class CachedConfigStore(BaseConfigStore):
    """
    Bounded-staleness read cache. A snapshot is at most refresh_interval_s
    old unless the backend is failing, in which case the last good snapshot
    keeps serving and a warning is logged.
    """

    def __init__(
        self,
        inner: BaseConfigStore,
        refresh_interval_s: float = 30.0,
        timeout_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.refresh_interval_s = refresh_interval_s
        self.timeout_s = timeout_s
        self._clock = clock
        self._snapshots: dict[str, tuple[float, list[Automation]]] = {}

    async def list_for_organization(self, organization_id: str) -> list[Automation]:
        snapshot = self._snapshots.get(organization_id)
        if snapshot and self._clock() - snapshot[0] < self.refresh_interval_s:
            return [a.model_copy(deep=True) for a in snapshot[1]]

        try:
            automations = await asyncio.wait_for(
                self.inner.list_for_organization(organization_id), self.timeout_s,
            )
        except Exception as e:
            if snapshot is None:
                logger.error("config_refresh_failed", organization_id=organization_id, error=str(e))
                raise StoreTimeout("config.list_for_organization", self.timeout_s) from e
            logger.warning("config_refresh_failed_serving_stale",
                           organization_id=organization_id,
                           age_s=round(self._clock() - snapshot[0], 1),
                           error=str(e))
            return [a.model_copy(deep=True) for a in snapshot[1]]

        self._snapshots[organization_id] = (self._clock(), automations)
        return [a.model_copy(deep=True) for a in automations]

    async def get(self, automation_id: str) -> Optional[Automation]:
        """
        Served from a fresh organization snapshot when one holds the
        automation. Otherwise read through, falling back to a stale copy.
        """
        fresh = self._from_snapshots(automation_id, fresh_only=True)
        if fresh is not None:
            return fresh

        try:
            return await asyncio.wait_for(self.inner.get(automation_id), self.timeout_s)
        except Exception as e:
            stale = self._from_snapshots(automation_id, fresh_only=False)
            if stale is None:
                logger.error("config_get_failed", automation_id=automation_id, error=str(e))
                raise StoreTimeout("config.get", self.timeout_s) from e
            logger.warning("config_get_failed_serving_stale",
                           automation_id=automation_id, error=str(e))
            return stale

    def _from_snapshots(self, automation_id: str, fresh_only: bool) -> Optional[Automation]:
        now = self._clock()
        for taken_at, automations in self._snapshots.values():
            if fresh_only and now - taken_at >= self.refresh_interval_s:
                continue
            for automation in automations:
                if automation.id == automation_id:
                    return automation.model_copy(deep=True)
        return None

    async def save(self, automation: Automation) -> Automation:
        result = await self.inner.save(automation)
        self.invalidate(automation.organization_id)
        return result

    async def _write(self, automation: Automation) -> Automation:
        return await self.inner._write(automation)

    async def delete(self, automation_id: str) -> bool:
        existing = await self.inner.get(automation_id)
        deleted = await self.inner.delete(automation_id)
        if existing is not None:
            self.invalidate(existing.organization_id)
        return deleted

    def invalidate(self, organization_id: Optional[str] = None) -> None:
        if organization_id is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(organization_id, None)

    async def close(self) -> None:
        await self.inner.close()
