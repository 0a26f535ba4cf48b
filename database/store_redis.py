"""
RedisSessionStore — Sessions as JSON strings with native key expiry.

Keys:
    {prefix}:session:{org}:{channel}:{address}   session JSON, PXAT = expires_at
    {prefix}:contact:{org}:{channel}:{address}   first event id (or "-"), no expiry

Compare-and-swap uses WATCH/MULTI/EXEC: a concurrent write to the watched
key aborts the transaction with WatchError and the caller loses.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import WatchError

from database.store_base import BaseSessionStore, to_epoch_ms
from models.schemas import Session, SessionKey

logger = structlog.get_logger()

# Delete only if the stored value is still the one we judged expired.
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_NO_EVENT_ID = "-"


class RedisSessionStore(BaseSessionStore):

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "chatbot", client=None):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = client

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self._redis.ping()
        logger.info("redis_session_store_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()

    # ── Keys ──────────────────────────────────────────────────

    def _session_key(self, key: SessionKey) -> str:
        return f"{self._prefix}:session:{key}"

    def _contact_key(self, key: SessionKey) -> str:
        return f"{self._prefix}:contact:{key}"

    # ── Sessions ──────────────────────────────────────────────

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Session]:
        return Session.model_validate_json(raw) if raw else None

    async def get(self, key: SessionKey) -> Optional[Session]:
        rkey = self._session_key(key)
        raw = await self._redis.get(rkey)
        session = self._decode(raw)
        if session is not None and session.is_expired():
            await self._redis.eval(_COMPARE_AND_DELETE, 1, rkey, raw)
            logger.debug("session_expired", key=str(key))
            return None
        return session

    async def put(self, key: SessionKey, session: Session, ttl: Optional[timedelta] = None) -> Session:
        current = await self.get(key)
        stored = self._prepare(session, (current.version if current else 0) + 1, ttl)
        await self._write(self._redis, self._session_key(key), stored)
        return stored

    async def delete(self, key: SessionKey) -> None:
        await self._redis.delete(self._session_key(key))

    async def compare_and_swap(
        self,
        key: SessionKey,
        expected_version: int,
        new_session: Optional[Session],
    ) -> bool:
        rkey = self._session_key(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(rkey)
                current = self._decode(await pipe.get(rkey))
                live = current is not None and not current.is_expired()
                if (current.version if live else 0) != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if new_session is None:
                    pipe.delete(rkey)
                else:
                    stored = self._prepare(new_session, expected_version + 1, None)
                    self._write_buffered(pipe, rkey, stored)
                await pipe.execute()
                return True
            except WatchError:
                logger.debug("session_cas_watch_error", key=str(key))
                return False

    @staticmethod
    def _expiry_ms(session: Session) -> int:
        return to_epoch_ms(session.expires_at)

    async def _write(self, client, rkey: str, session: Session) -> None:
        if self._expiry_ms(session) <= to_epoch_ms(datetime.now(timezone.utc)):
            await client.delete(rkey)
            return
        await client.set(rkey, session.model_dump_json(), pxat=self._expiry_ms(session))

    def _write_buffered(self, pipe, rkey: str, session: Session) -> None:
        if self._expiry_ms(session) <= to_epoch_ms(datetime.now(timezone.utc)):
            pipe.delete(rkey)
        else:
            pipe.set(rkey, session.model_dump_json(), pxat=self._expiry_ms(session))

    # ── Contact ledger ────────────────────────────────────────

    async def remember_contact(self, key: SessionKey, event_id: Optional[str] = None) -> bool:
        ckey = self._contact_key(key)
        if await self._redis.set(ckey, event_id or _NO_EVENT_ID, nx=True):
            return True
        return event_id is not None and await self._redis.get(ckey) == event_id
