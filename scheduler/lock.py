"""
DistributedLock — named cross-process mutex on PostgreSQL advisory locks.

``pg_try_advisory_lock`` is session scoped, so each held lock keeps its own
pooled connection checked out until it is released.  Any database error
while acquiring counts as "not acquired"; a lock is never reported as held
unless the server said so.

A pooled connection that is merely closed goes back to the pool with its
session, and its advisory locks, still alive.  Every error path therefore
invalidates the connection so the server session ends and the lock drops.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRY_LOCK = text("SELECT pg_try_advisory_lock(:key)")
_UNLOCK = text("SELECT pg_advisory_unlock(:key)")


class DistributedLock:
    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._held: Dict[str, AsyncConnection] = {}
        self._acquire_errors: Dict[str, Exception] = {}

    @staticmethod
    def lock_key(name: str) -> int:
        """Stable signed 64-bit key for ``name`` (first 8 bytes of SHA-256)."""
        digest = hashlib.sha256(name.encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big", signed=True)

    async def try_acquire(self, name: str) -> bool:
        self._acquire_errors.pop(name, None)
        if name in self._held:
            # Not reentrant: a second holder in this process would share the session lock.
            return False

        key = self.lock_key(name)
        conn: Optional[AsyncConnection] = None
        try:
            conn = await self._engine.connect()
            result = await conn.execute(_TRY_LOCK, {"key": key})
            acquired = bool(result.scalar())
            await conn.commit()
        except Exception as exc:
            logger.error("Could not acquire lock %r: %s", name, exc)
            self._acquire_errors[name] = exc
            if conn is not None:
                await self._discard(conn)
            return False

        if not acquired:
            await self._close_quietly(conn)
            return False
        self._held[name] = conn
        logger.debug("Acquired lock %r (key=%d)", name, key)
        return True

    def acquire_error(self, name: str) -> Optional[Exception]:
        """The store error behind the last failed ``try_acquire(name)``, if any."""
        return self._acquire_errors.get(name)

    async def release(self, name: str) -> None:
        conn = self._held.pop(name, None)
        if conn is None:
            return
        try:
            await conn.execute(_UNLOCK, {"key": self.lock_key(name)})
            await conn.commit()
        except Exception as exc:
            logger.error("Could not release lock %r cleanly: %s", name, exc)
            await self._discard(conn)
            return
        logger.debug("Released lock %r", name)
        await self._close_quietly(conn)

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        """``async with lock.hold("job") as acquired:`` releases on exit."""
        acquired = await self.try_acquire(name)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(name)

    async def with_lock(self, name: str, fn: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Run ``fn`` only if the lock is acquired; ``None`` means skipped."""
        async with self.hold(name) as acquired:
            if not acquired:
                return None
            return await fn()

    def is_held(self, name: str) -> bool:
        return name in self._held

    async def _discard(self, conn: Any) -> None:
        """Invalidate ``conn`` so its server session, and any lock on it, ends."""
        try:
            await conn.invalidate()
        except Exception as exc:
            logger.warning("Error invalidating lock connection: %s", exc)
        await self._close_quietly(conn)

    @staticmethod
    async def _close_quietly(conn: Any) -> None:
        try:
            await conn.close()
        except Exception as exc:
            logger.warning("Error closing lock connection: %s", exc)
