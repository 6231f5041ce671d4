"""Session lifecycle: bounded in-memory cache in front of the SQLite store.

The cache is an LRU map with an idle time-to-live. An entry leaving the
cache, whether pushed out by capacity or swept for idleness, is flushed to
the store first. Failed writes never block the caller: they are logged and
retried by a background task that holds its own reference to the session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from conversion_agent.errors import PersistenceFailure
from conversion_agent.models.domain import Message, Phase, Session, new_session_id, utcnow
from conversion_agent.models.store import SqliteStore
from conversion_agent.services.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    session: Session
    persisted: int = 0  # messages already written to the store
    touched: float = 0.0


class SessionStore:
    def __init__(
        self,
        store: SqliteStore,
        capacity: int = 1000,
        idle_timeout: float = 24 * 60 * 60,
        retry_attempts: int = 3,
        retry_delay: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.capacity = capacity
        self.idle_timeout = idle_timeout
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._clock = clock
        self._cache: OrderedDict[str, _Entry] = OrderedDict()
        self._locks = KeyedLocks()
        self._retries: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._cache

    def lock(self, session_id: str) -> asyncio.Lock:
        """Mutex serializing every handler of one session."""
        return self._locks.get(session_id)

    def _idle(self, entry: _Entry) -> bool:
        return self._clock() - entry.touched > self.idle_timeout

    # -- Lookup --

    async def get_or_create(self, session_id: str | None = None, product_id: str | None = None) -> Session:
        """Return the cached session, hydrate it from the store, or start a new one."""
        session_id = session_id or new_session_id()

        entry = self._cache.get(session_id)
        if entry is not None and self._idle(entry):
            await self.evict(session_id)
            entry = None
        if entry is not None:
            entry.touched = self._clock()
            self._cache.move_to_end(session_id)
            if product_id and entry.session.product_id is None:
                entry.session.product_id = product_id
            return entry.session

        try:
            session = await self.store.load_session(session_id)
        except PersistenceFailure as exc:
            logger.warning("Could not hydrate session %s, starting fresh: %s", session_id, exc)
            session = None

        if session is None:
            session = Session(session_id=session_id, product_id=product_id)
            persisted = 0
            logger.info("Created session %s", session_id)
        else:
            persisted = len(session.messages)
            if product_id and session.product_id is None:
                session.product_id = product_id
            logger.info("Hydrated session %s with %d messages", session_id, persisted)

        await self._insert(_Entry(session=session, persisted=persisted, touched=self._clock()))
        return session

    async def _insert(self, entry: _Entry):
        session_id = entry.session.session_id
        self._cache[session_id] = entry
        self._cache.move_to_end(session_id)
        while len(self._cache) > self.capacity:
            oldest = next(iter(self._cache))
            await self.evict(oldest)

    # -- Mutation --

    def append(self, session: Session, message: Message):
        session.messages.append(message)
        session.last_activity = message.timestamp
        entry = self._cache.get(session.session_id)
        if entry is not None:
            entry.touched = self._clock()

    async def _flush(self, session: Session) -> bool:
        entry = self._cache.get(session.session_id)
        persisted = entry.persisted if entry is not None and entry.session is session else 0
        total = len(session.messages)
        pending = list(enumerate(session.messages))[persisted:total]
        try:
            await self.store.save_session(session, pending)
        except PersistenceFailure as exc:
            logger.warning("PersistenceFailure for session %s: %s", session.session_id, exc)
            return False
        if entry is not None and entry.session is session:
            entry.persisted = max(entry.persisted, total)
        return True

    async def persist(self, session: Session) -> bool:
        """Write the session and its new messages; on failure, retry in the background."""
        if await self._flush(session):
            return True
        self._schedule_retry(session)
        return False

    def _schedule_retry(self, session: Session):
        task = self._retries.get(session.session_id)
        if task is not None and not task.done():
            return
        self._retries[session.session_id] = asyncio.create_task(self._retry(session))

    async def _retry(self, session: Session):
        for attempt in range(1, self.retry_attempts + 1):
            await asyncio.sleep(self.retry_delay * attempt)
            if await self._flush(session):
                logger.info("Session %s persisted on retry %d", session.session_id, attempt)
                return
        logger.error(
            "Giving up persisting session %s after %d attempts", session.session_id, self.retry_attempts
        )

    def _cancel_retry(self, session_id: str) -> bool:
        task = self._retries.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    async def reset(self, session_id: str, product_id: str | None = None) -> Session:
        """Replace the history with a fresh one; the cart is not touched.

        Raises PersistenceFailure when the stored history cannot be cleared,
        leaving the cached session as it was.
        """
        had_retry = self._cancel_retry(session_id)
        previous = await self.get_or_create(session_id)
        try:
            await self.store.clear_messages(session_id)
        except PersistenceFailure as exc:
            logger.warning("Could not clear stored history of %s, keeping it: %s", session_id, exc)
            if had_retry:
                self._schedule_retry(previous)
            raise

        session = Session(
            session_id=session_id,
            product_id=product_id or previous.product_id,
            customer_id=previous.customer_id,
            current_phase=Phase.RAPPORT_BUILDING,
            created_at=previous.created_at,
            last_activity=utcnow(),
        )
        self._cache[session_id] = _Entry(session=session, persisted=0, touched=self._clock())
        self._cache.move_to_end(session_id)
        await self.persist(session)
        logger.info("Reset session %s (product %s)", session_id, session.product_id)
        return session

    # -- Eviction --

    async def evict(self, session_id: str) -> bool:
        """Flush the session to the store, then drop it from memory."""
        entry = self._cache.get(session_id)
        if entry is None:
            return False
        if not await self._flush(entry.session):
            self._schedule_retry(entry.session)
        self._cache.pop(session_id, None)
        self._locks.discard(session_id)
        logger.debug("Evicted session %s", session_id)
        return True

    async def sweep(self) -> list[str]:
        """Evict every session idle for longer than the timeout; returns their ids."""
        idle = [sid for sid, entry in self._cache.items() if self._idle(entry)]
        for session_id in idle:
            await self.evict(session_id)
        if idle:
            logger.info("Swept %d idle sessions", len(idle))
        return idle

    async def destroy(self, session_id: str):
        """End the session for good: drop it from memory and mark it ended in the store."""
        self._cancel_retry(session_id)
        self._cache.pop(session_id, None)
        self._locks.discard(session_id)
        await self.store.end_session(session_id)
        # a reused id must start again from seq 0
        await self.store.clear_messages(session_id)
        logger.info("Destroyed session %s", session_id)

    async def list_sessions(self, limit: int = 20, offset: int = 0) -> list[dict]:
        return await self.store.list_sessions(limit=limit, offset=offset)

    async def close(self):
        """Flush every cached session and stop pending retries (shutdown)."""
        for session_id in list(self._cache):
            await self.evict(session_id)
        for task in self._retries.values():
            if not task.done():
                task.cancel()
        self._retries.clear()
