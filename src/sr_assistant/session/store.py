"""
Session Store: the in-memory session plus its durable mirror.

Memory is the source of truth. Durable storage is a best-effort mirror
for restart survival, so storage failures are logged and never raised.
Only the SessionLifecycleManager writes here.
"""

from __future__ import annotations

import asyncio
import logging

from sr_assistant.core.logging import short_id
from sr_assistant.session.models import Session
from sr_assistant.session.storage import KeyValueStorage

logger = logging.getLogger(__name__)

SESSION_KEY = "current_session"


class SessionStore:
    def __init__(self, storage: KeyValueStorage, key: str = SESSION_KEY):
        self._storage = storage
        self._key = key
        self._session: Session | None = None
        self._mirror_lock = asyncio.Lock()

    @property
    def current(self) -> Session | None:
        return self._session

    def load_durable(self) -> Session | None:
        """Read the mirrored session (used once after a restart)."""
        try:
            data = self._storage.get(self._key)
        except Exception as e:
            logger.error(f"Failed to read durable session: {e}")
            return None
        if not data:
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Discarding unreadable durable session: {e}")
            return None

    def adopt(self, session: Session) -> None:
        """Take a session recovered from durable storage into memory."""
        self._session = session

    async def persist(self, session: Session) -> None:
        self._session = session
        # Mirror writes land in the order they were issued
        async with self._mirror_lock:
            if self._session is not session:
                logger.info(f"Session {short_id(session.session_id)} replaced before it was mirrored; skipping")
                return
            try:
                await asyncio.to_thread(self._storage.set, self._key, session.to_dict())
            except Exception as e:
                logger.error(f"Failed to mirror session {short_id(session.session_id)}: {e}")

    async def clear(self) -> None:
        # Memory first: concurrent readers must never see a cleared mirror
        # while memory still holds the old session.
        self._session = None
        async with self._mirror_lock:
            try:
                await asyncio.to_thread(self._storage.delete, self._key)
            except Exception as e:
                logger.error(f"Failed to clear durable session: {e}")
