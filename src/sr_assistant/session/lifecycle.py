"""
Session Lifecycle Manager

Single writer of the Session Store. Every identity change in the process
goes through here:
- LOGIN signals (honored only when no session is live)
- LOGOUT signals from any detector (idempotent, reentrancy-guarded)
- on-demand resolution for callers that need an identity before any
  signal has fired

A new session always gets a fresh session id. The Conversation Registry
compares that id against each channel to drop history from an earlier
login, so no cross-component lock is needed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable

from sr_assistant.core.events import EventBroadcaster, EventType
from sr_assistant.core.logging import short_id
from sr_assistant.session.identity import IdentityResolver
from sr_assistant.session.models import Identity, IdentitySignal, Session, SignalKind
from sr_assistant.session.store import SessionStore

if TYPE_CHECKING:
    from sr_assistant.agents.chat_history.conversation_registry import ConversationRegistry

logger = logging.getLogger(__name__)


class SessionLifecycleManager:
    def __init__(
        self,
        store: SessionStore,
        resolver: IdentityResolver,
        broadcaster: EventBroadcaster,
        identity_timeout: float = 10.0,
    ):
        self._store = store
        self._resolver = resolver
        self._broadcaster = broadcaster
        self._identity_timeout = identity_timeout
        self._registry: ConversationRegistry | None = None
        self._session_end_listeners: list[Callable[[Session], None]] = []

        self._logout_in_progress = False
        self._logout_done = asyncio.Event()
        self._logout_done.set()
        self._login_task: asyncio.Task | None = None
        self._durable_checked = False

    def attach_registry(self, registry: "ConversationRegistry") -> None:
        self._registry = registry

    def add_session_end_listener(self, listener: Callable[[Session], None]) -> None:
        """Call ``listener`` with the ended session every time a session ends."""
        self._session_end_listeners.append(listener)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------
    async def on_identity_signal(self, signal: IdentitySignal) -> Session | None:
        """Handle a LOGIN or LOGOUT signal. Safe to call repeatedly and concurrently."""
        logger.info(f"Identity signal {signal.kind.value} from {signal.source}")
        if signal.kind is SignalKind.LOGOUT:
            await self._logout(signal.source)
            return None
        return await self._login(signal.hint)

    async def _logout(self, source: str) -> bool:
        if self._logout_in_progress:
            logger.debug(f"Logout already in progress; duplicate signal from {source} ignored")
            return False
        session = self.get_live_session()
        if session is None:
            logger.debug(f"Logout from {source} with no live session; nothing to do")
            return False

        # Set before the first await so concurrent detectors see it
        self._logout_in_progress = True
        self._logout_done.clear()
        self._durable_checked = True
        try:
            channel_ids = self._registry.channel_ids() if self._registry else set()
            await self._store.clear()
            if self._registry:
                self._registry.clear_all()
            self._notify_session_end(session)
            self._broadcaster.broadcast(
                EventType.SESSION_ENDED,
                {"sessionId": session.session_id},
                extra_channels=channel_ids,
            )
            logger.info(f"Session {short_id(session.session_id)} ended (source={source})")
        finally:
            self._logout_in_progress = False
            self._logout_done.set()
        return True

    async def _login(self, hint: str | None) -> Session | None:
        await self._logout_done.wait()

        live = self.get_live_session()
        if live is not None:
            logger.debug("LOGIN ignored; a session is already live")
            return live

        # Concurrent LOGINs share one resolution
        task = self._login_task
        if task is None or task.done():
            task = asyncio.create_task(self._resolve_and_start(hint))
            self._login_task = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._login_task is task and task.done():
                self._login_task = None

    async def _resolve_and_start(self, hint: str | None) -> Session | None:
        identity = await self._resolve(hint)
        if identity is None:
            logger.info("LOGIN did not produce an identity; no live session")
            return None
        return await self._start_session(identity)

    # ------------------------------------------------------------------
    # Reads and on-demand resolution
    # ------------------------------------------------------------------
    def get_live_session(self) -> Session | None:
        """Current session from memory, falling back to durable storage once after a restart."""
        if self._logout_in_progress:
            return None
        session = self._store.current
        if session is None and not self._durable_checked:
            self._durable_checked = True
            session = self._store.load_durable()
            if session is not None:
                self._store.adopt(session)
                logger.info(f"Recovered session {short_id(session.session_id)} from durable storage")
        return session

    async def resolve_identity(self, hint: str | None = None, source: str = "resolve") -> Session | None:
        """
        Resolve the identity now and return the matching live session.

        Losing the identity while a session is live is an implicit logout.
        A different subject ends the old session and starts a new one.
        """
        had_session = self.get_live_session() is not None
        identity = await self._resolve(hint)

        current = self.get_live_session()
        if identity is None:
            if had_session or current is not None:
                logger.warning(f"Identity lost while a session was live (source={source}); logging out")
                await self._logout(source)
            return None

        if current is not None:
            if current.identity.subject_id == identity.subject_id:
                return current
            logger.info(
                f"Identity changed from {current.identity.display_name} to {identity.display_name}; "
                f"ending session {short_id(current.session_id)}"
            )
            await self._logout(f"{source}:identity-change")

        return await self._start_session(identity)

    async def revalidate(self) -> None:
        """Re-check that the live session still matches the backend identity."""
        if self.get_live_session() is None:
            return
        await self.resolve_identity(source="liveness")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _resolve(self, hint: str | None) -> Identity | None:
        try:
            return await asyncio.wait_for(self._resolver.resolve(hint), timeout=self._identity_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Identity resolution timed out after {self._identity_timeout}s")
        except Exception as e:
            logger.error(f"Identity resolution failed: {e}")
        return None

    async def _start_session(self, identity: Identity) -> Session | None:
        await self._logout_done.wait()

        current = self.get_live_session()
        if current is not None:
            if current.identity.subject_id == identity.subject_id:
                return current
            # Someone else logged in while we were resolving; theirs wins
            logger.info("Session established concurrently for another identity; keeping it")
            return current

        session = Session.start(identity)
        self._durable_checked = True
        await self._store.persist(session)
        if self._store.current is not session:
            # A logout landed while the session was being mirrored
            logger.info(f"Session {short_id(session.session_id)} ended before it was established")
            return None
        self._broadcaster.broadcast(
            EventType.SESSION_STARTED,
            {"sessionId": session.session_id, "displayName": identity.display_name},
        )
        logger.info(f"Session {short_id(session.session_id)} started for {identity.display_name}")
        return session

    def _notify_session_end(self, session: Session) -> None:
        for listener in self._session_end_listeners:
            try:
                listener(session)
            except Exception:
                logger.exception(f"Session-end listener {listener!r} failed")
