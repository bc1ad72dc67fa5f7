"""
Logout detectors.

Three independent sources can notice that the user is gone:
- cookie change notifications from the UI (immediate)
- a periodic liveness re-check (catches missed notifications)
- a periodic authorization probe against the Ticketing API

They share nothing. Each one only emits an IdentitySignal into
SessionLifecycleManager.on_identity_signal, whose guard absorbs duplicates.
"""

from __future__ import annotations

import asyncio
import logging

from sr_assistant.core.client import APIClient
from sr_assistant.core.errors import AuthorizationFailed, ToolUnavailable
from sr_assistant.session.lifecycle import SessionLifecycleManager
from sr_assistant.session.models import IdentitySignal, SignalKind

logger = logging.getLogger(__name__)


class CookieLogoutDetector:
    """Translate Ticketing-domain cookie changes into identity signals."""

    LOGIN_COOKIE = "UserSettings"
    SESSION_COOKIE_MARKERS = ("Session", "Auth", "SID")

    def __init__(self, lifecycle: SessionLifecycleManager, domain: str | None = None):
        self._lifecycle = lifecycle
        self._domain = (domain or "").lower()

    def classify(self, name: str, removed: bool, domain: str | None = None) -> SignalKind | None:
        if self._domain and domain and self._domain not in domain.lower():
            return None
        if removed:
            if name == self.LOGIN_COOKIE or any(marker in name for marker in self.SESSION_COOKIE_MARKERS):
                return SignalKind.LOGOUT
            return None
        if name == self.LOGIN_COOKIE:
            return SignalKind.LOGIN
        return None

    async def on_cookie_changed(self, name: str, removed: bool, domain: str | None = None) -> SignalKind | None:
        kind = self.classify(name, removed, domain)
        if kind is None:
            return None
        logger.info(f"Cookie {name} {'removed' if removed else 'set'}; emitting {kind.value}")
        await self._lifecycle.on_identity_signal(IdentitySignal(kind=kind, source="cookie"))
        return kind


class _PeriodicDetector:
    """Runs ``tick`` every ``interval`` seconds until stopped. Interval 0 disables it."""

    name = "periodic"

    def __init__(self, interval: float):
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0:
            logger.info(f"{self.name} disabled")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"{self.name} started (every {self._interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"{self.name} tick failed: {e}")

    async def tick(self) -> None:
        raise NotImplementedError


class PeriodicLivenessCheck(_PeriodicDetector):
    name = "liveness-check"

    def __init__(self, lifecycle: SessionLifecycleManager, interval: float):
        super().__init__(interval)
        self._lifecycle = lifecycle

    async def tick(self) -> None:
        await self._lifecycle.revalidate()


class AuthorizationProbe(_PeriodicDetector):
    """Treat a 401/403 from a cheap authenticated read as an implicit logout."""

    name = "authorization-probe"
    PROBE_ENDPOINT = "/HEAT/api/odata/businessobject/employees"

    def __init__(self, lifecycle: SessionLifecycleManager, client: APIClient, interval: float):
        super().__init__(interval)
        self._lifecycle = lifecycle
        self._client = client

    async def tick(self) -> None:
        if self._lifecycle.get_live_session() is None:
            return
        try:
            await self._client.get(self.PROBE_ENDPOINT, params={"$top": "1", "$select": "RecId"})
        except AuthorizationFailed as e:
            logger.warning(f"Authorization probe rejected ({e.status_code}); emitting LOGOUT")
            await self._lifecycle.on_identity_signal(IdentitySignal(kind=SignalKind.LOGOUT, source="probe"))
        except ToolUnavailable as e:
            # Unreachable is not the same as logged out
            logger.info(f"Authorization probe inconclusive: {e}")
