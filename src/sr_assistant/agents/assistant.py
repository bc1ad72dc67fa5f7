"""
Service desk assistant: wiring and per-channel scheduling.

Each channel gets a mailbox (queue + worker task). Turns and commits
for one channel run strictly in arrival order; different channels run
concurrently and share nothing but the session and registry. A closing
channel drains its mailbox before it is discarded, so a dispatched
commit is always allowed to finish. When a session ends, idle mailboxes
are closed; a busy one is closed after its job once its channel is gone.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping

from sr_assistant.agents.chat_history.conversation_registry import ConversationRegistry
from sr_assistant.agents.config.agent_config import AgentConfig
from sr_assistant.agents.llm_provider import SemanticKernelGenerator
from sr_assistant.agents.plugins.ivanti_plugin import IvantiPlugin
from sr_assistant.agents.request_orchestrator import CommitOutcome, RequestCreationOrchestrator, TurnResult
from sr_assistant.core.client import APIClient
from sr_assistant.core.events import EventBroadcaster, EventType
from sr_assistant.session.detectors import AuthorizationProbe, CookieLogoutDetector, PeriodicLivenessCheck
from sr_assistant.session.identity import IvantiIdentityResolver
from sr_assistant.session.lifecycle import SessionLifecycleManager
from sr_assistant.session.models import IdentitySignal, Session, SignalKind
from sr_assistant.session.storage import build_storage
from sr_assistant.session.store import SessionStore

logger = logging.getLogger(__name__)

_CLOSE = object()


class ChannelMailbox:
    """Runs submitted jobs for one channel one at a time, in order."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._busy = False
        self._task = asyncio.create_task(self._run(), name=f"mailbox-{channel_id}")

    async def submit(self, job: Callable[[], Awaitable[Any]]) -> Any:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((job, future))
        # A caller that goes away must not cancel the job itself
        return await asyncio.shield(future)

    @property
    def idle(self) -> bool:
        return not self._busy and self._queue.empty()

    async def close(self) -> None:
        await self._queue.put(_CLOSE)
        await self._task

    def close_nowait(self) -> asyncio.Task:
        """Ask the worker to stop after queued jobs; returns the worker task."""
        self._queue.put_nowait(_CLOSE)
        return self._task

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            job, future = item
            self._busy = True
            try:
                result = await job()
            except Exception as e:
                logger.exception(f"Channel {self.channel_id} job failed")
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._busy = False


class ServiceDeskAssistant:
    def __init__(
        self,
        lifecycle: SessionLifecycleManager,
        registry: ConversationRegistry,
        orchestrator: RequestCreationOrchestrator,
        broadcaster: EventBroadcaster,
        cookie_detector: CookieLogoutDetector,
        detectors: Iterable[Any] = (),
        closers: Iterable[Callable[[], Awaitable[None]]] = (),
    ):
        self.lifecycle = lifecycle
        self.registry = registry
        self.orchestrator = orchestrator
        self.broadcaster = broadcaster
        self.cookie_detector = cookie_detector
        self._detectors = list(detectors)
        self._closers = list(closers)
        self._mailboxes: dict[str, ChannelMailbox] = {}
        self._retired: set[asyncio.Task] = set()
        lifecycle.add_session_end_listener(self._on_session_end)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        session = self.lifecycle.get_live_session()
        if session is None:
            await self.lifecycle.on_identity_signal(IdentitySignal(kind=SignalKind.LOGIN, source="startup"))
        for detector in self._detectors:
            detector.start()

    async def stop(self) -> None:
        for detector in self._detectors:
            await detector.stop()
        for channel_id in list(self._mailboxes):
            await self._close_mailbox(channel_id)
        if self._retired:
            await asyncio.gather(*self._retired)
        for close in self._closers:
            await close()

    # ------------------------------------------------------------------
    # UI commands
    # ------------------------------------------------------------------
    def _mailbox(self, channel_id: str) -> ChannelMailbox:
        mailbox = self._mailboxes.get(channel_id)
        if mailbox is None:
            mailbox = ChannelMailbox(channel_id)
            self._mailboxes[channel_id] = mailbox
        return mailbox

    async def handle_message(self, channel_id: str, text: str) -> TurnResult:
        result = await self._mailbox(channel_id).submit(lambda: self.orchestrator.handle_turn(channel_id, text))
        self._release_if_orphaned(channel_id)
        self.broadcaster.publish(
            channel_id,
            EventType.MESSAGE_RECEIVED,
            {"role": "assistant", "content": result.reply, "state": result.state.value},
        )
        return result

    async def handle_commit(
        self,
        channel_id: str,
        offering_id: str,
        values: Mapping[str, Any],
        commit_id: str | None = None,
    ) -> CommitOutcome:
        outcome = await self._mailbox(channel_id).submit(
            lambda: self.orchestrator.commit(channel_id, offering_id, values, commit_id)
        )
        self._release_if_orphaned(channel_id)
        self.broadcaster.publish(
            channel_id,
            EventType.MESSAGE_RECEIVED,
            {"role": "assistant", "content": outcome.message, "state": outcome.state.value},
        )
        return outcome

    async def close_channel(self, channel_id: str) -> None:
        """UI surface closed: finish queued work, then discard the channel."""
        await self._close_mailbox(channel_id)
        self.registry.discard(channel_id)

    async def _close_mailbox(self, channel_id: str) -> None:
        mailbox = self._mailboxes.pop(channel_id, None)
        if mailbox is not None:
            await mailbox.close()

    def _on_session_end(self, session: Session) -> None:
        for channel_id in list(self._mailboxes):
            self._retire_if_idle(channel_id)

    def _release_if_orphaned(self, channel_id: str) -> None:
        if self.registry.get(channel_id) is None:
            self._retire_if_idle(channel_id)

    def _retire_if_idle(self, channel_id: str) -> None:
        mailbox = self._mailboxes.get(channel_id)
        if mailbox is None or not mailbox.idle:
            return
        del self._mailboxes[channel_id]
        task = mailbox.close_nowait()
        self._retired.add(task)
        task.add_done_callback(self._retired.discard)
        logger.debug(f"Closed idle mailbox for channel {channel_id}")

    async def on_identity_signal(self, signal: IdentitySignal) -> Session | None:
        return await self.lifecycle.on_identity_signal(signal)

    async def on_cookie_changed(self, name: str, removed: bool, domain: str | None = None) -> SignalKind | None:
        return await self.cookie_detector.on_cookie_changed(name, removed, domain)

    def live_session(self) -> Session | None:
        return self.lifecycle.get_live_session()


def build_assistant(config: AgentConfig) -> ServiceDeskAssistant:
    """Wire the production collaborators from ``config``."""
    broadcaster = EventBroadcaster()
    store = SessionStore(build_storage(config))

    client = APIClient(config.ivanti_base_url, api_key=config.ivanti_api_key, timeout=config.identity_timeout)
    lifecycle = SessionLifecycleManager(
        store,
        IvantiIdentityResolver(client),
        broadcaster,
        identity_timeout=config.identity_timeout,
    )
    registry = ConversationRegistry(lifecycle)
    lifecycle.attach_registry(registry)

    gateway = IvantiPlugin(
        base_url=config.ivanti_base_url,
        api_key=config.ivanti_api_key,
        offerings_template_id=config.ivanti_offerings_template_id,
        timeout=config.ivanti_timeout,
        connect_timeout=config.ivanti_connect_timeout,
        cache_ttl=config.catalog_cache_ttl,
    )
    orchestrator = RequestCreationOrchestrator(registry, lifecycle, gateway, SemanticKernelGenerator(config), config)
    lifecycle.add_session_end_listener(lambda session: gateway.clear_cache())

    return ServiceDeskAssistant(
        lifecycle=lifecycle,
        registry=registry,
        orchestrator=orchestrator,
        broadcaster=broadcaster,
        cookie_detector=CookieLogoutDetector(lifecycle, domain=config.ivanti_domain),
        detectors=[
            PeriodicLivenessCheck(lifecycle, config.liveness_check_interval),
            AuthorizationProbe(lifecycle, client, config.auth_probe_interval),
        ],
        closers=[client.close],
    )
