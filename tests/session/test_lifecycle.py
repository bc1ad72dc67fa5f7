"""
Tests for SessionLifecycleManager: login, logout idempotency, restart recovery
and identity changes.
"""

import asyncio
import time

import pytest

from sr_assistant.agents.models import Message, Role
from sr_assistant.core.events import EventType
from sr_assistant.session.lifecycle import SessionLifecycleManager
from sr_assistant.session.models import IdentitySignal, SignalKind
from sr_assistant.session.storage import InMemoryStorage
from sr_assistant.session.store import SESSION_KEY, SessionStore

LOGIN = IdentitySignal(kind=SignalKind.LOGIN, source="test")
LOGOUT = IdentitySignal(kind=SignalKind.LOGOUT, source="test")


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_starts_and_mirrors_session(self, lifecycle, storage, broadcaster, identity):
        queue = broadcaster.subscribe("web")

        session = await lifecycle.on_identity_signal(LOGIN)

        assert session.identity == identity
        assert lifecycle.get_live_session() is session
        assert storage.get(SESSION_KEY)["sessionId"] == session.session_id
        events = drain(queue)
        assert [e.type for e in events] == [EventType.SESSION_STARTED]
        assert events[0].payload == {"sessionId": session.session_id, "displayName": "Jane Doe"}

    @pytest.mark.asyncio
    async def test_login_with_live_session_keeps_it(self, lifecycle, resolver, live_session):
        again = await lifecycle.on_identity_signal(LOGIN)

        assert again is live_session
        assert resolver.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_logins_share_one_resolution(self, lifecycle, resolver):
        first, second = await asyncio.gather(
            lifecycle.on_identity_signal(LOGIN),
            lifecycle.on_identity_signal(LOGIN),
        )

        assert first is second
        assert resolver.calls == 1

    @pytest.mark.asyncio
    async def test_unresolved_login_leaves_no_session(self, lifecycle, resolver):
        resolver.identity = None

        assert await lifecycle.on_identity_signal(LOGIN) is None
        assert lifecycle.get_live_session() is None

    @pytest.mark.asyncio
    async def test_slow_resolver_times_out(self, storage, broadcaster, identity):
        class SlowResolver:
            async def resolve(self, hint=None):
                await asyncio.sleep(5)
                return identity

        lifecycle = SessionLifecycleManager(SessionStore(storage), SlowResolver(), broadcaster, identity_timeout=0.01)

        assert await lifecycle.on_identity_signal(LOGIN) is None
        assert storage.sets == 0

    @pytest.mark.asyncio
    async def test_hint_is_passed_to_resolver(self, lifecycle, resolver):
        await lifecycle.on_identity_signal(IdentitySignal(kind=SignalKind.LOGIN, hint="Jane Doe"))

        assert resolver.hints == ["Jane Doe"]


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, lifecycle, registry, storage, live_session):
        registry.append_message("web", Message(Role.USER, "hello"))

        await lifecycle.on_identity_signal(LOGOUT)

        assert lifecycle.get_live_session() is None
        assert storage.get(SESSION_KEY) is None
        assert registry.channel_ids() == set()

    @pytest.mark.asyncio
    async def test_concurrent_logouts_end_session_once(self, lifecycle, registry, storage, broadcaster, live_session):
        registry.append_message("web", Message(Role.USER, "hello"))
        queue = broadcaster.subscribe("web")

        await asyncio.gather(
            lifecycle.on_identity_signal(IdentitySignal(kind=SignalKind.LOGOUT, source="cookie")),
            lifecycle.on_identity_signal(IdentitySignal(kind=SignalKind.LOGOUT, source="probe")),
            lifecycle.on_identity_signal(IdentitySignal(kind=SignalKind.LOGOUT, source="ui")),
        )

        ended = [e for e in drain(queue) if e.type is EventType.SESSION_ENDED]
        assert len(ended) == 1
        assert ended[0].payload == {"sessionId": live_session.session_id}
        assert storage.deletes == 1

    @pytest.mark.asyncio
    async def test_logout_without_session_is_noop(self, lifecycle, storage, broadcaster):
        queue = broadcaster.subscribe("web")

        await lifecycle.on_identity_signal(LOGOUT)

        assert storage.deletes == 0
        assert drain(queue) == []

    @pytest.mark.asyncio
    async def test_session_ended_reaches_every_subscriber(self, lifecycle, registry, broadcaster, live_session):
        registry.append_message("console", Message(Role.USER, "hello"))
        queue = broadcaster.subscribe("web")

        await lifecycle.on_identity_signal(LOGOUT)

        assert [e.type for e in drain(queue)] == [EventType.SESSION_ENDED]

    @pytest.mark.asyncio
    async def test_relogin_issues_fresh_session_id(self, lifecycle, live_session):
        await lifecycle.on_identity_signal(LOGOUT)
        again = await lifecycle.on_identity_signal(LOGIN)

        assert again.identity == live_session.identity
        assert again.session_id != live_session.session_id

    @pytest.mark.asyncio
    async def test_login_waits_for_logout_in_progress(self, lifecycle, live_session):
        logout = asyncio.create_task(lifecycle.on_identity_signal(LOGOUT))
        await asyncio.sleep(0)

        session = await lifecycle.on_identity_signal(LOGIN)
        await logout

        assert session is not None
        assert session.session_id != live_session.session_id
        assert lifecycle.get_live_session() is session

    @pytest.mark.asyncio
    async def test_logout_while_login_is_mirroring_leaves_nothing_behind(self, resolver, broadcaster):
        class SlowSetStorage(InMemoryStorage):
            def set(self, key, value):
                time.sleep(0.2)
                super().set(key, value)

        storage = SlowSetStorage()
        lifecycle = SessionLifecycleManager(SessionStore(storage), resolver, broadcaster)
        queue = broadcaster.subscribe("web")

        login = asyncio.create_task(lifecycle.on_identity_signal(LOGIN))
        await asyncio.sleep(0.05)
        await lifecycle.on_identity_signal(LOGOUT)

        assert await login is None
        assert lifecycle.get_live_session() is None
        assert storage.get(SESSION_KEY) is None
        assert [e.type for e in drain(queue)] == [EventType.SESSION_ENDED]
        restarted = SessionLifecycleManager(SessionStore(storage), resolver, broadcaster)
        assert restarted.get_live_session() is None

    @pytest.mark.asyncio
    async def test_session_end_listeners_see_the_ended_session(self, lifecycle, live_session):
        ended = []
        lifecycle.add_session_end_listener(ended.append)

        await lifecycle.on_identity_signal(LOGOUT)
        await lifecycle.on_identity_signal(LOGOUT)

        assert ended == [live_session]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_logout(self, lifecycle, broadcaster, live_session):
        def broken(session):
            raise RuntimeError("boom")

        ended = []
        lifecycle.add_session_end_listener(broken)
        lifecycle.add_session_end_listener(ended.append)
        queue = broadcaster.subscribe("web")

        await lifecycle.on_identity_signal(LOGOUT)

        assert lifecycle.get_live_session() is None
        assert ended == [live_session]
        assert [e.type for e in drain(queue)] == [EventType.SESSION_ENDED]


class TestRestart:
    @pytest.mark.asyncio
    async def test_session_survives_restart(self, storage, broadcaster, resolver, live_session):
        restarted = SessionLifecycleManager(SessionStore(storage), resolver, broadcaster)

        recovered = restarted.get_live_session()

        assert recovered.session_id == live_session.session_id
        assert recovered.identity == live_session.identity
        assert resolver.calls == 1

    @pytest.mark.asyncio
    async def test_logged_out_session_stays_gone_after_restart(self, lifecycle, storage, broadcaster, resolver, live_session):
        await lifecycle.on_identity_signal(LOGOUT)

        restarted = SessionLifecycleManager(SessionStore(storage), resolver, broadcaster)

        assert restarted.get_live_session() is None


class TestResolveIdentity:
    @pytest.mark.asyncio
    async def test_same_subject_keeps_session(self, lifecycle, live_session):
        assert await lifecycle.resolve_identity() is live_session

    @pytest.mark.asyncio
    async def test_identity_change_starts_new_session(
        self, lifecycle, resolver, broadcaster, other_identity, live_session
    ):
        queue = broadcaster.subscribe("web")
        resolver.identity = other_identity

        session = await lifecycle.resolve_identity()

        assert session.identity == other_identity
        assert session.session_id != live_session.session_id
        assert [e.type for e in drain(queue)] == [EventType.SESSION_ENDED, EventType.SESSION_STARTED]

    @pytest.mark.asyncio
    async def test_lost_identity_is_implicit_logout(self, lifecycle, resolver, live_session):
        resolver.identity = None

        await lifecycle.revalidate()

        assert lifecycle.get_live_session() is None

    @pytest.mark.asyncio
    async def test_revalidate_without_session_does_not_resolve(self, lifecycle, resolver):
        await lifecycle.revalidate()

        assert resolver.calls == 0
