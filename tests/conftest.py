"""
Shared fixtures and fakes.

The fakes stand in for the three external collaborators (identity backend,
Ticketing API and LLM) so the session and request-creation layers can be
driven end to end without network access.
"""

import asyncio
import os

import pytest
import pytest_asyncio

os.environ.setdefault("LOG_LEVEL", "WARNING")

from sr_assistant.agents.chat_history.conversation_registry import ConversationRegistry
from sr_assistant.agents.config.agent_config import AgentConfig
from sr_assistant.agents.models import CreatedRecord, FieldOption, FieldSpec, Offering, OfferingSchema
from sr_assistant.agents.request_orchestrator import RequestCreationOrchestrator
from sr_assistant.core.events import EventBroadcaster
from sr_assistant.session.lifecycle import SessionLifecycleManager
from sr_assistant.session.models import Identity, IdentitySignal, SignalKind
from sr_assistant.session.storage import InMemoryStorage
from sr_assistant.session.store import SessionStore


# =============================================================================
# Fakes
# =============================================================================

class FakeResolver:
    """Returns whatever identity the test puts in ``identity``."""

    def __init__(self, identity=None, delay: float = 0):
        self.identity = identity
        self.delay = delay
        self.calls = 0
        self.hints = []

    async def resolve(self, hint=None):
        self.calls += 1
        self.hints.append(hint)
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        return self.identity


class CountingStorage(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.sets = 0
        self.deletes = 0

    def set(self, key, value):
        self.sets += 1
        super().set(key, value)

    def delete(self, key):
        self.deletes += 1
        super().delete(key)


class FakeGateway:
    """In-memory Tool Gateway. ``fail`` queues errors raised before the next calls of a method."""

    def __init__(self, offerings, schemas, record=None):
        self.offerings = list(offerings)
        self.schemas = dict(schemas)
        self.record = record or CreatedRecord(record_id="REC-0001", record_number="SR-1001")
        self.failures = {}
        self.calls = []

    def fail(self, method, *errors):
        self.failures.setdefault(method, []).extend(errors)

    def count(self, method):
        return sum(1 for name, _ in self.calls if name == method)

    async def _call(self, method, *args):
        self.calls.append((method, args))
        await asyncio.sleep(0)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    async def list_offerings(self):
        await self._call("list_offerings")
        return list(self.offerings)

    async def get_field_schema(self, offering_id):
        await self._call("get_field_schema", offering_id)
        return self.schemas[offering_id]

    async def create_record(self, offering_id, values, schema=None, requester=None):
        await self._call("create_record", offering_id, dict(values), requester)
        return self.record


class FakeGenerator:
    """Replies from a queue (then ``default``) and keeps every grounded context it was given."""

    def __init__(self, default="Okay."):
        self.default = default
        self.replies = []
        self.contexts = []
        self.error = None
        self.before_reply = None

    def queue(self, *replies):
        self.replies.extend(replies)

    async def generate(self, grounded, history):
        self.contexts.append(grounded)
        if self.before_reply is not None:
            await self.before_reply()
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if self.replies else self.default


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


# =============================================================================
# Domain data
# =============================================================================

@pytest.fixture
def identity():
    return Identity(
        subject_id="EMP-1",
        display_name="Jane Doe",
        roles=frozenset({"SelfService"}),
        email="jane.doe@example.com",
        login_id="jdoe",
        department="Finance",
        location="Head Office",
    )


@pytest.fixture
def other_identity():
    return Identity(subject_id="EMP-2", display_name="John Roe", email="john.roe@example.com")


@pytest.fixture
def offerings():
    return [
        Offering("off-laptop", "Laptop Request", "New or replacement laptop", "Hardware"),
        Offering("off-software", "Software Installation", "Install approved software", "Software"),
        Offering("off-password", "Password Reset", "Reset a forgotten password", "Access"),
    ]


@pytest.fixture
def laptop_schema():
    return OfferingSchema(
        offering_id="off-laptop",
        name="Laptop Request",
        fields=(
            FieldSpec("RequesterEmail", "Requester Email", required=True, record_id="P-EMAIL"),
            FieldSpec("Justification", "Business Justification", required=True, record_id="P-JUST"),
            FieldSpec(
                "Model",
                "Model",
                required=True,
                type="combo",
                options=(FieldOption("Standard", "O-STD"), FieldOption("Performance", "O-PERF")),
                record_id="P-MODEL",
            ),
            FieldSpec("Notes", "Notes"),
        ),
    )


@pytest.fixture
def password_schema():
    return OfferingSchema(
        offering_id="off-password",
        name="Password Reset",
        fields=(FieldSpec("Username", "Username", required=True, record_id="P-USER"),),
    )


# =============================================================================
# Wired components
# =============================================================================

@pytest.fixture
def config():
    config = AgentConfig()
    config.tool_retries = 2
    config.tool_backoff_seconds = 0.5
    config.tool_backoff_max_seconds = 4
    config.llm_history_window = 20
    return config


@pytest.fixture
def resolver(identity):
    return FakeResolver(identity)


@pytest.fixture
def storage():
    return CountingStorage()


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
def lifecycle(storage, resolver, broadcaster):
    return SessionLifecycleManager(SessionStore(storage), resolver, broadcaster, identity_timeout=1.0)


@pytest.fixture
def registry(lifecycle):
    registry = ConversationRegistry(lifecycle)
    lifecycle.attach_registry(registry)
    return registry


@pytest.fixture
def gateway(offerings, laptop_schema, password_schema):
    return FakeGateway(offerings, {"off-laptop": laptop_schema, "off-password": password_schema})


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def orchestrator(registry, lifecycle, gateway, generator, config, sleep):
    return RequestCreationOrchestrator(registry, lifecycle, gateway, generator, config, sleep=sleep)


@pytest_asyncio.fixture
async def live_session(lifecycle, registry):
    session = await lifecycle.on_identity_signal(IdentitySignal(kind=SignalKind.LOGIN, source="test"))
    assert session is not None
    return session
