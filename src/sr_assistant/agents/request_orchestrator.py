"""
Request-Creation Orchestrator

One state machine per conversation channel:

    IDLE -> CATALOG_SHOWN -> OFFERING_SUGGESTED -> FIELDSET_SHOWN -> COMPLETED
    (ABANDONED when the channel is discarded or the session ends)

Tools supply the facts and the LLM supplies the words. Each user turn runs
a fixed pipeline:

1. THINK   classify the turn (pure, before any generation)
2. ACT     call the Tool Gateway for the current state (retried with backoff)
3. OBSERVE merge tool results, profile autofill and delegated defaults
4. GROUND  build the fact-bounded context
5. RESPOND generate the reply from that context only

The new draft is applied only when every stage succeeded. Tool failures
and LLM failures leave the channel exactly as it was.

COMMIT is a separate operation triggered by the UI's explicit submit
action. It validates, calls create_record once per commit id, and is
the only path that can move a channel to COMPLETED.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping

from sr_assistant.agents.chat_history.conversation_registry import ConversationChannel, ConversationRegistry
from sr_assistant.agents.config.agent_config import AgentConfig
from sr_assistant.agents.grounding import build_grounded_context
from sr_assistant.agents.intent_classifier import TurnIntent, TurnIntentClassifier
from sr_assistant.agents.llm_provider import TextGenerator
from sr_assistant.agents.models import (
    CreatedRecord,
    FieldSpec,
    Message,
    Offering,
    OfferingSchema,
    RequestCreationState,
    RequestDraft,
    Role,
)
from sr_assistant.agents.plugins.ivanti_plugin import ToolGateway, rank_offerings
from sr_assistant.agents.validation import find_missing_required, is_blank
from sr_assistant.core.errors import GenerationFailed, RecordRejected, SchemaIncomplete, SessionRequired, ToolUnavailable
from sr_assistant.core.logging import short_id
from sr_assistant.session.lifecycle import SessionLifecycleManager
from sr_assistant.session.models import Identity

logger = logging.getLogger(__name__)

State = RequestCreationState

TOOL_UNAVAILABLE_REPLY = "I can't reach the system right now. Please try again in a moment."
GENERATION_FAILED_REPLY = "Sorry, something went wrong while preparing my answer. Please try again."
NO_SESSION_REPLY = "I can't confirm who you are. Please sign in to Ivanti and try again."
SUBMISSION_UNCERTAIN_REPLY = (
    "The ticketing system reported an error while submitting, so the request may or may not have been "
    "created. Please check your open requests in Ivanti before submitting again."
)
UNNUMBERED_CONFIRMATION = (
    "Your request has been submitted, but the ticketing system did not return a request number. "
    "You can find it under your open requests in Ivanti."
)
CATALOG_FALLBACK_SIZE = 10


@dataclass
class TurnResult:
    channel_id: str
    reply: str
    state: RequestCreationState
    offerings: list[Offering] = field(default_factory=list)
    fields: list[FieldSpec] = field(default_factory=list)
    values: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channelId": self.channel_id,
            "reply": self.reply,
            "state": self.state.value,
            "offerings": [o.to_dict() for o in self.offerings],
            "fields": [f.to_dict() for f in self.fields],
            "values": self.values,
            "missing": self.missing,
            "error": self.error,
        }


@dataclass
class CommitOutcome:
    channel_id: str
    success: bool
    state: RequestCreationState
    message: str
    record: CreatedRecord | None = None
    missing: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channelId": self.channel_id,
            "success": self.success,
            "state": self.state.value,
            "message": self.message,
            "record": self.record.to_dict() if self.record else None,
            "missing": self.missing,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# OBSERVE helpers (pure)
# ---------------------------------------------------------------------------
def _profile_value(spec: FieldSpec, identity: Identity) -> str | None:
    text = f"{spec.name} {spec.label}".lower()
    if "manager" in text:
        return None
    if "email" in text:
        return identity.email
    if "login" in text:
        return identity.login_id
    if "department" in text:
        return identity.department
    if "location" in text or "site" in text:
        return identity.location
    if any(k in text for k in ("requester", "requestor", "requested by", "requested for")) or spec.label.lower() in (
        "name",
        "full name",
        "your name",
        "employee name",
    ):
        return identity.display_name
    return None


def _acceptable(spec: FieldSpec, value: str | None) -> str | None:
    """Value as it may be stored for ``spec``; enumerated fields only take declared options."""
    if is_blank(value):
        return None
    if spec.is_enumerated:
        option = spec.match_option(value)
        return option.value if option else None
    return str(value)


def prefill_values(schema: OfferingSchema, identity: Identity | None) -> dict[str, str]:
    """Schema defaults first, then profile autofill for fields still empty."""
    values: dict[str, str] = {}
    for spec in schema.fields:
        value = _acceptable(spec, spec.default_value)
        if value is None and identity is not None:
            value = _acceptable(spec, _profile_value(spec, identity))
        if value is not None:
            values[spec.name] = value
    return values


def delegated_values(schema: OfferingSchema, values: Mapping[str, str]) -> dict[str, str]:
    """
    Fill empty fields the user left to us.

    Enumerated fields get the schema default or the first option; other
    fields only a schema default. Free text is never invented.
    """
    filled = dict(values)
    for spec in schema.fields:
        if not is_blank(filled.get(spec.name)):
            continue
        value = _acceptable(spec, spec.default_value)
        if value is None and spec.is_enumerated:
            value = spec.options[0].value
        if value is not None:
            filled[spec.name] = value
    return filled


def _record_note(record: CreatedRecord) -> str:
    if record.confirmed:
        return f"{record.record_number} created (record id {record.record_id})"
    if record.record_id:
        return f"Request created with record id {record.record_id}; no request number was returned"
    return "Request created; no request number or record id was returned"


class RequestCreationOrchestrator:
    def __init__(
        self,
        registry: ConversationRegistry,
        lifecycle: SessionLifecycleManager,
        gateway: ToolGateway,
        generator: TextGenerator,
        config: AgentConfig | None = None,
        classifier: TurnIntentClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or AgentConfig()
        self._registry = registry
        self._lifecycle = lifecycle
        self._gateway = gateway
        self._generator = generator
        self._classifier = classifier or TurnIntentClassifier()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------
    async def handle_turn(self, channel_id: str, text: str) -> TurnResult:
        session = self._lifecycle.get_live_session()
        if session is None:
            session = await self._lifecycle.resolve_identity()
        if session is None:
            return TurnResult(channel_id, NO_SESSION_REPLY, State.IDLE, error="no_session")

        try:
            channel = self._registry.append_message(channel_id, Message(Role.USER, text), session_id=session.session_id)
        except SessionRequired:
            return TurnResult(channel_id, NO_SESSION_REPLY, State.IDLE, error="no_session")
        identity = session.identity

        # ---- 1. THINK ----
        intent = self._classifier.classify(text, channel.draft)
        logger.info(f"Channel {channel_id} [{channel.state.value}] intent={intent.kind} {intent.reason}".rstrip())

        # ---- 2. ACT ----
        try:
            draft, notice = await self._act(channel.draft, intent, text)
        except ToolUnavailable as e:
            logger.warning(f"Channel {channel_id}: tool call failed: {e}")
            return self._fixed_reply(channel, TOOL_UNAVAILABLE_REPLY, error="tool_unavailable")
        if not self._registry.is_current(channel):
            return self._stale(channel)

        # ---- 3. OBSERVE ----
        draft = self._observe(draft, intent, identity)

        # ---- 4. GROUND ----
        grounded = build_grounded_context(draft, intent, identity, notice=notice)

        # ---- 5. RESPOND ----
        try:
            reply = await self._generator.generate(grounded, list(channel.messages))
        except GenerationFailed as e:
            logger.error(f"Channel {channel_id}: generation failed: {e}")
            return self._fixed_reply(channel, GENERATION_FAILED_REPLY, error="generation_failed")
        if not self._registry.is_current(channel):
            return self._stale(channel)

        draft = self._note_suggestion(draft, reply)
        self._registry.update_draft(channel, draft)
        self._append(channel, Role.ASSISTANT, reply)
        return self._result(channel, reply)

    async def _act(self, draft: RequestDraft, intent: TurnIntent, text: str) -> tuple[RequestDraft, str]:
        """Tool calls for this turn. Returns the candidate draft and an optional grounding note."""
        if intent.kind == "START_REQUEST":
            offerings = await self._call_tool("list_offerings", self._gateway.list_offerings)
            if not offerings:
                return RequestDraft(), "The ticketing system returned no request offerings."
            catalog = rank_offerings(text, offerings) or offerings[:CATALOG_FALLBACK_SIZE]
            return RequestDraft(state=State.CATALOG_SHOWN, catalog=tuple(catalog)), ""

        if intent.kind == "SELECT_OFFERING" and intent.offering is not None:
            offering = intent.offering
            logger.info(f"Offering selected: {offering.name} ({State.OFFERING_SUGGESTED.value})")
            schema = await self._call_tool("get_field_schema", self._gateway.get_field_schema, offering.offering_id)
            if not schema.name:
                schema = replace(schema, name=offering.name)
            return (
                RequestDraft(
                    state=State.FIELDSET_SHOWN,
                    catalog=draft.catalog,
                    offering=offering,
                    schema=schema,
                ),
                "",
            )

        if intent.kind == "CANCEL":
            return RequestDraft(), ""

        return replace(draft, rejected={}), ""

    def _observe(self, draft: RequestDraft, intent: TurnIntent, identity: Identity | None) -> RequestDraft:
        if draft.state is not State.FIELDSET_SHOWN or draft.schema is None:
            return draft

        if intent.kind == "SELECT_OFFERING":
            return replace(draft, values=prefill_values(draft.schema, identity))
        if intent.kind == "PROVIDE_VALUES":
            values = {**draft.values, **intent.values}
            return replace(draft, values=values, rejected=dict(intent.rejected))
        if intent.kind == "DELEGATE":
            return replace(draft, values=delegated_values(draft.schema, draft.values))
        return draft

    def _note_suggestion(self, draft: RequestDraft, reply: str) -> RequestDraft:
        """Record a single offering proposed in our own reply; the next "yes" selects it."""
        if draft.state not in (State.CATALOG_SHOWN, State.OFFERING_SUGGESTED):
            return draft
        suggested = self._classifier.detect_suggested_offering(reply, draft.catalog)
        if suggested is None:
            return draft
        return replace(draft, state=State.OFFERING_SUGGESTED, suggested=suggested)

    async def _call_tool(self, name: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Call the Tool Gateway, retrying retryable failures with capped exponential backoff."""
        attempts = self.config.tool_retries + 1
        delay = self.config.tool_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args)
            except ToolUnavailable as e:
                if not e.retryable or attempt == attempts:
                    raise
                logger.warning(f"{name} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay}s")
                await self._sleep(delay)
                delay = min(delay * 2, self.config.tool_backoff_max_seconds)

    # ------------------------------------------------------------------
    # COMMIT
    # ------------------------------------------------------------------
    async def commit(
        self,
        channel_id: str,
        offering_id: str,
        values: Mapping[str, Any],
        commit_id: str | None = None,
    ) -> CommitOutcome:
        """Validate and submit the channel's form. Never dispatches twice for one commit id."""
        channel = self._registry.get(channel_id)
        if channel is None:
            return CommitOutcome(channel_id, False, State.IDLE, NO_SESSION_REPLY, error="no_channel")

        commit_id = commit_id or uuid.uuid4().hex
        if commit_id in channel.commit_outcomes:
            return channel.commit_outcomes[commit_id]
        if commit_id in channel.commits_in_flight:
            return await asyncio.shield(channel.commits_in_flight[commit_id])
        if channel.commits_in_flight:
            return CommitOutcome(
                channel_id, False, channel.state, "A submission is already in progress.", error="commit_in_progress"
            )

        draft = channel.draft
        if draft.state is State.COMPLETED and draft.record is not None:
            if draft.record.confirmed:
                message = f"Request {draft.record.record_number} was already submitted."
            else:
                message = "This request was already submitted."
            return CommitOutcome(channel_id, True, State.COMPLETED, message, record=draft.record)
        if draft.state is not State.FIELDSET_SHOWN or draft.schema is None or draft.offering is None:
            return CommitOutcome(
                channel_id, False, draft.state, "There is no form ready to submit yet.", error="not_ready"
            )
        if draft.offering.offering_id != offering_id:
            return CommitOutcome(
                channel_id, False, draft.state, "That form does not match the current request.", error="offering_mismatch"
            )

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        channel.commits_in_flight[commit_id] = future
        try:
            outcome = await self._commit(channel, draft, values, commit_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()
            raise
        else:
            future.set_result(outcome)
        finally:
            channel.commits_in_flight.pop(commit_id, None)

        if outcome.success:
            channel.commit_outcomes[commit_id] = outcome
        return outcome

    async def _commit(
        self,
        channel: ConversationChannel,
        draft: RequestDraft,
        values: Mapping[str, Any],
        commit_id: str,
    ) -> CommitOutcome:
        merged = dict(draft.values)
        merged.update({k: str(v) for k, v in values.items() if v is not None})

        missing = find_missing_required(draft.schema, merged)
        if missing:
            message = str(SchemaIncomplete(missing))
            self._registry.update_draft(channel, replace(draft, values=merged))
            self._append(channel, Role.ASSISTANT, message)
            logger.info(f"Commit {short_id(commit_id)} blocked: {len(missing)} required field(s) missing")
            return CommitOutcome(
                channel.channel_id,
                False,
                State.FIELDSET_SHOWN,
                message,
                missing=[spec.label for spec in missing],
                error="schema_incomplete",
            )

        session = self._lifecycle.get_live_session()
        requester = session.identity if session else None
        logger.info(f"Commit {short_id(commit_id)} dispatched for channel {channel.channel_id} ({draft.offering.name})")
        try:
            record = await self._call_tool(
                "create_record",
                self._gateway.create_record,
                draft.offering.offering_id,
                merged,
                draft.schema,
                requester,
            )
        except RecordRejected as e:
            message = f"The ticketing system did not accept the request: {e}"
            logger.warning(f"Commit {short_id(commit_id)} rejected: {e}")
            self._append(channel, Role.ASSISTANT, message)
            return CommitOutcome(channel.channel_id, False, State.FIELDSET_SHOWN, message, error="record_rejected")
        except ToolUnavailable as e:
            if e.outcome_unknown:
                logger.error(f"Commit {short_id(commit_id)} outcome unknown: {e}")
                self._append(channel, Role.ASSISTANT, SUBMISSION_UNCERTAIN_REPLY)
                return CommitOutcome(
                    channel.channel_id,
                    False,
                    State.FIELDSET_SHOWN,
                    SUBMISSION_UNCERTAIN_REPLY,
                    error="submission_uncertain",
                )
            logger.warning(f"Commit {short_id(commit_id)} failed: {e}")
            self._append(channel, Role.ASSISTANT, TOOL_UNAVAILABLE_REPLY)
            return CommitOutcome(
                channel.channel_id, False, State.FIELDSET_SHOWN, TOOL_UNAVAILABLE_REPLY, error="tool_unavailable"
            )

        logger.info(f"Commit {short_id(commit_id)} created {record.record_number or 'a record without a number'}")
        if record.confirmed:
            confirmation = f"Your request has been submitted as {record.record_number}."
        else:
            confirmation = UNNUMBERED_CONFIRMATION
        completed = replace(draft, state=State.COMPLETED, values=merged, record=record, rejected={})
        if self._registry.update_draft(channel, completed):
            self._append(channel, Role.SYSTEM, _record_note(record))
            self._append(channel, Role.ASSISTANT, confirmation)
        else:
            logger.warning(f"{record.record_number or 'A record'} created after channel {channel.channel_id} was closed")
        return CommitOutcome(channel.channel_id, True, State.COMPLETED, confirmation, record=record)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _append(self, channel: ConversationChannel, role: Role, text: str) -> bool:
        if not self._registry.is_current(channel):
            return False
        try:
            self._registry.append_message(channel.channel_id, Message(role, text), session_id=channel.session_id)
        except SessionRequired:
            return False
        return True

    def _fixed_reply(self, channel: ConversationChannel, reply: str, error: str) -> TurnResult:
        self._append(channel, Role.ASSISTANT, reply)
        result = self._result(channel, reply)
        result.error = error
        return result

    def _stale(self, channel: ConversationChannel) -> TurnResult:
        logger.info(f"Channel {channel.channel_id} ended while a turn was in flight; dropping reply")
        return TurnResult(channel.channel_id, NO_SESSION_REPLY, State.ABANDONED, error="session_ended")

    def _result(self, channel: ConversationChannel, reply: str) -> TurnResult:
        draft = channel.draft
        result = TurnResult(channel.channel_id, reply, draft.state, values=dict(draft.values))
        if draft.state in (State.CATALOG_SHOWN, State.OFFERING_SUGGESTED):
            result.offerings = list(draft.catalog)
        if draft.schema is not None and draft.state is State.FIELDSET_SHOWN:
            result.fields = list(draft.schema.fields)
            result.missing = [spec.label for spec in find_missing_required(draft.schema, draft.values)]
        return result
