"""
Conversation Registry: per-channel message history bound to a session.

A channel remembers the session id it was created under. Any access
after that session has ended (a new session id is live) replaces the
channel with a fresh, empty one, so history from one login is never
shown to the next.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from sr_assistant.agents.models import Message, RequestCreationState, RequestDraft, Role
from sr_assistant.core.errors import SessionRequired
from sr_assistant.core.logging import short_id

if TYPE_CHECKING:
    from sr_assistant.session.lifecycle import SessionLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class ConversationChannel:
    channel_id: str
    session_id: str
    messages: list[Message] = field(default_factory=list)
    draft: RequestDraft = field(default_factory=RequestDraft)
    # commit_id -> in-flight commit / finished outcome
    commits_in_flight: dict[str, asyncio.Future] = field(default_factory=dict)
    commit_outcomes: dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> RequestCreationState:
        return self.draft.state

    def last_assistant_message(self) -> str:
        for message in reversed(self.messages):
            if message.role is Role.ASSISTANT:
                return message.content
        return ""

    def abandon(self) -> None:
        if not self.draft.state.is_terminal:
            self.draft = replace(self.draft, state=RequestCreationState.ABANDONED)


class ConversationRegistry:
    def __init__(self, lifecycle: "SessionLifecycleManager"):
        self._lifecycle = lifecycle
        self._channels: dict[str, ConversationChannel] = {}

    def _live_session_id(self) -> str:
        session = self._lifecycle.get_live_session()
        if session is None:
            raise SessionRequired("No live session")
        return session.session_id

    def get_or_create_channel(self, channel_id: str) -> ConversationChannel:
        session_id = self._live_session_id()
        channel = self._channels.get(channel_id)
        if channel is not None and channel.session_id == session_id:
            return channel
        if channel is not None:
            logger.info(
                f"Channel {channel_id} belonged to session {short_id(channel.session_id)}; "
                f"starting fresh for {short_id(session_id)}"
            )
            channel.abandon()
        channel = ConversationChannel(channel_id=channel_id, session_id=session_id)
        self._channels[channel_id] = channel
        return channel

    def get(self, channel_id: str) -> ConversationChannel | None:
        """Existing channel for the live session, without creating one."""
        session = self._lifecycle.get_live_session()
        channel = self._channels.get(channel_id)
        if channel is None or session is None or channel.session_id != session.session_id:
            return None
        return channel

    def is_current(self, channel: ConversationChannel) -> bool:
        """True while ``channel`` is still registered and bound to the live session."""
        session = self._lifecycle.get_live_session()
        return (
            session is not None
            and channel.session_id == session.session_id
            and self._channels.get(channel.channel_id) is channel
        )

    def append_message(
        self,
        channel_id: str,
        message: Message,
        session_id: str | None = None,
    ) -> ConversationChannel:
        """
        Append to the channel's history. Requires a live session.

        When ``session_id`` is given the append only happens if that session
        is still the live one.
        """
        channel = self.get_or_create_channel(channel_id)
        if session_id is not None and channel.session_id != session_id:
            raise SessionRequired(f"Session {short_id(session_id)} is no longer live")
        channel.messages.append(message)
        return channel

    def update_draft(self, channel: ConversationChannel, draft: RequestDraft) -> bool:
        """Replace the channel's draft if the channel is still current."""
        if not self.is_current(channel):
            return False
        if draft.state is not channel.draft.state:
            logger.info(f"Channel {channel.channel_id}: {channel.draft.state.value} -> {draft.state.value}")
        channel.draft = draft
        return True

    def clear_channel(self, channel_id: str) -> None:
        channel = self._channels.pop(channel_id, None)
        if channel is not None:
            channel.abandon()

    def clear_all(self) -> None:
        for channel in self._channels.values():
            channel.abandon()
        count = len(self._channels)
        self._channels.clear()
        logger.info(f"Cleared {count} channel(s)")

    def discard(self, channel_id: str) -> None:
        """UI surface closed: release this channel only."""
        if channel_id in self._channels:
            self.clear_channel(channel_id)
            logger.info(f"Channel {channel_id} discarded")

    def channel_ids(self) -> set[str]:
        return set(self._channels)
