"""
UI surface events.

Each open surface (browser tab, console, websocket) subscribes with its
channel id and receives events through its own queue. Publishing never
awaits, so broadcasting from inside a handler cannot yield control.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_ENDED = "SESSION_ENDED"


@dataclass
class UIEvent:
    type: EventType
    channel_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "channelId": self.channel_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


class EventBroadcaster:
    """Fan-out of UI events to per-channel subscriber queues."""

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self, channel_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(channel_id, []).append(queue)
        logger.debug(f"Subscriber added for channel={channel_id}")
        return queue

    def unsubscribe(self, channel_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(channel_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(channel_id, None)

    def channel_ids(self) -> set[str]:
        return set(self._subscribers)

    def publish(self, channel_id: str, event_type: EventType, payload: dict[str, Any] | None = None) -> None:
        event = UIEvent(type=event_type, channel_id=channel_id, payload=payload or {})
        for queue in list(self._subscribers.get(channel_id, [])):
            self._offer(queue, event)

    def broadcast(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        extra_channels: Iterable[str] = (),
    ) -> set[str]:
        """Send one event to every known channel; returns the channel ids reached."""
        targets = self.channel_ids() | set(extra_channels)
        for channel_id in targets:
            self.publish(channel_id, event_type, payload)
        logger.info(f"Broadcast {event_type.value} to {len(targets)} channel(s)")
        return targets

    @staticmethod
    def _offer(queue: asyncio.Queue, event: UIEvent) -> None:
        if queue.full():
            # Slow consumer: drop its oldest event rather than block the publisher
            queue.get_nowait()
        queue.put_nowait(event)
