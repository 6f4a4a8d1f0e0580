"""Internal event bus.

Components publish state changes onto named channels; subscribers get
their own bounded queue per subscription. Publishing never blocks: when a
subscriber falls behind, its oldest queued event is dropped and counted.

Usage:
    bus = EventBus()
    queue = bus.subscribe(Channel.CALL_EVENTS)
    await bus.publish(Channel.CALL_EVENTS, "call_started", {...}, call_id="...")
    event = await queue.get()
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from campaign_dialer.core.timeutil import utcnow
from campaign_dialer.log import get_logger

log = get_logger(__name__)


class Channel(str, Enum):
    """Shared channels between components and the realtime fan-out."""

    CALL_EVENTS = "call:events"
    CAMPAIGN_UPDATES = "campaign:updates"
    SYSTEM_ALERTS = "system:alerts"
    CALL_INTERVENTIONS = "call:interventions"


@dataclass
class BusEvent:
    """One state change published on the bus.

    The scope fields drive room routing in the fan-out; ``payload`` is
    delivered to clients unchanged.
    """

    channel: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    account_id: str | None = None
    campaign_id: str | None = None
    call_id: str | None = None
    user_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "type": self.type,
            "payload": self.payload,
            "account_id": self.account_id,
            "campaign_id": self.campaign_id,
            "call_id": self.call_id,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """A subscriber's bounded queue over one or more channels."""

    def __init__(self, channels: set[str], maxsize: int) -> None:
        self.channels = channels
        self.queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: BusEvent) -> None:
        """Enqueue without blocking, evicting the oldest event when full."""
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> BusEvent:
        return await self.queue.get()

    def get_nowait(self) -> BusEvent:
        return self.queue.get_nowait()


class EventBus:
    """In-process publish/subscribe hub passed to every component."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self._published = 0

    def subscribe(self, *channels: Channel | str) -> Subscription:
        """Create a subscription on the given channels (all when empty)."""
        names = {c.value if isinstance(c, Channel) else c for c in channels}
        subscription = Subscription(names, self._queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish(
        self,
        channel: Channel | str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        **scope: Any,
    ) -> BusEvent:
        """Publish an event to every subscriber of ``channel``.

        Args:
            channel: Target channel
            event_type: Envelope type seen by clients
            payload: Event body
            **scope: account_id, campaign_id, call_id, user_id

        Returns:
            The published event
        """
        name = channel.value if isinstance(channel, Channel) else channel
        event = BusEvent(
            channel=name,
            type=event_type,
            payload=payload or {},
            **{k: (str(v) if v is not None else None) for k, v in scope.items()},
        )
        self._published += 1

        for subscription in self._subscriptions:
            if subscription.channels and name not in subscription.channels:
                continue
            before = subscription.dropped
            subscription.offer(event)
            if subscription.dropped != before:
                log.warning(
                    "Event bus subscriber overflow, dropped oldest event",
                    channel=name,
                    dropped_total=subscription.dropped,
                )

        return event

    def get_stats(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscriptions),
            "published": self._published,
            "dropped": sum(s.dropped for s in self._subscriptions),
        }
