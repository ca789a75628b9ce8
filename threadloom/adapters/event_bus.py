"""Per-channel event fan-out.

Producers (the stream router, command runner, git poller) publish from
inside their read loops, so publish() must never wait on a consumer:
every subscriber owns an unbounded queue fed with put_nowait(). A slow
client grows its own queue; it cannot stall the subprocess pipe or the
other subscribers.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from threadloom.adapters.events import EngineEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One consumer's ordered view of a channel."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        # None is the close sentinel.
        self._queue: asyncio.Queue[EngineEvent | None] = asyncio.Queue()
        self._closed = False
        self._warned = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _push(self, event: EngineEvent | None, warn_depth: int) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)
        depth = self._queue.qsize()
        if depth >= warn_depth and not self._warned:
            self._warned = True
            logger.warning(
                "Subscriber on %s is lagging: %d events queued",
                self._bus.channel, depth,
            )
        elif depth < warn_depth // 2:
            self._warned = False

    async def get(self) -> EngineEvent | None:
        """Next event, or None once the subscription or channel closed."""
        if self._closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is None:
            self._closed = True
        return event

    async def consume(self) -> AsyncIterator[EngineEvent]:
        """Yield events as they arrive. Stops on close()."""
        while True:
            event = await self.get()
            if event is None:
                break
            yield event

    def close(self) -> None:
        """Detach from the channel; a pending get() returns None."""
        self._bus._detach(self)
        if not self._closed:
            self._queue.put_nowait(None)
            self._closed = True


class EventBus:
    """Ordered, non-blocking fan-out for one channel."""

    def __init__(self, channel: str, warn_depth: int = 5000) -> None:
        self.channel = channel
        self._warn_depth = warn_depth
        self._subscribers: list[Subscription] = []
        self._seq = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: EngineEvent) -> EngineEvent:
        """Stamp event with the next sequence number and deliver it."""
        self._seq += 1
        event.seq = self._seq
        for sub in list(self._subscribers):
            sub._push(event, self._warn_depth)
        return event

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        self._subscribers.append(sub)
        logger.debug("Subscribed to %s (subscribers=%d)", self.channel, len(self._subscribers))
        return sub

    def _detach(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def close(self) -> None:
        """End every subscription on this channel."""
        for sub in list(self._subscribers):
            sub.close()


class EventHub:
    """Registry of channels, created on first use."""

    def __init__(self, warn_depth: int = 5000) -> None:
        self._warn_depth = warn_depth
        self._buses: dict[str, EventBus] = {}

    def bus(self, channel: str) -> EventBus:
        bus = self._buses.get(channel)
        if bus is None:
            bus = EventBus(channel, self._warn_depth)
            self._buses[channel] = bus
        return bus

    def publish(self, channel: str, event: EngineEvent) -> EngineEvent:
        return self.bus(channel).publish(event)

    def subscribe(self, channel: str) -> Subscription:
        return self.bus(channel).subscribe()

    def drop(self, channel: str) -> None:
        bus = self._buses.pop(channel, None)
        if bus is not None:
            bus.close()


def thread_channel(thread_id: str) -> str:
    return f"thread:{thread_id}"


def command_channel(command_id: str) -> str:
    return f"command:{command_id}"


def git_channel(path_key: str) -> str:
    return f"git:{path_key}"
