"""Connection events emitted by provider sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from relay.models import ServiceType

LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    service: ServiceType
    timestamp: datetime = field(default_factory=_now, compare=False)

    @property
    def kind(self) -> str:
        return _KINDS[type(self)]


@dataclass(frozen=True, slots=True)
class Connecting(ConnectionEvent):
    pass


@dataclass(frozen=True, slots=True)
class QrReady(ConnectionEvent):
    qr_code: str = ""


@dataclass(frozen=True, slots=True)
class Authenticating(ConnectionEvent):
    pass


@dataclass(frozen=True, slots=True)
class CodeRequired(ConnectionEvent):
    pass


@dataclass(frozen=True, slots=True)
class PasswordRequired(ConnectionEvent):
    pass


@dataclass(frozen=True, slots=True)
class Connected(ConnectionEvent):
    pass


@dataclass(frozen=True, slots=True)
class Disconnected(ConnectionEvent):
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class StreamError(ConnectionEvent):
    reason: str = ""


@dataclass(frozen=True, slots=True)
class ReconnectionLoop(ConnectionEvent):
    attempts: int = 0


_KINDS: dict[type[ConnectionEvent], str] = {
    ConnectionEvent: "event",
    Connecting: "connecting",
    QrReady: "qr_ready",
    Authenticating: "authenticating",
    CodeRequired: "code_required",
    PasswordRequired: "password_required",
    Connected: "connected",
    Disconnected: "disconnected",
    StreamError: "stream_error",
    ReconnectionLoop: "reconnection_loop",
}


class EventSubscription:
    """Async iterator over one subscriber's queue; registered on creation."""

    def __init__(self, hub: EventHub) -> None:
        self._hub = hub
        self._queue: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> ConnectionEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def deliver(self, event: ConnectionEvent) -> None:
        self._queue.put_nowait(event)

    def pending(self) -> list[ConnectionEvent]:
        """Drain and return whatever is queued without waiting."""

        events: list[ConnectionEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self._closed = True
        self._hub.unsubscribe(self)


class EventHub:
    """Fan-out of one session's events to any number of lazy subscribers.

    Each subscriber owns an unbounded queue; events published while nobody
    is subscribed are dropped.
    """

    def __init__(self, service: ServiceType) -> None:
        self._service = service
        self._subscriptions: set[EventSubscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ConnectionEvent) -> None:
        LOGGER.debug("%s event: %s", self._service.value, event.kind)
        for subscription in self._subscriptions:
            subscription.deliver(event)

    def subscribe(self) -> EventSubscription:
        """Start receiving events published from now on."""

        subscription = EventSubscription(self)
        self._subscriptions.add(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        self._subscriptions.discard(subscription)
