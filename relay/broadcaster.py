"""Fan-out of session connection events to listeners."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable

from relay.events import (
    ConnectionEvent,
    Disconnected,
    EventSubscription,
    QrReady,
    ReconnectionLoop,
    StreamError,
)
from relay.providers.base import ProviderSession

LOGGER = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Awaitable[None] | None]

_MESSAGES = {
    "connecting": "Initializing {name} connection...",
    "qr_ready": "QR code generated. Please scan with your phone.",
    "authenticating": "Authentication successful. Connecting to {name}...",
    "code_required": "Verification code required for {name} authentication",
    "password_required": "2FA password required for {name} authentication",
    "connected": "{name} is connected and ready to send messages.",
}


def event_payload(event: ConnectionEvent, display_name: str) -> dict[str, Any]:
    """Wire shape pushed to dashboards: ``{"event": ..., "data": {...}}``."""

    kind = event.kind
    data: dict[str, Any] = {
        "service": event.service.value,
        "status": kind,
        "timestamp": event.timestamp.isoformat(),
    }
    if isinstance(event, QrReady):
        data["qr_code"] = event.qr_code
    if isinstance(event, Disconnected):
        data["message"] = f"{display_name} disconnected: {event.reason or 'Unknown reason'}"
    elif isinstance(event, StreamError):
        data["message"] = f"{display_name} stream error: {event.reason}. Clean restart required."
    elif isinstance(event, ReconnectionLoop):
        data["attempts"] = event.attempts
        data["message"] = (
            f"{display_name} stuck in reconnection loop ({event.attempts} attempts). "
            "Stop reconnection or reconnect manually."
        )
    else:
        data["message"] = _MESSAGES.get(kind, kind).format(name=display_name)

    if kind in ("code_required", "password_required"):
        name = f"{event.service.value}-{kind.replace('_', '-')}"
    else:
        name = f"{event.service.value}-status"
    return {"event": name, "data": data}


async def log_listener(payload: dict[str, Any]) -> None:
    LOGGER.info("%s: %s", payload["event"], payload["data"]["message"])


class EventBroadcaster:
    """Consumes every session's event stream and forwards payloads to listeners.

    A failing listener is logged and skipped; it never stops the pump.
    """

    def __init__(self, sessions: Iterable[ProviderSession], listeners: Iterable[Listener] = (log_listener,)) -> None:
        self._sessions = list(sessions)
        self._listeners: list[Listener] = list(listeners)
        self._subscriptions: list[EventSubscription] = []
        self._tasks: list[asyncio.Task[None]] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        for session in self._sessions:
            subscription = session.events()
            self._subscriptions.append(subscription)
            self._tasks.append(
                asyncio.create_task(
                    self._pump(session.display_name, subscription), name=f"events-{session.service.value}"
                )
            )
        LOGGER.info("Event broadcaster started for %d sessions", len(self._sessions))

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._subscriptions.clear()
        self._tasks.clear()

    async def _pump(self, display_name: str, subscription: EventSubscription) -> None:
        async for event in subscription:
            await self.publish(event_payload(event, display_name))

    async def publish(self, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                LOGGER.exception("Event listener failed for %s", payload["event"])
