"""WhatsApp session: QR pairing, close classification and auto-reconnect."""

from __future__ import annotations

import asyncio
import functools
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Callable

from relay.events import (
    Authenticating,
    Connected,
    Connecting,
    Disconnected,
    QrReady,
    ReconnectionLoop,
    StreamError,
)
from relay.ledger import MessageLedger
from relay.models import ServiceType, SessionState
from relay.providers.base import Delivery, DeliveryError, FailureKind, ProviderSession
from relay.providers.reconnect import RapidFailureDetector, ReconnectPolicy
from relay.providers.whatsapp_socket import (
    CloseKind,
    ConnectionUpdate,
    SocketFactory,
    WhatsAppSocket,
    classify_close,
)
from relay.recipients import whatsapp_jid
from relay.status_store import ServiceStatusStore

LOGGER = logging.getLogger(__name__)

# States in which connect() is a no-op.
_ACTIVE_STATES = frozenset(
    {
        SessionState.CONNECTING,
        SessionState.QR_PENDING,
        SessionState.AUTHENTICATING,
        SessionState.CONNECTED,
    }
)

_STATUS_FAILURES = {
    401: FailureKind.AUTH,
    403: FailureKind.PERMISSION,
    404: FailureKind.NOT_FOUND,
    429: FailureKind.RATE_LIMITED,
}


class WhatsAppSession(ProviderSession):
    """QR-paired WhatsApp session.

    ``uninitialized -> connecting -> qr_pending -> authenticating ->
    connected``, with ``disconnected``, ``stream_error`` and
    ``reconnection_loop`` as resting states. Updates from a socket that
    has since been replaced are ignored.
    """

    service = ServiceType.WHATSAPP
    display_name = "WhatsApp"

    def __init__(
        self,
        ledger: MessageLedger,
        status_store: ServiceStatusStore,
        session_path: Path,
        socket_factory: SocketFactory,
        policy: ReconnectPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(ledger, status_store)
        self._session_path = Path(session_path)
        self._socket_factory = socket_factory
        self._policy = policy or ReconnectPolicy()
        self._detector = RapidFailureDetector(self._policy)
        self._clock = clock
        self._socket: WhatsAppSocket | None = None
        self._generation = 0
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def reconnect_attempts(self) -> int:
        return self._detector.attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED and self._socket is not None

    def is_in_reconnection_loop(self) -> bool:
        return self._state is SessionState.RECONNECTION_LOOP

    def is_in_stream_error_state(self) -> bool:
        return self._state is SessionState.STREAM_ERROR

    def has_stored_session(self) -> bool:
        """True when the credential directory holds a previous pairing."""

        return self._session_path.is_dir() and any(self._session_path.iterdir())

    async def connect(self) -> bool:
        async with self._lock:
            if self._state in _ACTIVE_STATES:
                LOGGER.info("WhatsApp connect ignored, session is %s", self._state.value)
                return True
            if self._state is SessionState.RECONNECTION_LOOP:
                LOGGER.info("Manual connect clears the reconnection loop")
                self._detector.reset()
            return await self._open_socket()

    async def disconnect(self) -> None:
        async with self._lock:
            self._cancel_reconnect()
            await self._teardown_socket(logout=True)
            self._clear_local_session()
            self._detector.reset()
            already_down = self._state in (SessionState.DISCONNECTED, SessionState.UNINITIALIZED)
            event = None if already_down else Disconnected(self.service, reason="logged out by operator")
            self._set_state(SessionState.DISCONNECTED, event, {"qr_code": None})

    async def close(self) -> None:
        async with self._lock:
            self._cancel_reconnect()
            if self._socket is None:
                return
            await self._teardown_socket()
            self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason="shutdown"))

    async def reconnect(self) -> bool:
        """Drop the current socket, keep credentials, and connect again."""

        async with self._lock:
            await self._force_reset()
            return await self._open_socket()

    async def force_reset(self) -> None:
        """Hard teardown. Local credentials are kept."""

        async with self._lock:
            await self._force_reset()

    async def clean_restart(self) -> bool:
        return await self._restart_fresh("clean restart")

    async def force_new_session(self) -> bool:
        return await self._restart_fresh("new session requested")

    async def recover_from_stream_error(self) -> bool:
        return await self._restart_fresh("stream error recovery")

    async def stop_reconnection_loop(self) -> None:
        """Reset the attempt counter and cancel any scheduled reconnect."""

        async with self._lock:
            cancelled = self._cancel_reconnect()
            self._detector.reset()
            LOGGER.info("Stopped WhatsApp reconnection (pending timer cancelled: %s)", cancelled)
            if self._state is SessionState.RECONNECTION_LOOP:
                self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason="reconnection stopped"))

    async def wait_for_qr_code(self, timeout_seconds: float = 10.0, poll_interval_seconds: float = 0.5) -> str | None:
        """Poll the status store until a QR payload appears or the timeout elapses."""

        deadline = self._clock() + timeout_seconds
        attempts = 0
        while True:
            attempts += 1
            qr_code = self._status_store.get_whatsapp_qr_code()
            if qr_code:
                LOGGER.info("QR code available after %d checks", attempts)
                return qr_code
            if self._clock() >= deadline:
                LOGGER.warning("QR code not generated within %.1fs", timeout_seconds)
                return None
            await asyncio.sleep(poll_interval_seconds)

    async def _restart_fresh(self, reason: str) -> bool:
        async with self._lock:
            LOGGER.info("Restarting WhatsApp with fresh credentials (%s)", reason)
            await self._force_reset()
            self._clear_local_session()
            return await self._open_socket()

    async def _force_reset(self) -> None:
        self._cancel_reconnect()
        await self._teardown_socket()
        self._detector.reset()
        self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason="reset"), {"qr_code": None})

    async def _open_socket(self) -> bool:
        self._cancel_reconnect()
        await self._teardown_socket()
        self._generation += 1
        generation = self._generation
        self._session_path.mkdir(parents=True, exist_ok=True)
        self._set_state(SessionState.CONNECTING, Connecting(self.service))
        try:
            self._socket = self._socket_factory(
                self._session_path, functools.partial(self._on_update, generation)
            )
            await self._socket.start()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to start WhatsApp socket")
            if generation == self._generation:
                await self._teardown_socket()
                self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason="socket failed to start"))
            return False
        return True

    async def _teardown_socket(self, logout: bool = False) -> None:
        socket, self._socket = self._socket, None
        self._generation += 1
        if socket is None:
            return
        if logout:
            try:
                await socket.logout()
            except Exception:  # noqa: BLE001
                LOGGER.warning("WhatsApp logout failed, closing anyway", exc_info=True)
        try:
            await socket.close()
        except Exception:  # noqa: BLE001
            LOGGER.warning("Error closing WhatsApp socket", exc_info=True)

    async def _on_update(self, generation: int, update: ConnectionUpdate) -> None:
        if generation != self._generation:
            LOGGER.debug("Ignoring update from superseded WhatsApp socket: %s", update)
            return
        if update.qr:
            self._set_state(
                SessionState.QR_PENDING,
                QrReady(self.service, qr_code=update.qr),
                {"qr_code": update.qr},
            )
            LOGGER.info("WhatsApp QR code generated and stored (length %d)", len(update.qr))
        if update.connection == "authenticating":
            self._set_state(SessionState.AUTHENTICATING, Authenticating(self.service))
        elif update.connection == "open":
            self._detector.reset()
            self._set_state(SessionState.CONNECTED, Connected(self.service), {"qr_code": None})
        elif update.connection == "close":
            await self._handle_close(update)

    async def _handle_close(self, update: ConnectionUpdate) -> None:
        kind = classify_close(update.status_code)
        reason = update.reason or f"connection closed (status {update.status_code})"
        LOGGER.info("WhatsApp connection closed: kind=%s status=%s reason=%s", kind.value, update.status_code, reason)
        await self._teardown_socket()

        if kind in (CloseKind.LOGGED_OUT, CloseKind.AUTH_REJECTED):
            self._clear_local_session()
            self._detector.reset()
            self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason=reason), {"qr_code": None})
            return

        if kind is CloseKind.STREAM_ERROR:
            LOGGER.warning("WhatsApp stream error, clearing session and waiting for operator recovery")
            self._clear_local_session()
            self._hub.publish(Disconnected(self.service, reason=reason))
            self._set_state(SessionState.STREAM_ERROR, StreamError(self.service, reason=reason), {"qr_code": None})
            return

        attempts = self._detector.record_disconnect(self._clock())
        if self._detector.exhausted:
            LOGGER.error(
                "Too many rapid WhatsApp disconnects (%d), auto-reconnect stopped", attempts
            )
            self._hub.publish(Disconnected(self.service, reason=reason))
            self._set_state(
                SessionState.RECONNECTION_LOOP,
                ReconnectionLoop(self.service, attempts=attempts),
                {"qr_code": None},
            )
            return
        if attempts > 1:
            LOGGER.warning("Rapid WhatsApp disconnection detected (attempt %d)", attempts)

        delay = self._detector.next_delay()
        self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason=reason), {"qr_code": None})
        LOGGER.info("Reconnecting WhatsApp in %.1fs", delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="whatsapp-reconnect")

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
            if self._state is not SessionState.DISCONNECTED:
                LOGGER.info("Skipping scheduled reconnect, session is %s", self._state.value)
                return
            await self._open_socket()

    def _cancel_reconnect(self) -> bool:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def _clear_local_session(self) -> None:
        try:
            shutil.rmtree(self._session_path)
        except FileNotFoundError:
            return
        except OSError:
            LOGGER.warning("Could not remove WhatsApp session files at %s", self._session_path, exc_info=True)
            return
        LOGGER.info("Cleared WhatsApp session files at %s", self._session_path)

    def _normalize_recipient(self, recipient: str) -> str:
        return whatsapp_jid(recipient)

    async def _send_text(self, target: str, body: str, metadata: dict[str, Any]) -> Delivery:
        socket = self._require_socket()
        return Delivery(external_id=await socket.send_text(target, body))

    async def _send_media(self, target: str, media_path: str, caption: str | None) -> Delivery:
        socket = self._require_socket()
        return Delivery(external_id=await socket.send_media(target, media_path, caption))

    def _require_socket(self) -> WhatsAppSocket:
        if self._socket is None:
            raise DeliveryError(FailureKind.TRANSPORT, "WhatsApp connection dropped before sending")
        return self._socket

    def _classify_error(self, exc: Exception) -> tuple[FailureKind, str]:
        message = str(exc) or type(exc).__name__
        if isinstance(exc, (ConnectionError, TimeoutError)):
            return FailureKind.TRANSPORT, f"WhatsApp transport error: {message}"
        kind = _STATUS_FAILURES.get(getattr(exc, "status_code", None), FailureKind.UNKNOWN)
        return kind, message
