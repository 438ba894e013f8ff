"""WhatsApp socket backed by neonize (whatsmeow multi-device client)."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import mimetypes
from pathlib import Path

from neonize.client import NewClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    PairStatusEv,
    StreamErrorEv,
    StreamReplacedEv,
)
from neonize.utils import build_jid

from relay.providers.whatsapp_socket import (
    ConnectionUpdate,
    DisconnectReason,
    UpdateHandler,
    WhatsAppSocket,
)

LOGGER = logging.getLogger(__name__)

SESSION_DB_NAME = "session.sqlite3"


class NeonizeSocket(WhatsAppSocket):
    """Runs the blocking neonize client in a worker thread.

    Callbacks fire on neonize's threads and are handed to the event loop
    that called :meth:`start`.
    """

    def __init__(self, session_path: Path, on_update: UpdateHandler) -> None:
        self._session_path = session_path
        self._on_update = on_update
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: asyncio.Task[None] | None = None
        self._client = NewClient(str(session_path / SESSION_DB_NAME))
        self._register_callbacks()

    def _register_callbacks(self) -> None:
        client = self._client

        @client.event.qr
        def on_qr(_: NewClient, data: bytes) -> None:
            self._emit(ConnectionUpdate(qr=data.decode("utf-8")))

        @client.event(PairStatusEv)
        def on_pair(_: NewClient, __: PairStatusEv) -> None:
            self._emit(ConnectionUpdate(connection="authenticating"))

        @client.event(ConnectedEv)
        def on_connected(_: NewClient, __: ConnectedEv) -> None:
            self._emit(ConnectionUpdate(connection="open"))

        @client.event(LoggedOutEv)
        def on_logged_out(_: NewClient, __: LoggedOutEv) -> None:
            self._emit_close(DisconnectReason.LOGGED_OUT, "logged out from phone")

        @client.event(StreamErrorEv)
        def on_stream_error(_: NewClient, event: StreamErrorEv) -> None:
            self._emit_close(DisconnectReason.RESTART_REQUIRED, f"stream error {event.Code}")

        @client.event(StreamReplacedEv)
        def on_replaced(_: NewClient, __: StreamReplacedEv) -> None:
            self._emit_close(DisconnectReason.CONNECTION_REPLACED, "connection replaced")

        @client.event(ConnectFailureEv)
        def on_connect_failure(_: NewClient, event: ConnectFailureEv) -> None:
            self._emit_close(int(event.Reason), f"connect failure: {event.Message}")

        @client.event(DisconnectedEv)
        def on_disconnected(_: NewClient, __: DisconnectedEv) -> None:
            self._emit_close(DisconnectReason.CONNECTION_CLOSED, "connection closed")

    def _emit_close(self, status_code: int, reason: str) -> None:
        self._emit(ConnectionUpdate(connection="close", status_code=int(status_code), reason=reason))

    def _emit(self, update: ConnectionUpdate) -> None:
        if self._loop is None or self._loop.is_closed():
            LOGGER.debug("Dropping WhatsApp update with no running loop: %s", update)
            return
        future = asyncio.run_coroutine_threadsafe(self._on_update(update), self._loop)
        future.add_done_callback(_log_handler_failure)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self._on_update(ConnectionUpdate(connection="connecting"))
        self._runner = asyncio.create_task(asyncio.to_thread(self._client.connect), name="neonize-client")
        self._runner.add_done_callback(self._runner_done)

    def _runner_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("neonize client stopped with an error", exc_info=exc)
            self._emit_close(DisconnectReason.CONNECTION_LOST, str(exc))

    async def send_text(self, jid: str, text: str) -> str | None:
        response = await asyncio.to_thread(self._client.send_message, self._jid(jid), text)
        return response.ID or None

    async def send_media(self, jid: str, media_path: str, caption: str | None) -> str | None:
        mimetype, _ = mimetypes.guess_type(media_path)
        if mimetype and mimetype.startswith("image/"):
            response = await asyncio.to_thread(
                self._client.send_image, self._jid(jid), media_path, caption=caption
            )
        else:
            response = await asyncio.to_thread(
                self._client.send_document,
                self._jid(jid),
                media_path,
                caption=caption,
                filename=Path(media_path).name,
                mimetype=mimetype,
            )
        return response.ID or None

    async def logout(self) -> None:
        await asyncio.to_thread(self._client.logout)

    async def close(self) -> None:
        self._loop = None
        await asyncio.to_thread(self._client.disconnect)
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()

    @staticmethod
    def _jid(jid: str):
        user, _, _ = jid.partition("@")
        return build_jid(user)


def _log_handler_failure(future: concurrent.futures.Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("WhatsApp update handler failed", exc_info=exc)


def neonize_socket_factory(session_path: Path, on_update: UpdateHandler) -> WhatsAppSocket:
    return NeonizeSocket(session_path, on_update)
