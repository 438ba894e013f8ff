"""Notification service: owns one session per channel and the admin surface."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from relay.api_keys import Authorizer, requested_by
from relay.db import Database
from relay.errors import ConfigurationError
from relay.ledger import MessageLedger
from relay.models import ConnectionStatus, NotificationRequest, SendResult, ServiceType, SessionState
from relay.providers.base import ProviderSession
from relay.providers.mattermost import MattermostSession
from relay.providers.telegram import TelegramSession
from relay.providers.whatsapp import WhatsAppSession
from relay.status_store import ServiceStatusStore, redact

LOGGER = logging.getLogger(__name__)

_NOT_CONNECTED = {
    ServiceType.WHATSAPP: "WhatsApp authentication required",
    ServiceType.TELEGRAM: "Telegram not configured or connected",
    ServiceType.MATTERMOST: "Mattermost not configured or connected",
}


class NotificationService:
    """Composition root for the relay.

    Sends are gated on ``is_connected()`` before any session work happens.
    Admin operations return ``{"success": ..., "message": ...}`` and never
    raise for expected failures.
    """

    def __init__(
        self,
        db: Database,
        ledger: MessageLedger,
        status_store: ServiceStatusStore,
        whatsapp: WhatsAppSession,
        telegram: TelegramSession,
        mattermost: MattermostSession,
        authorizer: Authorizer | None = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._status_store = status_store
        self.whatsapp = whatsapp
        self.telegram = telegram
        self.mattermost = mattermost
        self.authorizer = authorizer
        self._started = time.monotonic()

    @property
    def ledger(self) -> MessageLedger:
        return self._ledger

    @property
    def sessions(self) -> dict[ServiceType, ProviderSession]:
        return {
            ServiceType.WHATSAPP: self.whatsapp,
            ServiceType.TELEGRAM: self.telegram,
            ServiceType.MATTERMOST: self.mattermost,
        }

    def session(self, service: ServiceType) -> ProviderSession:
        return self.sessions[service]

    async def initialize(self, mattermost_config: tuple[str, str] | None = None) -> None:
        """Open persistence, restore credentials and auto-connect what needs no operator.

        ``mattermost_config`` seeds the Mattermost server URL and token when
        none is stored yet.
        """
        self._db.initialize()

        self.telegram.load_existing_credentials()
        if not self.mattermost.load_existing_credentials() and mattermost_config is not None:
            try:
                self.mattermost.configure(*mattermost_config)
            except ConfigurationError:
                LOGGER.exception("Ignoring invalid Mattermost settings")

        if self.whatsapp.has_stored_session():
            await self._auto_connect(self.whatsapp)
        else:
            LOGGER.info("No stored WhatsApp session, waiting for a manual connect")

        if self.telegram.can_auto_connect():
            await self._auto_connect(self.telegram)
        elif self.telegram.credentials is not None:
            LOGGER.info("Telegram credentials configured, ready for manual connection")

        if self.mattermost.is_configured():
            await self._auto_connect(self.mattermost)

        created = self._status_store.initialize_default_statuses(tuple(ServiceType))
        LOGGER.info("Notification service initialized (%d default statuses created)", len(created))

    async def _auto_connect(self, session: ProviderSession) -> None:
        try:
            connected = await session.connect()
        except Exception:  # noqa: BLE001
            LOGGER.exception("%s auto-connect failed, manual connect required", session.display_name)
            return
        if connected:
            LOGGER.info("%s auto-connect started (state %s)", session.display_name, session.state.value)
        else:
            LOGGER.warning("%s auto-connect failed, manual connect required", session.display_name)

    async def send_whatsapp(self, request: NotificationRequest) -> dict[str, Any]:
        return await self.send(ServiceType.WHATSAPP, request)

    async def send_telegram(self, request: NotificationRequest) -> dict[str, Any]:
        return await self.send(ServiceType.TELEGRAM, request)

    async def send_mattermost(self, request: NotificationRequest) -> dict[str, Any]:
        return await self.send(ServiceType.MATTERMOST, request)

    async def send(self, service: ServiceType, request: NotificationRequest) -> dict[str, Any]:
        session = self.session(service)
        if not session.is_connected():
            return {"success": False, "error": _NOT_CONNECTED[service]}
        result = await session.send_text(request.recipient, request.message, request.metadata)
        return _send_response(result)

    async def send_as_api_key(
        self, service: ServiceType, request: NotificationRequest, plain_key: str | None
    ) -> dict[str, Any]:
        """Authorize a programmatic sender, then send on its behalf."""

        if self.authorizer is None:
            return {"success": False, "error": "API key access is not enabled"}
        decision = self.authorizer.authorize(plain_key, f"notifications:{service.value}")
        if not decision.allowed:
            return {"success": False, "error": decision.message, "code": decision.error_code}
        metadata = {**request.metadata, "requested_by": requested_by(decision.api_key)}
        return await self.send(service, NotificationRequest(request.recipient, request.message, metadata))

    async def send_media(
        self,
        service: ServiceType,
        recipient: str,
        media_path: str,
        caption: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        session = self.session(service)
        if not session.is_connected():
            return {"success": False, "error": _NOT_CONNECTED[service]}
        result = await session.send_media(recipient, media_path, caption, metadata)
        return _send_response(result)

    def health(self, version: str) -> dict[str, Any]:
        """Health summary; ``healthy`` iff the database answers."""

        database_ok = self._db.health_check()
        services = {service.value: ConnectionStatus.NOT_CONFIGURED.value for service in ServiceType}
        if database_ok:
            try:
                for service, status in self._status_store.get_service_health_status().items():
                    services[service.value] = _health_status(status)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Could not read service statuses for health check")
                database_ok = False
        return {
            "status": "healthy" if database_ok else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {"database": "connected" if database_ok else "disconnected", **services},
            "uptime": time.monotonic() - self._started,
            "version": version,
        }

    async def connect_service(self, service: ServiceType) -> dict[str, Any]:
        session = self.session(service)
        try:
            connected = await session.connect()
        except ConfigurationError as exc:
            return {"success": False, "message": str(exc)}
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Connecting %s failed", session.display_name)
            return {"success": False, "message": f"Failed to connect {session.display_name}: {exc}"}
        if not connected:
            return {"success": False, "message": f"Failed to connect {session.display_name}"}
        return {"success": True, "message": _connect_message(session)}

    async def disconnect_service(self, service: ServiceType) -> dict[str, Any]:
        session = self.session(service)
        try:
            await session.disconnect()
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Disconnecting %s failed", session.display_name)
            return {"success": False, "message": f"Failed to disconnect {session.display_name}: {exc}"}
        return {"success": True, "message": f"{session.display_name} disconnected"}

    async def reset_whatsapp(self) -> dict[str, Any]:
        await self.whatsapp.force_reset()
        return {"success": True, "message": "WhatsApp connection reset"}

    async def restart_whatsapp(self, new_session: bool = False) -> dict[str, Any]:
        """Clean restart; ``new_session`` discards the pairing for a fresh QR."""

        if new_session:
            started = await self.whatsapp.force_new_session()
        else:
            started = await self.whatsapp.clean_restart()
        if not started:
            return {"success": False, "message": "WhatsApp restart failed"}
        return {"success": True, "message": "WhatsApp restarted, a new QR code will be generated"}

    async def recover_whatsapp_stream_error(self) -> dict[str, Any]:
        if not self.whatsapp.is_in_stream_error_state():
            return {"success": False, "message": "WhatsApp is not in a stream error state"}
        if not await self.whatsapp.recover_from_stream_error():
            return {"success": False, "message": "WhatsApp stream error recovery failed"}
        return {"success": True, "message": "WhatsApp recovering from stream error"}

    async def stop_whatsapp_reconnection(self) -> dict[str, Any]:
        await self.whatsapp.stop_reconnection_loop()
        return {"success": True, "message": "WhatsApp reconnection stopped"}

    def get_service_status(self, service: ServiceType | None = None) -> dict[str, Any] | list[dict[str, Any]]:
        """Redacted status projection for one service or for all of them."""

        if service is not None:
            status = self._status_store.get_status(service, include_sensitive=True)
            if status is None:
                return _unconfigured(service)
            return redact(status)
        statuses = self._status_store.get_all_statuses(include_sensitive=True)
        stored = {status.service: redact(status) for status in statuses}
        return [stored.get(item, _unconfigured(item)) for item in ServiceType]

    def get_whatsapp_qr_code(self) -> dict[str, str] | None:
        qr_code = self._status_store.get_whatsapp_qr_code()
        return {"qr_code": qr_code} if qr_code else None

    def provide_telegram_code(self, code: str) -> dict[str, Any]:
        if not code or not code.strip():
            return {"success": False, "message": "Verification code is required"}
        if not self.telegram.provide_phone_code(code.strip()):
            return {"success": False, "message": "Telegram is not waiting for a verification code"}
        return {"success": True, "message": "Verification code submitted"}

    def provide_telegram_password(self, password: str) -> dict[str, Any]:
        if not password:
            return {"success": False, "message": "Password is required"}
        if not self.telegram.provide_password(password):
            return {"success": False, "message": "Telegram is not waiting for a 2FA password"}
        return {"success": True, "message": "Password submitted"}

    def configure_telegram(
        self, api_id: Any, api_hash: str, phone_number: str, session_string: str | None = None
    ) -> dict[str, Any]:
        try:
            self.telegram.configure_credentials(api_id, api_hash, phone_number, session_string)
        except ConfigurationError as exc:
            return {"success": False, "message": str(exc)}
        return {"success": True, "message": "Telegram credentials saved"}

    async def configure_mattermost(self, server_url: str, access_token: str) -> dict[str, Any]:
        """Store the config and verify it with a connect."""

        try:
            self.mattermost.configure(server_url, access_token)
        except ConfigurationError as exc:
            return {"success": False, "message": str(exc)}
        return await self.connect_service(ServiceType.MATTERMOST)

    def get_queue_stats(self) -> dict[str, int]:
        return self._ledger.get_queue_stats()

    async def shutdown(self) -> None:
        """Close every session without logging out."""

        for session in self.sessions.values():
            try:
                await session.close()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Error closing %s session", session.display_name)
        LOGGER.info("Notification service shut down")


def _send_response(result: SendResult) -> dict[str, Any]:
    if result.success:
        return {
            "success": True,
            "message_id": result.message_id,
            "external_message_id": result.external_message_id,
        }
    return {"success": False, "message_id": result.message_id, "error": result.error_message}


def _health_status(status: ConnectionStatus) -> str:
    if status in (ConnectionStatus.NOT_CONFIGURED, ConnectionStatus.CONNECTED):
        return status.value
    return ConnectionStatus.DISCONNECTED.value


def _connect_message(session: ProviderSession) -> str:
    state = session.state
    if state is SessionState.CONNECTED:
        return f"{session.display_name} connected"
    if state is SessionState.CODE_REQUIRED:
        return "Verification code sent, submit it to finish the Telegram login"
    if state is SessionState.PASSWORD_REQUIRED:
        return "2FA password required to finish the Telegram login"
    if state is SessionState.QR_PENDING:
        return "QR code ready, scan it with WhatsApp"
    return f"{session.display_name} connection started"


def _unconfigured(service: ServiceType) -> dict[str, Any]:
    return {
        "service": service.value,
        "status": ConnectionStatus.NOT_CONFIGURED.value,
        "last_updated": None,
        "metadata": {},
    }
