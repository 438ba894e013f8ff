"""Tests for NotificationService wiring and admin operations."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from relay.api_keys import ApiKeyStore, Authorizer
from relay.db import Database
from relay.ledger import MessageLedger
from relay.models import NotificationRequest, ServiceType, SessionState
from relay.providers.mattermost import MattermostSession
from relay.providers.telegram import TelegramSession
from relay.providers.whatsapp import WhatsAppSession
from relay.providers.whatsapp_socket import ConnectionUpdate, UpdateHandler, WhatsAppSocket
from relay.ratelimit import RateLimiter
from relay.service import NotificationService
from relay.status_store import REDACTED, ServiceStatusStore

CHANNEL_ID = "a1b2c3d4e5f6g7h8i9j0k1l2m3"


class FakeSocket(WhatsAppSocket):
    def __init__(self, on_update: UpdateHandler) -> None:
        self.on_update = on_update
        self.logged_out = False
        self.closed = False

    async def start(self) -> None:
        return None

    async def send_text(self, jid: str, text: str) -> str | None:
        return "wa-1"

    async def send_media(self, jid: str, media_path: str, caption: str | None) -> str | None:
        return "wa-2"

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


def _mattermost_api(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/v4/users/me":
        return httpx.Response(200, json={"id": "bot-id", "username": "notify-bot"})
    if request.url.path == "/api/v4/posts":
        return httpx.Response(201, json={"id": "post-1", "create_at": 1})
    return httpx.Response(404, json={"message": "not found"})


def _make_service(tmp_path, db_path: Path | None = None, with_authorizer: bool = False):
    db = Database(db_path or tmp_path / "relay.db")
    ledger = MessageLedger(db)
    store = ServiceStatusStore(db)
    sockets: list[FakeSocket] = []

    def socket_factory(session_path: Path, on_update: UpdateHandler) -> FakeSocket:
        sockets.append(FakeSocket(on_update))
        return sockets[-1]

    whatsapp = WhatsAppSession(ledger, store, tmp_path / "whatsapp", socket_factory)
    telegram = TelegramSession(ledger, store, client_factory=MagicMock(), settle_timeout_seconds=1)
    mattermost = MattermostSession(ledger, store, transport=httpx.MockTransport(_mattermost_api))
    keys = ApiKeyStore(db)
    authorizer = Authorizer(keys, RateLimiter()) if with_authorizer else None
    service = NotificationService(db, ledger, store, whatsapp, telegram, mattermost, authorizer)
    return service, sockets, keys


@pytest.mark.asyncio
async def test_initialize_creates_default_statuses(tmp_path):
    service, sockets, _ = _make_service(tmp_path)

    await service.initialize()

    assert sockets == []
    statuses = service.get_service_status()
    assert [item["status"] for item in statuses] == ["not_configured"] * 3
    health = service.health("1.0.0")
    assert health["status"] == "healthy"
    assert health["services"] == {
        "database": "connected",
        "whatsapp": "not_configured",
        "telegram": "not_configured",
        "mattermost": "not_configured",
    }
    assert health["version"] == "1.0.0"


@pytest.mark.asyncio
async def test_initialize_auto_connects_stored_whatsapp_session(tmp_path):
    (tmp_path / "whatsapp").mkdir()
    (tmp_path / "whatsapp" / "session.sqlite3").write_text("paired")
    service, sockets, _ = _make_service(tmp_path)

    await service.initialize()

    assert len(sockets) == 1
    assert service.whatsapp.state is SessionState.CONNECTING
    assert service.get_service_status(ServiceType.WHATSAPP)["status"] == "authenticating"
    await service.shutdown()


@pytest.mark.asyncio
async def test_initialize_seeds_mattermost_from_settings(tmp_path):
    service, _, _ = _make_service(tmp_path)

    await service.initialize(mattermost_config=("https://chat.example.com", "token"))

    assert service.mattermost.is_connected()
    assert service.health("1.0.0")["services"]["mattermost"] == "connected"


def test_health_reports_unreachable_database(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    service, _, _ = _make_service(tmp_path, db_path=blocker / "relay.db")

    health = service.health("1.0.0")

    assert health["status"] == "unhealthy"
    assert health["services"]["database"] == "disconnected"


@pytest.mark.asyncio
async def test_send_is_gated_on_connection(tmp_path):
    service, _, _ = _make_service(tmp_path)
    await service.initialize()

    result = await service.send_telegram(NotificationRequest("@someone", "hello"))
    media = await service.send_media(ServiceType.WHATSAPP, "15551234567", "/tmp/a.png")

    assert result == {"success": False, "error": "Telegram not configured or connected"}
    assert media == {"success": False, "error": "WhatsApp authentication required"}
    assert service.ledger.count() == 0


@pytest.mark.asyncio
async def test_configure_mattermost_then_send(tmp_path):
    service, _, _ = _make_service(tmp_path)
    await service.initialize()

    configured = await service.configure_mattermost("https://chat.example.com", "token")
    result = await service.send_mattermost(NotificationRequest(CHANNEL_ID, "deployed"))

    assert configured == {"success": True, "message": "Mattermost connected"}
    assert result["success"]
    assert result["external_message_id"] == "post-1"
    assert service.ledger.get(result["message_id"]).requested_by == "admin"

    status = service.get_service_status(ServiceType.MATTERMOST)
    assert status["metadata"]["access_token"] == REDACTED
    assert status["metadata"]["server_url"] == "https://chat.example.com"


@pytest.mark.asyncio
async def test_configure_mattermost_rejects_bad_url(tmp_path):
    service, _, _ = _make_service(tmp_path)
    await service.initialize()

    result = await service.configure_mattermost("chat.example.com", "token")

    assert result["success"] is False
    assert "http(s)" in result["message"]


@pytest.mark.asyncio
async def test_connect_telegram_without_credentials(tmp_path):
    service, _, _ = _make_service(tmp_path)
    await service.initialize()

    result = await service.connect_service(ServiceType.TELEGRAM)

    assert result == {"success": False, "message": "Telegram credentials are not configured"}
    assert service.configure_telegram("abc", "hash", "+15551234567")["success"] is False


@pytest.mark.asyncio
async def test_telegram_prompts_when_not_waiting(tmp_path):
    service, _, _ = _make_service(tmp_path)

    assert service.provide_telegram_code("  ") == {"success": False, "message": "Verification code is required"}
    assert service.provide_telegram_code("12345")["message"] == "Telegram is not waiting for a verification code"
    assert service.provide_telegram_password("secret")["success"] is False


@pytest.mark.asyncio
async def test_whatsapp_qr_code_and_admin_operations(tmp_path):
    service, sockets, _ = _make_service(tmp_path)
    await service.initialize()
    assert service.get_whatsapp_qr_code() is None

    connected = await service.connect_service(ServiceType.WHATSAPP)
    await sockets[-1].on_update(ConnectionUpdate(qr="qr-payload"))

    assert connected["success"]
    assert service.get_whatsapp_qr_code() == {"qr_code": "qr-payload"}
    assert service.get_service_status(ServiceType.WHATSAPP)["metadata"]["qr_code"] == REDACTED

    recovered = await service.recover_whatsapp_stream_error()
    assert recovered == {"success": False, "message": "WhatsApp is not in a stream error state"}

    restarted = await service.restart_whatsapp(new_session=True)
    assert restarted["success"]
    assert len(sockets) == 2
    assert sockets[0].closed

    assert (await service.reset_whatsapp())["success"]
    assert service.whatsapp.state is SessionState.DISCONNECTED
    assert (await service.stop_whatsapp_reconnection())["success"]


@pytest.mark.asyncio
async def test_send_with_api_key_records_requester(tmp_path):
    service, _, keys = _make_service(tmp_path, with_authorizer=True)
    await service.initialize(mattermost_config=("https://chat.example.com", "token"))
    api_key, plain = keys.create_key("ci", ["notifications:mattermost"])

    result = await service.send_as_api_key(
        ServiceType.MATTERMOST, NotificationRequest(CHANNEL_ID, "build green"), plain
    )
    denied = await service.send_as_api_key(
        ServiceType.TELEGRAM, NotificationRequest("@someone", "build green"), plain
    )
    missing = await service.send_as_api_key(ServiceType.MATTERMOST, NotificationRequest(CHANNEL_ID, "x"), None)

    assert result["success"]
    assert service.ledger.get(result["message_id"]).requested_by == f"apiKey:{api_key.id}"
    assert denied["code"] == "insufficient_permissions"
    assert missing["code"] == "missing_api_key"


@pytest.mark.asyncio
async def test_send_with_api_key_requires_authorizer(tmp_path):
    service, _, _ = _make_service(tmp_path)

    result = await service.send_as_api_key(ServiceType.MATTERMOST, NotificationRequest(CHANNEL_ID, "x"), "ak_x")

    assert result == {"success": False, "error": "API key access is not enabled"}


@pytest.mark.asyncio
async def test_shutdown_closes_without_logging_out(tmp_path):
    service, sockets, _ = _make_service(tmp_path)
    await service.initialize()
    await service.connect_service(ServiceType.WHATSAPP)
    await sockets[-1].on_update(ConnectionUpdate(connection="open"))

    await service.shutdown()

    assert sockets[-1].closed
    assert not sockets[-1].logged_out
    assert not service.whatsapp.is_connected()
    assert (tmp_path / "whatsapp").is_dir()
    assert service.get_queue_stats() == {"pending_messages": 0, "failed_messages": 0, "retryable_messages": 0}
