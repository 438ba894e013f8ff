import asyncio
from unittest.mock import MagicMock

import pytest

from relay.broadcaster import EventBroadcaster, event_payload
from relay.events import CodeRequired, Connected, Disconnected, EventHub, QrReady, ReconnectionLoop, StreamError
from relay.models import ServiceType


def test_payload_for_qr_code():
    payload = event_payload(QrReady(ServiceType.WHATSAPP, qr_code="qr-data"), "WhatsApp")

    assert payload["event"] == "whatsapp-status"
    assert payload["data"]["status"] == "qr_ready"
    assert payload["data"]["qr_code"] == "qr-data"
    assert payload["data"]["service"] == "whatsapp"


def test_payload_for_telegram_prompts():
    payload = event_payload(CodeRequired(ServiceType.TELEGRAM), "Telegram")

    assert payload["event"] == "telegram-code-required"
    assert payload["data"]["message"] == "Verification code required for Telegram authentication"


def test_payload_messages_for_failures():
    loop = event_payload(ReconnectionLoop(ServiceType.WHATSAPP, attempts=3), "WhatsApp")
    stream = event_payload(StreamError(ServiceType.WHATSAPP, reason="restart required"), "WhatsApp")
    dropped = event_payload(Disconnected(ServiceType.MATTERMOST), "Mattermost")

    assert loop["data"]["attempts"] == 3
    assert "3 attempts" in loop["data"]["message"]
    assert stream["data"]["message"].startswith("WhatsApp stream error: restart required")
    assert dropped["data"]["message"] == "Mattermost disconnected: Unknown reason"


class _FakeSession:
    service = ServiceType.TELEGRAM
    display_name = "Telegram"

    def __init__(self) -> None:
        self.hub = EventHub(self.service)

    def events(self):
        return self.hub.subscribe()


@pytest.mark.asyncio
async def test_broadcaster_forwards_events_and_survives_bad_listener():
    session = _FakeSession()
    received: list[dict] = []
    broken = MagicMock(side_effect=RuntimeError("boom"))

    async def collect(payload):
        received.append(payload)

    broadcaster = EventBroadcaster([session], listeners=[broken, collect])
    broadcaster.start()

    session.hub.publish(Connected(ServiceType.TELEGRAM))
    session.hub.publish(Disconnected(ServiceType.TELEGRAM, reason="bye"))
    await asyncio.sleep(0.01)
    await broadcaster.stop()

    assert [payload["data"]["status"] for payload in received] == ["connected", "disconnected"]
    assert broken.call_count == 2
    assert session.hub.subscriber_count == 0
