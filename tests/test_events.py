import asyncio

import pytest

from relay.events import Connected, Disconnected, EventHub, QrReady, ReconnectionLoop
from relay.models import ServiceType


def test_event_kinds():
    assert QrReady(ServiceType.WHATSAPP, qr_code="x").kind == "qr_ready"
    assert ReconnectionLoop(ServiceType.WHATSAPP, attempts=3).kind == "reconnection_loop"
    assert Disconnected(ServiceType.TELEGRAM).reason is None


@pytest.mark.asyncio
async def test_subscribers_only_see_events_published_after_subscribing():
    hub = EventHub(ServiceType.WHATSAPP)
    hub.publish(Connected(ServiceType.WHATSAPP))

    subscription = hub.subscribe()
    hub.publish(QrReady(ServiceType.WHATSAPP, qr_code="qr"))

    event = await asyncio.wait_for(subscription.__anext__(), timeout=1)
    assert isinstance(event, QrReady)
    assert subscription.pending() == []


@pytest.mark.asyncio
async def test_each_subscriber_gets_every_event():
    hub = EventHub(ServiceType.TELEGRAM)
    first = hub.subscribe()
    second = hub.subscribe()

    hub.publish(Connected(ServiceType.TELEGRAM))
    hub.publish(Disconnected(ServiceType.TELEGRAM, reason="bye"))

    assert [e.kind for e in first.pending()] == ["connected", "disconnected"]
    assert [e.kind for e in second.pending()] == ["connected", "disconnected"]


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving():
    hub = EventHub(ServiceType.MATTERMOST)
    subscription = hub.subscribe()
    subscription.close()

    hub.publish(Connected(ServiceType.MATTERMOST))

    assert hub.subscriber_count == 0
    assert subscription.pending() == []
    with pytest.raises(StopAsyncIteration):
        await subscription.__anext__()
