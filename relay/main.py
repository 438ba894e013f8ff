"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging
import signal

from relay.api_keys import ApiKeyStore, Authorizer
from relay.broadcaster import EventBroadcaster
from relay.config import Settings, load_settings, reconnect_policy
from relay.db import Database
from relay.housekeeping import RetentionSweeper
from relay.ledger import MessageLedger
from relay.providers.mattermost import MattermostSession
from relay.providers.neonize_socket import neonize_socket_factory
from relay.providers.telegram import TelegramSession
from relay.providers.whatsapp import WhatsAppSession
from relay.ratelimit import RateLimiter
from relay.service import NotificationService
from relay.status_store import ServiceStatusStore

LOGGER = logging.getLogger(__name__)

_NOISY_LOGGERS = ("telethon", "httpx", "httpcore", "neonize")


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_service(settings: Settings) -> NotificationService:
    """Wire the persistence layer and one session per channel."""

    db = Database(settings.database_path)
    ledger = MessageLedger(db)
    status_store = ServiceStatusStore(db)
    whatsapp = WhatsAppSession(
        ledger,
        status_store,
        session_path=settings.whatsapp_session_path,
        socket_factory=neonize_socket_factory,
        policy=reconnect_policy(settings),
    )
    telegram = TelegramSession(
        ledger,
        status_store,
        default_api_id=settings.telegram_api_id,
        default_api_hash=settings.telegram_api_hash,
    )
    mattermost = MattermostSession(ledger, status_store, timeout_seconds=settings.mattermost_timeout_seconds)
    authorizer = Authorizer(
        ApiKeyStore(db),
        RateLimiter(
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
        ),
    )
    return NotificationService(db, ledger, status_store, whatsapp, telegram, mattermost, authorizer)


async def run() -> None:
    """Initialize app layers and run until interrupted."""

    settings = load_settings()
    configure_logging(settings.log_level)

    service = build_service(settings)
    mattermost_config = None
    if settings.mattermost_server_url and settings.mattermost_access_token:
        mattermost_config = (settings.mattermost_server_url, settings.mattermost_access_token)

    broadcaster = EventBroadcaster(service.sessions.values())
    broadcaster.start()
    await service.initialize(mattermost_config=mattermost_config)

    sweeper = RetentionSweeper(
        service.ledger,
        retention_days=settings.message_retention_days,
        interval_seconds=settings.retention_sweep_interval_seconds,
    )
    sweeper_task = asyncio.create_task(sweeper.run_forever(), name="retention-sweeper")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    LOGGER.info("Notification relay %s running", settings.app_version)
    try:
        await stop_event.wait()
    finally:
        sweeper.stop()
        await sweeper_task
        await service.shutdown()
        await broadcaster.stop()
        LOGGER.info("Notification relay shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
