"""Periodic retention sweep for old messages."""

from __future__ import annotations

import asyncio
import logging

from relay.ledger import MessageLedger

LOGGER = logging.getLogger(__name__)


class RetentionSweeper:
    """Deletes messages older than the retention period on a fixed interval."""

    def __init__(
        self,
        ledger: MessageLedger,
        retention_days: int = 90,
        interval_seconds: float = 3600.0,
    ) -> None:
        self._ledger = ledger
        self._retention_days = retention_days
        self._interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()

    def sweep(self) -> int:
        """Run one sweep and return the number of deleted messages."""

        return self._ledger.delete_old_messages(self._retention_days)

    async def run_forever(self) -> None:
        """Sweep until stop() is called."""

        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Retention sweep failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()
