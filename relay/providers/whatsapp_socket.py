"""Vendor boundary for QR-paired WhatsApp connections."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Awaitable, Callable, Literal


class DisconnectReason(IntEnum):
    """Close status codes reported by multi-device WhatsApp clients."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    FORBIDDEN = 403
    BAD_SESSION = 500
    MULTIDEVICE_MISMATCH = 411
    RESTART_REQUIRED = 515
    UNAVAILABLE_SERVICE = 503


class CloseKind(str, Enum):
    LOGGED_OUT = "logged_out"
    STREAM_ERROR = "stream_error"
    AUTH_REJECTED = "auth_rejected"
    TRANSIENT = "transient"


_AUTH_REJECTED_CODES = frozenset(
    {DisconnectReason.FORBIDDEN, DisconnectReason.BAD_SESSION, DisconnectReason.MULTIDEVICE_MISMATCH}
)


def classify_close(status_code: int | None) -> CloseKind:
    if status_code == DisconnectReason.LOGGED_OUT:
        return CloseKind.LOGGED_OUT
    if status_code == DisconnectReason.RESTART_REQUIRED:
        return CloseKind.STREAM_ERROR
    if status_code in _AUTH_REJECTED_CODES:
        return CloseKind.AUTH_REJECTED
    return CloseKind.TRANSIENT


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    """One connection update pushed by the socket.

    ``qr`` carries a pairing payload; ``connection`` reports progress. A
    ``close`` update carries the status code used to classify it.
    """

    connection: Literal["connecting", "authenticating", "open", "close"] | None = None
    qr: str | None = None
    status_code: int | None = None
    reason: str | None = None


UpdateHandler = Callable[[ConnectionUpdate], Awaitable[None]]


class WhatsAppSocket(ABC):
    """One live connection to WhatsApp backed by a credential directory."""

    @abstractmethod
    async def start(self) -> None:
        """Begin connecting; progress is reported through the update handler."""

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> str | None:
        """Send a text message, returning the vendor message id."""

    @abstractmethod
    async def send_media(self, jid: str, media_path: str, caption: str | None) -> str | None:
        """Send a file, returning the vendor message id."""

    @abstractmethod
    async def logout(self) -> None:
        """Invalidate the paired device on the server."""

    @abstractmethod
    async def close(self) -> None:
        """Drop the connection immediately."""


SocketFactory = Callable[[Path, UpdateHandler], WhatsAppSocket]
