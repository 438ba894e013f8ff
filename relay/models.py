"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ServiceType(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    MATTERMOST = "mattermost"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ConnectionStatus(str, Enum):
    """Coarse connection status persisted per service."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    NOT_CONFIGURED = "not_configured"


class SessionState(str, Enum):
    """Detailed connection state owned by a provider session."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    QR_PENDING = "qr_pending"
    AUTHENTICATING = "authenticating"
    CODE_REQUIRED = "code_required"
    PASSWORD_REQUIRED = "password_required"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STREAM_ERROR = "stream_error"
    RECONNECTION_LOOP = "reconnection_loop"

    def connection_status(self) -> ConnectionStatus:
        """Fold the detailed state into the stored status."""

        if self is SessionState.CONNECTED:
            return ConnectionStatus.CONNECTED
        if self in _AUTHENTICATING_STATES:
            return ConnectionStatus.AUTHENTICATING
        return ConnectionStatus.DISCONNECTED


_AUTHENTICATING_STATES = frozenset(
    {
        SessionState.CONNECTING,
        SessionState.QR_PENDING,
        SessionState.AUTHENTICATING,
        SessionState.CODE_REQUIRED,
        SessionState.PASSWORD_REQUIRED,
    }
)

MAX_BODY_LENGTH: dict[ServiceType, int] = {
    ServiceType.WHATSAPP: 4096,
    ServiceType.TELEGRAM: 4096,
    ServiceType.MATTERMOST: 16383,
}

MAX_ERROR_LENGTH = 1000


@dataclass(slots=True)
class MessageDraft:
    """Send request accepted for delivery, before it is persisted."""

    service: ServiceType
    recipient: str
    body: str
    requested_by: str = "admin"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Message:
    """A single delivery attempt recorded in the ledger."""

    id: str
    service: ServiceType
    recipient: str
    body: str
    status: MessageStatus
    requested_by: str
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    external_message_id: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class ServiceStatus:
    """Persisted projection of one provider session's connection state."""

    service: ServiceType
    status: ConnectionStatus
    last_updated: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED


@dataclass(slots=True)
class SendResult:
    """Outcome of a provider session send call."""

    success: bool
    message_id: str | None = None
    external_message_id: str | None = None
    error_message: str | None = None
    retryable: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NotificationRequest:
    """Inbound send request routed by the notification service."""

    recipient: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MessageStats:
    """Message counts for one service grouped by status."""

    service: ServiceType
    stats: dict[MessageStatus, int]
    total: int


@dataclass(slots=True)
class ApiKey:
    """API key metadata. The secret itself is only stored hashed."""

    id: str
    name: str
    permissions: frozenset[str]
    is_active: bool
    created_at: datetime
    rate_limit: int | None = None
    expires_at: datetime | None = None
    usage_count: int = 0
    last_used_at: datetime | None = None

    def has_permission(self, permission: str) -> bool:
        return "*" in self.permissions or permission in self.permissions
