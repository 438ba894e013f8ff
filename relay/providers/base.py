"""Provider session contract and the shared delivery pipeline."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from relay.errors import RecipientValidationError, RelayError
from relay.events import ConnectionEvent, EventHub, EventSubscription
from relay.ledger import MessageLedger
from relay.models import MessageDraft, SendResult, ServiceType, SessionState
from relay.recipients import validate_body
from relay.status_store import ServiceStatusStore

LOGGER = logging.getLogger(__name__)


class FailureKind(str, Enum):
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


RETRYABLE_FAILURES = frozenset({FailureKind.RATE_LIMITED, FailureKind.TRANSPORT})

# Recorded in the ledger only, never forwarded to a vendor.
_INTERNAL_METADATA = frozenset({"requested_by"})


class DeliveryError(RelayError):
    """A vendor rejected a send, with the reason already classified."""

    def __init__(self, kind: FailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(slots=True)
class Delivery:
    """What a vendor transport reports for an accepted send."""

    external_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


class ProviderSession(ABC):
    """Stateful adapter for one messaging channel.

    Subclasses own the connection state machine; this base class owns the
    send pipeline: validate, record ``pending``, gate on the connection,
    call the vendor, record ``sent`` or ``failed``.
    """

    service: ServiceType
    display_name: str

    def __init__(self, ledger: MessageLedger, status_store: ServiceStatusStore) -> None:
        self._ledger = ledger
        self._status_store = status_store
        self._state = SessionState.UNINITIALIZED
        self._hub = EventHub(self.service)
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    def events(self) -> EventSubscription:
        """Subscribe to this session's connection events."""

        return self._hub.subscribe()

    @abstractmethod
    async def connect(self) -> bool:
        """Establish a session with the configured credentials."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear the session down. Safe to call in any state."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Last known connection state, without I/O."""

    async def close(self) -> None:
        """Release resources at shutdown without invalidating credentials."""

    @abstractmethod
    def _normalize_recipient(self, recipient: str) -> Any:
        """Validate a recipient, returning the vendor-level target."""

    @abstractmethod
    async def _send_text(self, target: Any, body: str, metadata: dict[str, Any]) -> Delivery:
        ...

    @abstractmethod
    async def _send_media(self, target: Any, media_path: str, caption: str | None) -> Delivery:
        ...

    def _classify_error(self, exc: Exception) -> tuple[FailureKind, str]:
        return FailureKind.UNKNOWN, str(exc) or type(exc).__name__

    async def send_text(self, recipient: str, body: str, metadata: dict[str, Any] | None = None) -> SendResult:
        try:
            target = self._normalize_recipient(recipient)
            validate_body(self.service, body)
        except RecipientValidationError as exc:
            return SendResult(success=False, error_message=str(exc))
        props = {key: value for key, value in (metadata or {}).items() if key not in _INTERNAL_METADATA}
        return await self._deliver(recipient, body, metadata, lambda: self._send_text(target, body, props))

    async def send_media(
        self,
        recipient: str,
        media_path: str,
        caption: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SendResult:
        try:
            target = self._normalize_recipient(recipient)
            if not media_path or not media_path.strip():
                raise RecipientValidationError("Media path is required")
            if caption:
                validate_body(self.service, caption)
        except RecipientValidationError as exc:
            return SendResult(success=False, error_message=str(exc))
        recorded = {**(metadata or {}), "media_path": media_path}
        return await self._deliver(
            recipient,
            caption or "Media message",
            recorded,
            lambda: self._send_media(target, media_path, caption),
        )

    async def _deliver(
        self,
        recipient: str,
        body: str,
        metadata: dict[str, Any] | None,
        transport: Callable[[], Awaitable[Delivery]],
    ) -> SendResult:
        metadata = dict(metadata or {})
        draft = MessageDraft(
            service=self.service,
            recipient=recipient,
            body=body,
            requested_by=str(metadata.get("requested_by") or "admin"),
            metadata=metadata,
        )
        try:
            message = self._ledger.create(draft)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Could not record %s message for %s", self.service.value, recipient)
            return SendResult(success=False, error_message=f"Failed to record message: {exc}", retryable=True)

        if not self.is_connected():
            error = f"{self.display_name} not connected"
            self._ledger.mark_as_failed(message.id, error)
            return SendResult(success=False, message_id=message.id, error_message=error, retryable=True)

        try:
            delivery = await transport()
        except asyncio.CancelledError:
            LOGGER.warning("%s send to %s cancelled", self.display_name, recipient)
            self._ledger.mark_as_failed(message.id, "Send cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, DeliveryError):
                kind, error = exc.kind, str(exc)
            else:
                kind, error = self._classify_error(exc)
            LOGGER.error(
                "%s send to %s failed (%s): %s", self.display_name, recipient, kind.value, error
            )
            self._ledger.mark_as_failed(message.id, error)
            return SendResult(
                success=False,
                message_id=message.id,
                error_message=error,
                retryable=kind in RETRYABLE_FAILURES,
            )

        sent = self._ledger.mark_as_sent(message.id, delivery.external_id)
        return SendResult(
            success=True,
            message_id=message.id,
            external_message_id=sent.external_message_id,
            metadata=delivery.metadata,
        )

    def _set_state(
        self,
        state: SessionState,
        event: ConnectionEvent | None = None,
        metadata_patch: dict[str, Any] | None = None,
    ) -> None:
        """Record a transition, persist its projection and publish the event."""

        previous = self._state
        self._state = state
        if previous is not state:
            LOGGER.info("%s session %s -> %s", self.service.value, previous.value, state.value)
        patch = {"session_state": state.value, **(metadata_patch or {})}
        try:
            self._status_store.update_service_status(self.service, state.connection_status(), patch)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not persist %s state %s", self.service.value, state.value)
        if event is not None:
            self._hub.publish(event)
