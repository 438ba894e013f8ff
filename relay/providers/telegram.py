"""Telegram user-account session with interactive code/password login."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import asdict, dataclass
from typing import Any, Callable

from telethon import TelegramClient, errors
from telethon.sessions import StringSession
from telethon.tl.functions.contacts import ImportContactsRequest
from telethon.tl.types import InputPhoneContact

from relay.errors import ConfigurationError, RecipientValidationError
from relay.events import (
    CodeRequired,
    Connected,
    Connecting,
    ConnectionEvent,
    Disconnected,
    PasswordRequired,
)
from relay.ledger import MessageLedger
from relay.models import ServiceType, SessionState
from relay.providers.base import Delivery, DeliveryError, FailureKind, ProviderSession
from relay.recipients import normalize_telegram_recipient, normalize_whatsapp_phone
from relay.status_store import ServiceStatusStore

LOGGER = logging.getLogger(__name__)

MIN_API_HASH_LENGTH = 32

_BUSY_STATES = frozenset(
    {
        SessionState.CONNECTING,
        SessionState.CODE_REQUIRED,
        SessionState.PASSWORD_REQUIRED,
        SessionState.CONNECTED,
    }
)


@dataclass(slots=True)
class TelegramCredentials:
    api_id: int
    api_hash: str
    phone_number: str
    session_string: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TelegramCredentials:
        return cls(
            api_id=int(raw["api_id"]),
            api_hash=str(raw["api_hash"]),
            phone_number=str(raw["phone_number"]),
            session_string=raw.get("session_string") or None,
        )


ClientFactory = Callable[[str, int, str], TelegramClient]


def default_client_factory(session_string: str, api_id: int, api_hash: str) -> TelegramClient:
    return TelegramClient(StringSession(session_string), api_id, api_hash, connection_retries=5)


def validate_credentials(api_id: Any, api_hash: str, phone_number: str) -> tuple[int, str, str]:
    """Check raw credential values, returning them normalised.

    Raises:
        ConfigurationError: on a non-positive api id, a short api hash or a
            malformed phone number.
    """
    try:
        api_id = int(api_id)
    except (TypeError, ValueError):
        raise ConfigurationError("Telegram api_id must be an integer") from None
    if api_id <= 0:
        raise ConfigurationError("Telegram api_id must be positive")
    if not api_hash or len(api_hash.strip()) < MIN_API_HASH_LENGTH:
        raise ConfigurationError(f"Telegram api_hash must be at least {MIN_API_HASH_LENGTH} characters")
    try:
        phone = "+" + normalize_whatsapp_phone(phone_number or "")
    except RecipientValidationError as exc:
        raise ConfigurationError(f"Invalid Telegram phone number: {exc}") from None
    return api_id, api_hash.strip(), phone


class TelegramSession(ProviderSession):
    """Telegram session driven by a background login task.

    ``connect()`` returns once the login settles: connected, waiting for
    an operator-supplied code or password, or failed. Each prompt accepts
    a single answer.
    """

    service = ServiceType.TELEGRAM
    display_name = "Telegram"

    def __init__(
        self,
        ledger: MessageLedger,
        status_store: ServiceStatusStore,
        client_factory: ClientFactory = default_client_factory,
        settle_timeout_seconds: float = 60.0,
        default_api_id: int | None = None,
        default_api_hash: str | None = None,
    ) -> None:
        super().__init__(ledger, status_store)
        self._client_factory = client_factory
        self._default_api = (default_api_id, default_api_hash)
        self._settle_timeout = settle_timeout_seconds
        self._credentials: TelegramCredentials | None = None
        self._client: TelegramClient | None = None
        self._login_task: asyncio.Task[None] | None = None
        self._settled = asyncio.Event()
        self._prompt: tuple[SessionState, asyncio.Future[str]] | None = None

    @property
    def credentials(self) -> TelegramCredentials | None:
        return self._credentials

    def configure_credentials(
        self,
        api_id: Any,
        api_hash: str | None,
        phone_number: str,
        session_string: str | None = None,
    ) -> None:
        """Validate and store credentials. A missing api id or hash falls back to the defaults."""

        api_id, api_hash, phone = validate_credentials(
            api_id or self._default_api[0], api_hash or self._default_api[1] or "", phone_number
        )
        self._credentials = TelegramCredentials(api_id, api_hash, phone, session_string or None)
        self._status_store.set_telegram_credentials(self._credentials.to_dict())
        LOGGER.info("Telegram credentials configured for %s", phone)

    def load_existing_credentials(self) -> bool:
        raw = self._status_store.get_telegram_credentials()
        if not raw:
            return False
        try:
            self._credentials = TelegramCredentials.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Stored Telegram credentials are malformed, ignoring them")
            return False
        LOGGER.info("Loaded stored Telegram credentials")
        return True

    def can_auto_connect(self) -> bool:
        return self._credentials is not None and bool(self._credentials.session_string)

    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED and self._client is not None

    def is_waiting_for_code(self) -> bool:
        return self._state is SessionState.CODE_REQUIRED

    def is_waiting_for_password(self) -> bool:
        return self._state is SessionState.PASSWORD_REQUIRED

    async def connect(self) -> bool:
        async with self._lock:
            if self._state in _BUSY_STATES:
                LOGGER.info("Telegram connect ignored, session is %s", self._state.value)
                return True
            if self._credentials is None:
                raise ConfigurationError("Telegram credentials are not configured")
            self._settled = asyncio.Event()
            self._set_state(SessionState.CONNECTING, Connecting(self.service))
            self._login_task = asyncio.create_task(self._login(self._credentials), name="telegram-login")
            try:
                await asyncio.wait_for(self._settled.wait(), timeout=self._settle_timeout)
            except asyncio.TimeoutError:
                LOGGER.warning("Telegram login did not settle within %.0fs", self._settle_timeout)
                return False
            return self._state is not SessionState.DISCONNECTED

    def provide_phone_code(self, code: str) -> bool:
        return self._answer(SessionState.CODE_REQUIRED, code)

    def provide_password(self, password: str) -> bool:
        return self._answer(SessionState.PASSWORD_REQUIRED, password)

    async def disconnect(self) -> None:
        async with self._lock:
            await self._teardown()
            event = None
            if self._state not in (SessionState.DISCONNECTED, SessionState.UNINITIALIZED):
                event = Disconnected(self.service, reason="disconnected by operator")
            self._set_state(SessionState.DISCONNECTED, event)

    async def close(self) -> None:
        async with self._lock:
            if self._client is None and self._login_task is None:
                return
            await self._teardown()
            self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason="shutdown"))

    async def _login(self, credentials: TelegramCredentials) -> None:
        client = self._client_factory(credentials.session_string or "", credentials.api_id, credentials.api_hash)
        self._client = client
        try:
            await client.connect()
            if not await client.is_user_authorized():
                await client.send_code_request(credentials.phone_number)
                code = await self._wait_for_answer(SessionState.CODE_REQUIRED, CodeRequired(self.service))
                try:
                    await client.sign_in(phone=credentials.phone_number, code=code)
                except errors.SessionPasswordNeededError:
                    password = await self._wait_for_answer(
                        SessionState.PASSWORD_REQUIRED, PasswordRequired(self.service)
                    )
                    await client.sign_in(password=password)
            self._store_session(client)
            self._set_state(SessionState.CONNECTED, Connected(self.service))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Telegram login failed")
            await self._drop_client()
            self._set_state(SessionState.DISCONNECTED, Disconnected(self.service, reason=str(exc) or "login failed"))
        finally:
            self._prompt = None
            self._login_task = None
            self._settled.set()

    async def _wait_for_answer(self, state: SessionState, event: ConnectionEvent) -> str:
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._prompt = (state, future)
        self._set_state(state, event)
        self._settled.set()
        return await future

    def _answer(self, state: SessionState, value: str) -> bool:
        prompt = self._prompt
        if prompt is None or prompt[0] is not state or prompt[1].done():
            LOGGER.warning("Telegram is not waiting for %s", state.value)
            return False
        self._prompt = None
        prompt[1].set_result(value)
        LOGGER.info("Telegram %s answer accepted", state.value)
        return True

    def _store_session(self, client: TelegramClient) -> None:
        if self._credentials is None:
            return
        self._credentials.session_string = client.session.save()
        self._status_store.set_telegram_credentials(self._credentials.to_dict())
        LOGGER.info("Telegram session string saved")

    async def _teardown(self) -> None:
        task, self._login_task = self._login_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._prompt is not None:
            self._prompt[1].cancel()
            self._prompt = None
        await self._drop_client()

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception:  # noqa: BLE001
            LOGGER.warning("Error while disconnecting Telegram client", exc_info=True)

    def _normalize_recipient(self, recipient: str) -> tuple[str, str]:
        return normalize_telegram_recipient(recipient)

    async def _resolve_entity(self, target: tuple[str, str]) -> Any:
        client = self._require_client()
        kind, value = target
        if kind == "phone":
            result = await client(
                ImportContactsRequest(
                    [InputPhoneContact(client_id=random.randrange(2**62), phone=value, first_name=value, last_name="")]
                )
            )
            if not result.users:
                raise DeliveryError(FailureKind.NOT_FOUND, f"No Telegram account found for {value}")
            return result.users[0]
        if kind == "chat_id":
            return await client.get_entity(int(value))
        return await client.get_entity(value)

    async def _send_text(self, target: tuple[str, str], body: str, metadata: dict[str, Any]) -> Delivery:
        entity = await self._resolve_entity(target)
        message = await self._require_client().send_message(entity, body)
        return Delivery(external_id=str(message.id))

    async def _send_media(self, target: tuple[str, str], media_path: str, caption: str | None) -> Delivery:
        entity = await self._resolve_entity(target)
        message = await self._require_client().send_file(entity, media_path, caption=caption)
        return Delivery(external_id=str(message.id))

    def _require_client(self) -> TelegramClient:
        if self._client is None:
            raise DeliveryError(FailureKind.TRANSPORT, "Telegram client dropped before sending")
        return self._client

    def _classify_error(self, exc: Exception) -> tuple[FailureKind, str]:
        if isinstance(exc, errors.FloodWaitError):
            return FailureKind.RATE_LIMITED, f"Rate limited by Telegram, retry after {exc.seconds}s"
        if isinstance(exc, errors.FloodError):
            return FailureKind.RATE_LIMITED, f"Rate limited by Telegram: {exc}"
        if isinstance(exc, errors.UnauthorizedError):
            return FailureKind.AUTH, f"Telegram authorization failed: {exc}"
        if isinstance(exc, errors.ForbiddenError):
            return FailureKind.PERMISSION, f"Not allowed to message this recipient: {exc}"
        if isinstance(exc, errors.BadRequestError):
            return FailureKind.BAD_REQUEST, f"Telegram rejected the request: {exc}"
        if isinstance(exc, ValueError):
            return FailureKind.NOT_FOUND, f"Telegram recipient not found: {exc}"
        if isinstance(exc, (ConnectionError, OSError, asyncio.TimeoutError)):
            return FailureKind.TRANSPORT, f"Telegram transport error: {exc}"
        return FailureKind.UNKNOWN, str(exc) or type(exc).__name__
