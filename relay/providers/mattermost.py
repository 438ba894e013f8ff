"""Mattermost session over the REST API v4 with a personal access token."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from relay.errors import ConfigurationError, RecipientValidationError
from relay.events import Connected, Connecting, Disconnected
from relay.ledger import MessageLedger
from relay.models import SendResult, ServiceType, SessionState
from relay.providers.base import Delivery, DeliveryError, FailureKind, ProviderSession
from relay.recipients import is_email, normalize_email, normalize_mattermost_channel_id, validate_body
from relay.status_store import ServiceStatusStore

LOGGER = logging.getLogger(__name__)

_STATUS_FAILURES: dict[int, tuple[FailureKind, str]] = {
    401: (FailureKind.AUTH, "Authentication failed. Please check your access token."),
    403: (FailureKind.PERMISSION, "Access denied. Bot may not have permission to post in this channel."),
    404: (FailureKind.NOT_FOUND, "Channel not found. Please check the channel ID."),
    429: (FailureKind.RATE_LIMITED, "Rate limited by Mattermost server."),
}

_CHECK_FAILURES = {
    401: "Invalid access token. Please check your Mattermost personal access token.",
    403: "Access denied. Please ensure the access token has sufficient permissions.",
}

CONNECT_REFUSED_MESSAGE = "Cannot connect to Mattermost server. Please check server URL."
TIMEOUT_MESSAGE = "Request timeout. Mattermost server may be slow or unreachable."


def normalize_server_url(server_url: str) -> str:
    try:
        url = httpx.URL((server_url or "").strip())
    except httpx.InvalidURL as exc:
        raise ConfigurationError(f"Invalid Mattermost server URL: {exc}") from None
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigurationError("Mattermost server URL must be an http(s) URL")
    return str(url).rstrip("/")


class MattermostSession(ProviderSession):
    """Token-authenticated Mattermost bot.

    There is no pairing flow: ``connect()`` is a single ``/users/me``
    check. Email recipients are routed through a direct channel with the
    bot user.
    """

    service = ServiceType.MATTERMOST
    display_name = "Mattermost"

    def __init__(
        self,
        ledger: MessageLedger,
        status_store: ServiceStatusStore,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(ledger, status_store)
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport
        self._config: tuple[str, str] | None = None
        self._bot_user_id: str | None = None

    @property
    def server_url(self) -> str | None:
        return self._config[0] if self._config else None

    def is_configured(self) -> bool:
        return self._config is not None

    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED and self._config is not None

    def configure(self, server_url: str, access_token: str) -> None:
        """Store a new server URL and token; the session must connect again."""

        url = normalize_server_url(server_url)
        token = (access_token or "").strip()
        if not token:
            raise ConfigurationError("Mattermost access token is required")
        self._status_store.set_mattermost_config(url, token)
        self._config = (url, token)
        self._bot_user_id = None
        event = Disconnected(self.service, reason="reconfigured") if self._state is SessionState.CONNECTED else None
        self._set_state(SessionState.DISCONNECTED, event)
        LOGGER.info("Mattermost configured for %s", url)

    def load_existing_credentials(self) -> bool:
        config = self._status_store.get_mattermost_config()
        if config is None:
            return False
        self._config = config
        LOGGER.info("Loaded stored Mattermost config for %s", config[0])
        return True

    async def connect(self) -> bool:
        async with self._lock:
            if self._state is SessionState.CONNECTED:
                return True
            if self._config is None:
                raise ConfigurationError("Mattermost server URL and access token are not configured")
            self._set_state(SessionState.CONNECTING, Connecting(self.service))
            return await self._verify()

    async def check_connection(self) -> bool:
        """Re-validate the token against the server and update the state."""

        async with self._lock:
            if self._config is None:
                return False
            return await self._verify()

    async def disconnect(self) -> None:
        async with self._lock:
            self._config = None
            self._bot_user_id = None
            self._status_store.clear_mattermost_config()
            event = None
            if self._state not in (SessionState.DISCONNECTED, SessionState.UNINITIALIZED):
                event = Disconnected(self.service, reason="disconnected by operator")
            self._set_state(SessionState.DISCONNECTED, event, {"bot_user_id": None, "bot_username": None})

    async def _verify(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/users/me")
                response.raise_for_status()
                user = response.json()
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            error = _CHECK_FAILURES.get(code, f"Authentication failed. Status: {code}")
        except httpx.ConnectError:
            error = CONNECT_REFUSED_MESSAGE
        except httpx.HTTPError as exc:
            error = f"Mattermost connection check failed: {exc}"
        else:
            self._bot_user_id = user.get("id")
            LOGGER.info("Authenticated as Mattermost user %s", user.get("username"))
            self._set_state(
                SessionState.CONNECTED,
                Connected(self.service) if self._state is not SessionState.CONNECTED else None,
                {"bot_user_id": user.get("id"), "bot_username": user.get("username")},
            )
            return True

        LOGGER.error("Mattermost connection check failed: %s", error)
        event = Disconnected(self.service, reason=error) if self._state is not SessionState.DISCONNECTED else None
        self._set_state(SessionState.DISCONNECTED, event)
        return False

    def _client(self) -> httpx.AsyncClient:
        if self._config is None:
            raise DeliveryError(FailureKind.TRANSPORT, "Mattermost is not configured")
        server_url, token = self._config
        return httpx.AsyncClient(
            base_url=f"{server_url}/api/v4",
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def send_text_by_email(
        self, email: str, body: str, metadata: dict[str, Any] | None = None
    ) -> SendResult:
        """Send a direct message to the user registered under ``email``."""

        try:
            target = ("email", normalize_email(email))
            validate_body(self.service, body)
        except RecipientValidationError as exc:
            return SendResult(success=False, error_message=str(exc))
        return await self._deliver(
            email, body, metadata, lambda: self._send_text(target, body, metadata or {})
        )

    async def get_channel_info(self, channel_id: str) -> dict[str, Any] | None:
        if not self.is_connected():
            return None
        try:
            async with self._client() as client:
                response = await client.get(f"/channels/{channel_id}")
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError:
            LOGGER.warning("Could not fetch Mattermost channel %s", channel_id, exc_info=True)
            return None
        return _channel_info(data)

    async def get_available_channels(self) -> list[dict[str, Any]]:
        """Channels the bot belongs to, across all of its teams."""

        if not self.is_connected():
            return []
        channels: list[dict[str, Any]] = []
        try:
            async with self._client() as client:
                response = await client.get("/users/me/teams")
                response.raise_for_status()
                for team in response.json():
                    try:
                        team_response = await client.get(f"/users/me/teams/{team['id']}/channels")
                        team_response.raise_for_status()
                    except httpx.HTTPError:
                        LOGGER.warning("Could not list channels for team %s", team.get("name"), exc_info=True)
                        continue
                    channels.extend(_channel_info(channel) for channel in team_response.json())
        except httpx.HTTPError:
            LOGGER.warning("Could not list Mattermost teams", exc_info=True)
            return []
        return channels

    def _normalize_recipient(self, recipient: str) -> tuple[str, str]:
        if is_email(recipient):
            return "email", normalize_email(recipient)
        return "channel", normalize_mattermost_channel_id(recipient)

    async def _resolve_channel(self, client: httpx.AsyncClient, target: tuple[str, str]) -> str:
        kind, value = target
        if kind == "channel":
            return value
        response = await client.get(f"/users/email/{value}")
        if response.status_code == 404:
            raise DeliveryError(FailureKind.NOT_FOUND, f"Mattermost user not found: {value}")
        response.raise_for_status()
        user_id = response.json()["id"]
        bot_user_id = self._bot_user_id
        if bot_user_id is None:
            me = await client.get("/users/me")
            me.raise_for_status()
            bot_user_id = self._bot_user_id = me.json()["id"]
        response = await client.post("/channels/direct", json=[bot_user_id, user_id])
        response.raise_for_status()
        return response.json()["id"]

    async def _send_text(self, target: tuple[str, str], body: str, metadata: dict[str, Any]) -> Delivery:
        async with self._client() as client:
            channel_id = await self._resolve_channel(client, target)
            return await self._post(client, channel_id, body.strip(), metadata)

    async def _send_media(self, target: tuple[str, str], media_path: str, caption: str | None) -> Delivery:
        path = Path(media_path)
        async with self._client() as client:
            channel_id = await self._resolve_channel(client, target)
            with path.open("rb") as handle:
                response = await client.post(
                    "/files", data={"channel_id": channel_id}, files={"files": (path.name, handle)}
                )
            response.raise_for_status()
            file_ids = [info["id"] for info in response.json().get("file_infos", [])]
            if not file_ids:
                raise DeliveryError(FailureKind.UNKNOWN, "Mattermost accepted the upload but returned no file id")
            return await self._post(client, channel_id, caption or "", {}, file_ids)

    async def _post(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        message: str,
        props: dict[str, Any],
        file_ids: list[str] | None = None,
    ) -> Delivery:
        payload: dict[str, Any] = {"channel_id": channel_id, "message": message, "props": props}
        if file_ids:
            payload["file_ids"] = file_ids
        response = await client.post("/posts", json=payload)
        response.raise_for_status()
        post = response.json()
        LOGGER.info("Mattermost post %s created in channel %s", post.get("id"), channel_id)
        return Delivery(
            external_id=post.get("id"),
            metadata={"channel_id": channel_id, "post_id": post.get("id"), "create_at": post.get("create_at")},
        )

    def _classify_error(self, exc: Exception) -> tuple[FailureKind, str]:
        if isinstance(exc, httpx.HTTPStatusError):
            code = exc.response.status_code
            if code in _STATUS_FAILURES:
                return _STATUS_FAILURES[code]
            if code == 400:
                return FailureKind.BAD_REQUEST, f"Bad request: {_error_detail(exc.response)}"
            if code >= 500:
                return FailureKind.TRANSPORT, f"Mattermost API error: {code}"
            return FailureKind.UNKNOWN, f"Mattermost API error: {code}"
        if isinstance(exc, httpx.ConnectError):
            return FailureKind.TRANSPORT, CONNECT_REFUSED_MESSAGE
        if isinstance(exc, httpx.TimeoutException):
            return FailureKind.TRANSPORT, TIMEOUT_MESSAGE
        if isinstance(exc, httpx.HTTPError):
            return FailureKind.TRANSPORT, "Mattermost API error: Network error"
        if isinstance(exc, OSError):
            return FailureKind.BAD_REQUEST, f"Cannot read media file: {exc}"
        return FailureKind.UNKNOWN, str(exc) or "Unknown Mattermost error"


def _channel_info(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": data.get("id"),
        "name": data.get("name"),
        "display_name": data.get("display_name"),
        "type": data.get("type"),
    }


def _error_detail(response: httpx.Response) -> str:
    try:
        return response.json().get("message") or "Invalid request format"
    except ValueError:
        return "Invalid request format"
