"""Per-provider connection status and credential storage."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable

from relay.db import Database, from_iso, to_iso, utc_now
from relay.models import ConnectionStatus, ServiceStatus, ServiceType

LOGGER = logging.getLogger(__name__)

# Metadata keys that are write-only from the API surface.
SENSITIVE_KEYS = frozenset({"qr_code", "bot_token", "access_token", "credentials"})

REDACTED = "***"


class ServiceStatusStore:
    """Repository over the ``service_status`` table, one row per service.

    Every write is a single upsert that merges a metadata patch key by key,
    so readers never observe a half-initialised row. A ``None`` value in a
    patch removes that key.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def update_service_status(
        self,
        service: ServiceType,
        status: ConnectionStatus,
        metadata_patch: dict[str, Any] | None = None,
    ) -> ServiceStatus:
        now = to_iso(utc_now())
        with self._db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT metadata_json FROM service_status WHERE service = ?", (service.value,)
            ).fetchone()
            metadata = json.loads(row["metadata_json"]) if row else {}
            _apply_patch(metadata, metadata_patch)
            conn.execute(
                """
                INSERT INTO service_status(service, status, metadata_json, last_updated)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(service) DO UPDATE SET
                    status=excluded.status,
                    metadata_json=excluded.metadata_json,
                    last_updated=excluded.last_updated
                """,
                (service.value, status.value, json.dumps(metadata), now),
            )
            updated = _fetch(conn, service)
        LOGGER.info("Updated %s service status to %s", service.value, status.value)
        return _to_status(updated, include_sensitive=False)

    def patch_metadata(self, service: ServiceType, metadata_patch: dict[str, Any]) -> ServiceStatus | None:
        """Merge metadata without touching the status; no-op if the row is missing."""

        with self._db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = _fetch(conn, service)
            if row is None:
                return None
            metadata = json.loads(row["metadata_json"])
            _apply_patch(metadata, metadata_patch)
            conn.execute(
                "UPDATE service_status SET metadata_json = ?, last_updated = ? WHERE service = ?",
                (json.dumps(metadata), to_iso(utc_now()), service.value),
            )
            updated = _fetch(conn, service)
        return _to_status(updated, include_sensitive=False)

    def get_status(self, service: ServiceType, include_sensitive: bool = False) -> ServiceStatus | None:
        """Read one row. Sensitive metadata is dropped unless explicitly requested."""

        with self._db.connect() as conn:
            row = _fetch(conn, service)
        if row is None:
            return None
        return _to_status(row, include_sensitive=include_sensitive)

    def get_all_statuses(self, include_sensitive: bool = False) -> list[ServiceStatus]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT * FROM service_status ORDER BY service").fetchall()
        return [_to_status(row, include_sensitive=include_sensitive) for row in rows]

    def get_connected_services(self) -> list[ServiceType]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT service FROM service_status WHERE status = 'connected' ORDER BY service"
            ).fetchall()
        return [ServiceType(row["service"]) for row in rows]

    def is_service_connected(self, service: ServiceType) -> bool:
        status = self.get_status(service)
        return status is not None and status.is_connected()

    def mark_as_connected(self, service: ServiceType, metadata_patch: dict[str, Any] | None = None) -> ServiceStatus:
        return self.update_service_status(service, ConnectionStatus.CONNECTED, metadata_patch)

    def mark_as_disconnected(self, service: ServiceType, metadata_patch: dict[str, Any] | None = None) -> ServiceStatus:
        return self.update_service_status(service, ConnectionStatus.DISCONNECTED, metadata_patch)

    def mark_as_authenticating(
        self, service: ServiceType, metadata_patch: dict[str, Any] | None = None
    ) -> ServiceStatus:
        return self.update_service_status(service, ConnectionStatus.AUTHENTICATING, metadata_patch)

    def set_whatsapp_qr_code(self, qr_code: str) -> ServiceStatus:
        return self.mark_as_authenticating(ServiceType.WHATSAPP, {"qr_code": qr_code})

    def get_whatsapp_qr_code(self) -> str | None:
        status = self.get_status(ServiceType.WHATSAPP, include_sensitive=True)
        if status is None:
            return None
        return status.metadata.get("qr_code") or None

    def clear_whatsapp_qr_code(self) -> ServiceStatus | None:
        return self.patch_metadata(ServiceType.WHATSAPP, {"qr_code": None})

    def set_telegram_credentials(self, credentials: dict[str, Any]) -> ServiceStatus:
        current = self.get_status(ServiceType.TELEGRAM)
        status = current.status if current is not None else ConnectionStatus.DISCONNECTED
        if status is ConnectionStatus.NOT_CONFIGURED:
            status = ConnectionStatus.DISCONNECTED
        return self.update_service_status(ServiceType.TELEGRAM, status, {"credentials": credentials})

    def get_telegram_credentials(self) -> dict[str, Any] | None:
        status = self.get_status(ServiceType.TELEGRAM, include_sensitive=True)
        if status is None:
            return None
        return status.metadata.get("credentials") or None

    def set_mattermost_config(self, server_url: str, access_token: str) -> ServiceStatus:
        return self.mark_as_disconnected(
            ServiceType.MATTERMOST, {"server_url": server_url, "access_token": access_token}
        )

    def get_mattermost_config(self) -> tuple[str, str] | None:
        status = self.get_status(ServiceType.MATTERMOST, include_sensitive=True)
        if status is None:
            return None
        server_url = status.metadata.get("server_url")
        access_token = status.metadata.get("access_token")
        if not server_url or not access_token:
            return None
        return server_url, access_token

    def clear_mattermost_config(self) -> ServiceStatus:
        return self.mark_as_disconnected(ServiceType.MATTERMOST, {"server_url": None, "access_token": None})

    def clear_sensitive_data(self, service: ServiceType) -> ServiceStatus | None:
        return self.patch_metadata(service, {key: None for key in SENSITIVE_KEYS})

    def initialize_default_statuses(
        self, services: Iterable[ServiceType] = tuple(ServiceType)
    ) -> list[ServiceType]:
        """Create a ``not_configured`` row for every service without one."""

        created: list[ServiceType] = []
        now = to_iso(utc_now())
        with self._db.connect() as conn:
            for service in services:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO service_status(service, status, metadata_json, last_updated)
                    VALUES (?, ?, '{}', ?)
                    """,
                    (service.value, ConnectionStatus.NOT_CONFIGURED.value, now),
                )
                if cur.rowcount:
                    created.append(service)
        for service in created:
            LOGGER.info("Initialized default status for %s service", service.value)
        return created

    def get_service_health_status(self) -> dict[ServiceType, ConnectionStatus]:
        health = {service: ConnectionStatus.NOT_CONFIGURED for service in ServiceType}
        for status in self.get_all_statuses():
            health[status.service] = status.status
        return health


def redact(status: ServiceStatus) -> dict[str, Any]:
    """Serialisable projection of a status with sensitive values masked."""

    metadata = {
        key: (REDACTED if key in SENSITIVE_KEYS else value) for key, value in status.metadata.items()
    }
    return {
        "service": status.service.value,
        "status": status.status.value,
        "last_updated": status.last_updated.isoformat(),
        "metadata": metadata,
    }


def _apply_patch(metadata: dict[str, Any], patch: dict[str, Any] | None) -> None:
    for key, value in (patch or {}).items():
        if value is None:
            metadata.pop(key, None)
        else:
            metadata[key] = value


def _fetch(conn: sqlite3.Connection, service: ServiceType) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM service_status WHERE service = ?", (service.value,)).fetchone()


def _to_status(row: sqlite3.Row, include_sensitive: bool) -> ServiceStatus:
    metadata = json.loads(row["metadata_json"] or "{}")
    if not include_sensitive:
        metadata = {key: value for key, value in metadata.items() if key not in SENSITIVE_KEYS}
    return ServiceStatus(
        service=ServiceType(row["service"]),
        status=ConnectionStatus(row["status"]),
        last_updated=from_iso(row["last_updated"]),
        metadata=metadata,
    )
