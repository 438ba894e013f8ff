"""Message ledger: the durable record of every delivery attempt."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from relay.db import Database, from_iso, to_iso, utc_now
from relay.errors import InvalidTransitionError, MessageNotFoundError
from relay.models import (
    MAX_ERROR_LENGTH,
    Message,
    MessageDraft,
    MessageStats,
    MessageStatus,
    ServiceType,
)

LOGGER = logging.getLogger(__name__)

UNKNOWN_EXTERNAL_ID = "unknown"


@dataclass(slots=True)
class MessageFilters:
    """Optional filters for ``MessageLedger.find_messages``."""

    service: ServiceType | None = None
    status: MessageStatus | None = None
    recipient: str | None = None
    requested_by: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None


class MessageLedger:
    """Repository over the ``messages`` table.

    Status moves from ``pending`` to ``sent`` or ``failed`` exactly once;
    the guarded UPDATE makes a second terminal transition fail instead of
    overwriting the first outcome.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, draft: MessageDraft) -> Message:
        """Persist a new pending message."""

        now = to_iso(utc_now())
        message_id = uuid.uuid4().hex
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO messages(
                    id, service, recipient, body, status, requested_by, metadata_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)
                """,
                (
                    message_id,
                    draft.service.value,
                    draft.recipient,
                    draft.body,
                    draft.requested_by,
                    json.dumps(draft.metadata, default=str),
                    now,
                    now,
                ),
            )
            row = _fetch(conn, message_id)
        LOGGER.debug("Recorded pending %s message %s", draft.service.value, message_id)
        return _to_message(row)

    def get(self, message_id: str) -> Message:
        with self._db.connect() as conn:
            row = _fetch(conn, message_id)
        if row is None:
            raise MessageNotFoundError(message_id)
        return _to_message(row)

    def mark_as_sent(self, message_id: str, external_message_id: str | None = None) -> Message:
        """Move a pending message to ``sent``."""

        return self._finish(
            message_id,
            MessageStatus.SENT,
            external_message_id=external_message_id or UNKNOWN_EXTERNAL_ID,
            error_message=None,
        )

    def mark_as_failed(self, message_id: str, error_message: str) -> Message:
        """Move a pending message to ``failed``; the error is truncated to 1000 chars."""

        return self._finish(
            message_id,
            MessageStatus.FAILED,
            external_message_id=None,
            error_message=error_message[:MAX_ERROR_LENGTH],
        )

    def _finish(
        self,
        message_id: str,
        status: MessageStatus,
        external_message_id: str | None,
        error_message: str | None,
    ) -> Message:
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE messages
                SET status = ?, external_message_id = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (status.value, external_message_id, error_message, to_iso(utc_now()), message_id),
            )
            row = _fetch(conn, message_id)
        if row is None:
            raise MessageNotFoundError(message_id)
        if cur.rowcount == 0:
            raise InvalidTransitionError(message_id, row["status"])
        LOGGER.info("Message %s marked %s", message_id, status.value)
        return _to_message(row)

    def find_pending_messages(self, limit: int = 100) -> list[Message]:
        """Oldest pending messages first."""

        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE status = 'pending' ORDER BY created_at ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_to_message(row) for row in rows]

    def find_failed_messages_for_retry(self, hours_ago: float = 24, limit: int = 100) -> list[Message]:
        """Failed messages created within the last ``hours_ago`` hours, oldest first."""

        cutoff = to_iso(utc_now() - timedelta(hours=hours_ago))
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE status = 'failed' AND created_at >= ?
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (cutoff, limit),
            ).fetchall()
        return [_to_message(row) for row in rows]

    def find_messages(self, filters: MessageFilters, limit: int = 50, offset: int = 0) -> tuple[list[Message], int]:
        """Return one page of matching messages, newest first, plus the total match count."""

        where, params = _build_where(filters)
        with self._db.connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM messages{where}", params).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM messages{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [_to_message(row) for row in rows], int(total)

    def get_recent_activity(self, limit: int = 50) -> list[Message]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_to_message(row) for row in rows]

    def count(self, status: MessageStatus | None = None) -> int:
        with self._db.connect() as conn:
            if status is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM messages").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM messages WHERE status = ?", (status.value,)
                ).fetchone()
        return int(row["n"])

    def get_message_stats(self) -> list[MessageStats]:
        """Counts grouped by service and status."""

        return self._stats("", ())

    def get_message_stats_for_period(self, start: datetime, end: datetime) -> list[MessageStats]:
        return self._stats(" WHERE created_at >= ? AND created_at <= ?", (to_iso(start), to_iso(end)))

    def _stats(self, where: str, params: tuple[Any, ...]) -> list[MessageStats]:
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT service, status, COUNT(*) AS n
                FROM messages{where}
                GROUP BY service, status
                ORDER BY service, status
                """,
                params,
            ).fetchall()

        grouped: dict[ServiceType, dict[MessageStatus, int]] = {}
        for row in rows:
            counts = grouped.setdefault(ServiceType(row["service"]), {})
            counts[MessageStatus(row["status"])] = int(row["n"])
        return [
            MessageStats(service=service, stats=counts, total=sum(counts.values()))
            for service, counts in grouped.items()
        ]

    def get_queue_stats(self, retry_window_hours: float = 24) -> dict[str, int]:
        """Pending, failed and retry-eligible counts for batch workers."""

        cutoff = to_iso(utc_now() - timedelta(hours=retry_window_hours))
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT
                    SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                    SUM(CASE WHEN status = 'failed' AND created_at >= ? THEN 1 ELSE 0 END) AS retryable
                FROM messages
                """,
                (cutoff,),
            ).fetchone()
        return {
            "pending_messages": int(row["pending"] or 0),
            "failed_messages": int(row["failed"] or 0),
            "retryable_messages": int(row["retryable"] or 0),
        }

    def delete_old_messages(self, retention_days: int = 90) -> int:
        """Retention sweep: delete messages older than ``retention_days``."""

        cutoff = to_iso(utc_now() - timedelta(days=retention_days))
        with self._db.connect() as conn:
            cur = conn.execute("DELETE FROM messages WHERE created_at < ?", (cutoff,))
            deleted = cur.rowcount
        LOGGER.info("Deleted %d messages older than %d days", deleted, retention_days)
        return deleted


def _fetch(conn: sqlite3.Connection, message_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()


def _build_where(filters: MessageFilters) -> tuple[str, tuple[Any, ...]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filters.service is not None:
        clauses.append("service = ?")
        params.append(filters.service.value)
    if filters.status is not None:
        clauses.append("status = ?")
        params.append(filters.status.value)
    if filters.recipient:
        clauses.append("recipient LIKE ?")
        params.append(f"%{filters.recipient}%")
    if filters.requested_by:
        clauses.append("requested_by = ?")
        params.append(filters.requested_by)
    if filters.date_from is not None:
        clauses.append("created_at >= ?")
        params.append(to_iso(filters.date_from))
    if filters.date_to is not None:
        clauses.append("created_at <= ?")
        params.append(to_iso(filters.date_to))
    if filters.search:
        clauses.append("(body LIKE ? OR recipient LIKE ? OR error_message LIKE ?)")
        params.extend([f"%{filters.search}%"] * 3)
    if not clauses:
        return "", ()
    return " WHERE " + " AND ".join(clauses), tuple(params)


def _to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        service=ServiceType(row["service"]),
        recipient=row["recipient"],
        body=row["body"],
        status=MessageStatus(row["status"]),
        requested_by=row["requested_by"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        metadata=json.loads(row["metadata_json"] or "{}"),
        external_message_id=row["external_message_id"],
        error_message=row["error_message"],
    )
