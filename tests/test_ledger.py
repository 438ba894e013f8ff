from datetime import timedelta

import pytest

from relay.db import Database, to_iso, utc_now
from relay.errors import InvalidTransitionError, MessageNotFoundError
from relay.ledger import UNKNOWN_EXTERNAL_ID, MessageFilters, MessageLedger
from relay.models import MessageDraft, MessageStatus, ServiceType


def _make_ledger(tmp_path) -> tuple[Database, MessageLedger]:
    db = Database(tmp_path / "relay.db")
    db.initialize()
    return db, MessageLedger(db)


def _draft(service=ServiceType.WHATSAPP, recipient="15551234567", body="hello", **kwargs) -> MessageDraft:
    return MessageDraft(service=service, recipient=recipient, body=body, **kwargs)


def _age(db: Database, message_id: str, **delta) -> None:
    with db.connect() as conn:
        conn.execute(
            "UPDATE messages SET created_at = ? WHERE id = ?",
            (to_iso(utc_now() - timedelta(**delta)), message_id),
        )


def test_create_records_pending_message(tmp_path):
    _, ledger = _make_ledger(tmp_path)

    message = ledger.create(_draft(requested_by="apiKey:abc", metadata={"priority": "high"}))

    assert message.status is MessageStatus.PENDING
    assert message.requested_by == "apiKey:abc"
    assert message.metadata == {"priority": "high"}
    assert message.external_message_id is None
    assert ledger.get(message.id) == message


def test_get_unknown_message_raises(tmp_path):
    _, ledger = _make_ledger(tmp_path)

    with pytest.raises(MessageNotFoundError):
        ledger.get("missing")


def test_mark_as_sent_sets_external_id(tmp_path):
    _, ledger = _make_ledger(tmp_path)
    message = ledger.create(_draft())

    sent = ledger.mark_as_sent(message.id, "ext-1")

    assert sent.status is MessageStatus.SENT
    assert sent.external_message_id == "ext-1"
    assert sent.error_message is None


def test_mark_as_sent_without_external_id_uses_placeholder(tmp_path):
    _, ledger = _make_ledger(tmp_path)
    message = ledger.create(_draft())

    assert ledger.mark_as_sent(message.id).external_message_id == UNKNOWN_EXTERNAL_ID


def test_mark_as_failed_truncates_error(tmp_path):
    _, ledger = _make_ledger(tmp_path)
    message = ledger.create(_draft())

    failed = ledger.mark_as_failed(message.id, "x" * 1500)

    assert failed.status is MessageStatus.FAILED
    assert len(failed.error_message) == 1000
    assert failed.external_message_id is None


def test_second_terminal_transition_is_rejected(tmp_path):
    _, ledger = _make_ledger(tmp_path)
    message = ledger.create(_draft())
    ledger.mark_as_sent(message.id, "ext-1")

    with pytest.raises(InvalidTransitionError):
        ledger.mark_as_failed(message.id, "late failure")
    with pytest.raises(InvalidTransitionError):
        ledger.mark_as_sent(message.id, "ext-2")

    stored = ledger.get(message.id)
    assert stored.status is MessageStatus.SENT
    assert stored.external_message_id == "ext-1"


def test_transition_of_unknown_message_raises_not_found(tmp_path):
    _, ledger = _make_ledger(tmp_path)

    with pytest.raises(MessageNotFoundError):
        ledger.mark_as_sent("missing")


def test_find_pending_and_retryable_failures(tmp_path):
    db, ledger = _make_ledger(tmp_path)
    pending = ledger.create(_draft(body="pending"))
    recent = ledger.create(_draft(body="recent failure"))
    old = ledger.create(_draft(body="old failure"))
    ledger.mark_as_failed(recent.id, "network")
    ledger.mark_as_failed(old.id, "network")
    _age(db, old.id, hours=48)

    assert [m.id for m in ledger.find_pending_messages()] == [pending.id]
    assert [m.id for m in ledger.find_failed_messages_for_retry(hours_ago=24)] == [recent.id]
    assert ledger.get_queue_stats() == {
        "pending_messages": 1,
        "failed_messages": 2,
        "retryable_messages": 1,
    }


def test_find_messages_filters_and_paginates(tmp_path):
    _, ledger = _make_ledger(tmp_path)
    for index in range(5):
        ledger.create(_draft(body=f"whatsapp {index}"))
    ledger.create(_draft(service=ServiceType.TELEGRAM, recipient="@someone", body="telegram note"))

    page, total = ledger.find_messages(MessageFilters(service=ServiceType.WHATSAPP), limit=2, offset=0)
    assert total == 5
    assert len(page) == 2
    assert page[0].body == "whatsapp 4"

    matches, total = ledger.find_messages(MessageFilters(search="telegram"))
    assert total == 1
    assert matches[0].recipient == "@someone"


def test_message_stats(tmp_path):
    _, ledger = _make_ledger(tmp_path)
    first = ledger.create(_draft())
    second = ledger.create(_draft())
    ledger.create(_draft(service=ServiceType.MATTERMOST, recipient="a" * 26))
    ledger.mark_as_sent(first.id, "ext")
    ledger.mark_as_failed(second.id, "boom")

    stats = {item.service: item for item in ledger.get_message_stats()}

    assert stats[ServiceType.WHATSAPP].total == 2
    assert stats[ServiceType.WHATSAPP].stats == {MessageStatus.SENT: 1, MessageStatus.FAILED: 1}
    assert stats[ServiceType.MATTERMOST].stats == {MessageStatus.PENDING: 1}
    assert ledger.count() == 3
    assert ledger.count(MessageStatus.SENT) == 1

    window = ledger.get_message_stats_for_period(utc_now() - timedelta(hours=1), utc_now())
    assert sum(item.total for item in window) == 3


def test_delete_old_messages(tmp_path):
    db, ledger = _make_ledger(tmp_path)
    old = ledger.create(_draft(body="old"))
    fresh = ledger.create(_draft(body="fresh"))
    _age(db, old.id, days=100)

    deleted = ledger.delete_old_messages(retention_days=90)

    assert deleted == 1
    assert [m.id for m in ledger.get_recent_activity()] == [fresh.id]
