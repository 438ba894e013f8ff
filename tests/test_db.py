import pytest

from relay.db import Database


def test_initialize_creates_schema(tmp_path):
    db = Database(tmp_path / "nested" / "relay.db")
    db.initialize()

    with db.connect() as conn:
        tables = {
            row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
        version = conn.execute("SELECT version FROM schema_version").fetchone()["version"]

    assert {"messages", "service_status", "api_keys", "schema_version"} <= tables
    assert version == 1


def test_initialize_is_idempotent(tmp_path):
    db = Database(tmp_path / "relay.db")
    db.initialize()
    db.initialize()

    with db.connect() as conn:
        rows = conn.execute("SELECT version FROM schema_version").fetchall()

    assert len(rows) == 1


def test_initialize_rejects_unknown_schema_version(tmp_path):
    db = Database(tmp_path / "relay.db")
    db.initialize()
    with db.connect() as conn:
        conn.execute("UPDATE schema_version SET version = 99")

    with pytest.raises(RuntimeError, match="Unsupported schema version 99"):
        db.initialize()


def test_health_check(tmp_path):
    db = Database(tmp_path / "relay.db")
    db.initialize()
    assert db.health_check() is True

    missing = Database(tmp_path / "does-not-exist" / "relay.db")
    assert missing.health_check() is False


def test_connect_rolls_back_on_error(tmp_path):
    db = Database(tmp_path / "relay.db")
    db.initialize()

    with pytest.raises(ValueError):
        with db.connect() as conn:
            conn.execute(
                "INSERT INTO service_status(service, status, metadata_json, last_updated) VALUES ('x', 'y', '{}', 'z')"
            )
            raise ValueError("boom")

    with db.connect() as conn:
        assert conn.execute("SELECT COUNT(*) AS n FROM service_status").fetchone()["n"] == 0
