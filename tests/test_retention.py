import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from lightsentry.db import open_database, timestamp_text
from lightsentry.retention import purge_expired, retention_days_from_env, start_retention_thread

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _seed(conn, received_at):
    project_id = conn.execute("SELECT id FROM projects").fetchone()[0]
    stamp = timestamp_text(received_at)
    conn.execute(
        "INSERT INTO error_events (project_id, event_id, fingerprint, level, title, message, received_at)"
        " VALUES (?, '', 'fp', 'error', 't', 'm', ?)",
        (project_id, stamp),
    )
    conn.execute(
        "INSERT INTO transactions (project_id, event_id, trace_id, name, duration_ms, status, received_at)"
        " VALUES (?, '', '', 'n', 1.0, 'ok', ?)",
        (project_id, stamp),
    )
    conn.execute(
        "INSERT INTO logs (project_id, level, message, context, received_at) VALUES (?, 'info', 'm', '{}', ?)",
        (project_id, stamp),
    )
    conn.commit()


def _with_project(conn):
    conn.execute(
        "INSERT INTO projects (id, name, dsn_public, dsn_secret, created_at) VALUES (?, 'demo', 'placeholder', 'secret', ?)",
        (str(uuid.uuid4()), timestamp_text(NOW)),
    )
    conn.commit()
    return conn


@pytest.fixture
def conn():
    connection = _with_project(open_database(":memory:"))
    yield connection
    connection.close()


def _stamps(conn, table):
    return [row[0] for row in conn.execute(f"SELECT received_at FROM {table}")]


def test_days_default_when_unset():
    assert retention_days_from_env({}) == 30


def test_days_from_environment():
    assert retention_days_from_env({"RETENTION_DAYS": "7"}) == 7


def test_days_invalid_falls_back():
    assert retention_days_from_env({"RETENTION_DAYS": "abc"}) == 30
    assert retention_days_from_env({"RETENTION_DAYS": "1.5"}) == 30


def test_purge_removes_only_old_rows(conn):
    _seed(conn, NOW - timedelta(days=31))
    _seed(conn, NOW - timedelta(days=2))
    deleted = purge_expired(conn, 30, now=NOW)
    fresh = timestamp_text(NOW - timedelta(days=2))
    for table in ("error_events", "transactions", "logs"):
        assert _stamps(conn, table) == [fresh]
        assert deleted[table] == 1


def test_purge_with_nothing_expired(conn):
    _seed(conn, NOW - timedelta(days=1))
    deleted = purge_expired(conn, 30, now=NOW)
    assert set(deleted.values()) == {0}
    assert len(_stamps(conn, "logs")) == 1


def test_purge_reports_errors_without_raising():
    connection = open_database(":memory:")
    connection.execute("DROP TABLE logs")
    deleted = purge_expired(connection, 30, now=NOW)
    assert "logs" not in deleted
    assert deleted["error_events"] == 0
    connection.close()


def test_thread_purges_in_background(tmp_path):
    path = tmp_path / "data.db"
    setup = _with_project(open_database(path))
    _seed(setup, datetime.now(timezone.utc) - timedelta(days=40))
    worker = start_retention_thread(lambda: open_database(path), retention_days=30, interval=60)
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and _stamps(setup, "logs"):
            time.sleep(0.05)
        assert _stamps(setup, "logs") == []
        assert _stamps(setup, "error_events") == []
    finally:
        worker.stop(timeout=5)
        setup.close()
    assert not worker.is_alive()