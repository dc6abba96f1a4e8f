import json
from datetime import datetime, timedelta, timezone

import pytest

from lightsentry.db import open_database, timestamp_text
from lightsentry.logs import (
    BAR_SPACING,
    HISTOGRAM_HEIGHT,
    PAGE_SIZE,
    build_histogram,
    fetch_histogram,
    fetch_logs,
    list_logs,
    total_pages,
)

PROJECT = "11111111-1111-4111-8111-111111111111"
NOW = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def conn(tmp_path):
    connection = open_database(tmp_path / "logs.db")
    connection.execute(
        "INSERT INTO projects (id, name, dsn_public, dsn_secret, created_at) VALUES (?, ?, ?, ?, ?)",
        (PROJECT, "demo", "publickey", "secretkey", timestamp_text(NOW)),
    )
    connection.commit()
    yield connection
    connection.close()


def _add_log(conn, message, level="info", at=NOW, context=None):
    conn.execute(
        "INSERT INTO logs (project_id, level, message, context, received_at) VALUES (?, ?, ?, ?, ?)",
        (PROJECT, level, message, json.dumps(context or {}), timestamp_text(at)),
    )
    conn.commit()


def test_total_pages_is_at_least_one():
    assert total_pages(0) == 1
    assert total_pages(PAGE_SIZE) == 1
    assert total_pages(PAGE_SIZE + 1) == 2


def test_fetch_logs_paginates_newest_first(conn):
    for n in range(60):
        _add_log(conn, f"message {n}", at=NOW - timedelta(seconds=n))
    first, total = fetch_logs(conn, PROJECT, None, None, 1)
    second, _ = fetch_logs(conn, PROJECT, None, None, 2)
    assert total == 60
    assert len(first) == PAGE_SIZE
    assert len(second) == 60 - PAGE_SIZE
    times = [row.received_at for row in first + second]
    assert times == sorted(times, reverse=True)
    assert first[0].message == "message 0"


def test_fetch_logs_filters_by_level_and_search(conn):
    _add_log(conn, "Hello World", level="error")
    _add_log(conn, "other", level="error")
    _add_log(conn, "hello again", level="info")
    errors, error_total = fetch_logs(conn, PROJECT, "error", None, 1)
    assert error_total == 2
    assert {row.level for row in errors} == {"error"}
    found, found_total = fetch_logs(conn, PROJECT, None, "HELLO", 1)
    assert found_total == 2
    assert {row.message for row in found} == {"Hello World", "hello again"}


def test_fetch_logs_decodes_context(conn):
    _add_log(conn, "with context", context={"user": "someone"})
    logs, _ = fetch_logs(conn, PROJECT, None, None, 1)
    assert logs[0].context == {"user": "someone"}


def test_fetch_histogram_groups_by_minute_within_last_hour(conn):
    _add_log(conn, "a", at=datetime(2024, 1, 1, 12, 0, 10, tzinfo=timezone.utc))
    _add_log(conn, "b", at=datetime(2024, 1, 1, 12, 0, 50, tzinfo=timezone.utc))
    _add_log(conn, "c", at=datetime(2024, 1, 1, 12, 5, 0, tzinfo=timezone.utc))
    _add_log(conn, "old", at=datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc))
    buckets = fetch_histogram(conn, PROJECT, None, None, NOW)
    assert buckets == [
        (datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc), 2),
        (datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc), 1),
    ]


def test_fetch_histogram_applies_filters(conn):
    _add_log(conn, "kept", level="error", at=NOW - timedelta(minutes=1))
    _add_log(conn, "dropped", level="info", at=NOW - timedelta(minutes=1))
    buckets = fetch_histogram(conn, PROJECT, "error", None, NOW)
    assert [count for _, count in buckets] == [1]


def test_build_histogram_scales_and_positions_bars():
    base = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    buckets = [(base, 10), (base + timedelta(minutes=1), 5), (base + timedelta(minutes=2), 0)]
    bars = build_histogram(buckets)
    assert bars[0].bar_height == HISTOGRAM_HEIGHT
    assert bars[2].bar_height == 1
    assert [bar.x for bar in bars] == [i * BAR_SPACING for i in range(3)]
    assert [bar.count for bar in bars] == [10, 5, 0]
    assert bars[0].label == base.strftime("%H:%M")
    assert all(1 <= bar.bar_height <= HISTOGRAM_HEIGHT for bar in bars)


def test_build_histogram_of_nothing_is_empty():
    assert build_histogram([]) == []


def test_list_logs_ignores_empty_filters_and_clamps_page(conn):
    _add_log(conn, "entry", at=NOW - timedelta(minutes=2))
    view = list_logs(conn, PROJECT, "", "", 0, NOW)
    assert view.page.current_level is None
    assert view.page.current_search == ""
    assert view.page.page == 1
    assert view.page.total_count == 1
    assert view.project_name == "demo"
    assert view.chart_width == len(view.histogram) * BAR_SPACING
    assert view.max_count == 1
    assert view.first_label == view.last_label == view.histogram[0].label