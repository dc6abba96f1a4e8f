"""Logs: paginated, filtered listing and a per-minute histogram of the last hour."""

from __future__ import annotations

import json
import math
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from lightsentry.db import parse_db_time, project_name, timestamp_text, utc_now

PAGE_SIZE = 50
HISTOGRAM_HEIGHT = 70
BAR_SPACING = 14
HISTOGRAM_WINDOW = timedelta(hours=1)
_LABEL_FORMAT = "%H:%M"
_BUCKET_FORMAT = "%Y-%m-%dT%H:%M"


@dataclass
class LogRow:
    """One stored log entry."""

    level: str
    message: str
    received_at: datetime
    context: Any


@dataclass
class HistogramBar:
    """One minute of the histogram, positioned for drawing."""

    label: str
    count: int
    bar_height: int
    x: int


@dataclass
class LogPage:
    """One page of a project's logs under the current filters."""

    project_id: str
    logs: list[LogRow]
    current_level: str | None
    current_search: str
    page: int
    total_pages: int
    total_count: int


@dataclass
class LogsView:
    """A page of logs together with the histogram of the last hour."""

    project_name: str
    page: LogPage
    histogram: list[HistogramBar] = field(default_factory=list)
    chart_width: int = 0
    max_count: int = 0
    first_label: str = ""
    last_label: str = ""


def total_pages(total_count: int) -> int:
    """Number of pages needed for ``total_count`` logs; at least one."""
    return max(math.ceil(total_count / PAGE_SIZE), 1)


def _filters(project_id: str, level: str | None, search: str | None) -> tuple[list[str], list]:
    clauses = ["project_id = ?"]
    params: list = [project_id]
    if level is not None:
        clauses.append("level = ?")
        params.append(level)
    if search is not None:
        clauses.append("message LIKE '%' || ? || '%'")
        params.append(search)
    return clauses, params


def _load_context(text: Any) -> Any:
    if not isinstance(text, (str, bytes)):
        return text
    try:
        return json.loads(text)
    except ValueError:
        return None


def fetch_logs(
    conn: sqlite3.Connection,
    project_id: str,
    level: str | None = None,
    search: str | None = None,
    page: int = 1,
) -> tuple[list[LogRow], int]:
    """Return one page of matching logs, newest first, and the total match count."""
    clauses, params = _filters(project_id, level, search)
    where = " AND ".join(clauses)
    offset = (page - 1) * PAGE_SIZE
    try:
        rows = conn.execute(
            f"SELECT level, message, received_at, context FROM logs WHERE {where} "
            "ORDER BY received_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, PAGE_SIZE, offset),
        ).fetchall()
    except sqlite3.Error:
        rows = []
    try:
        total = conn.execute(f"SELECT COUNT(*) FROM logs WHERE {where}", params).fetchone()[0]
    except sqlite3.Error:
        total = 0
    logs = [
        LogRow(
            level=row[0],
            message=row[1],
            received_at=parse_db_time(row[2]),
            context=_load_context(row[3]),
        )
        for row in rows
    ]
    return logs, total


def fetch_histogram(
    conn: sqlite3.Connection,
    project_id: str,
    level: str | None = None,
    search: str | None = None,
    now: datetime | None = None,
) -> list[tuple[datetime, int]]:
    """Counts of matching logs per minute over the last hour, oldest first."""
    clauses, params = _filters(project_id, level, search)
    clauses.append("received_at > ?")
    params.append(timestamp_text((now or utc_now()) - HISTOGRAM_WINDOW))
    where = " AND ".join(clauses)
    try:
        rows = conn.execute(
            "SELECT substr(received_at, 1, 16) AS bucket, COUNT(*) AS count "
            f"FROM logs WHERE {where} GROUP BY bucket ORDER BY bucket",
            params,
        ).fetchall()
    except sqlite3.Error:
        return []
    return [
        (datetime.strptime(row[0], _BUCKET_FORMAT).replace(tzinfo=timezone.utc), row[1])
        for row in rows
    ]


def build_histogram(buckets: Sequence[tuple[datetime, int]]) -> list[HistogramBar]:
    """Scale bucket counts to bars; the tallest is full height, none under one."""
    max_count = max((count for _, count in buckets), default=0)
    bars = []
    for position, (bucket, count) in enumerate(buckets):
        height = int(count / max_count * HISTOGRAM_HEIGHT) if max_count > 0 else 0
        bars.append(
            HistogramBar(
                label=bucket.strftime(_LABEL_FORMAT),
                count=count,
                bar_height=max(height, 1),
                x=position * BAR_SPACING,
            )
        )
    return bars


def list_logs(
    conn: sqlite3.Connection,
    project_id: str,
    level: str | None = None,
    search: str | None = None,
    page: int = 1,
    now: datetime | None = None,
) -> LogsView:
    """Logs page with histogram; empty filters are ignored and pages start at one."""
    level = level or None
    search = search or None
    page = max(page, 1)

    logs, total_count = fetch_logs(conn, project_id, level, search, page)
    buckets = fetch_histogram(conn, project_id, level, search, now)
    histogram = build_histogram(buckets)

    return LogsView(
        project_name=project_name(conn, project_id),
        page=LogPage(
            project_id=project_id,
            logs=logs,
            current_level=level,
            current_search=search or "",
            page=page,
            total_pages=total_pages(total_count),
            total_count=total_count,
        ),
        histogram=histogram,
        chart_width=len(histogram) * BAR_SPACING,
        max_count=max((count for _, count in buckets), default=0),
        first_label=buckets[0][0].strftime(_LABEL_FORMAT) if buckets else "",
        last_label=buckets[-1][0].strftime(_LABEL_FORMAT) if buckets else "",
    )