"""Performance: transaction groups with latency percentiles and their details."""

from __future__ import annotations

import json
import math
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from lightsentry.db import parse_db_time, project_name

GROUP_LIMIT = 100
TRANSACTION_LIMIT = 50
DEFAULT_SORT = "p95"
DEFAULT_DIRECTION = "desc"
_SORT_COLUMNS = frozenset({"name", "count", "p50", "p95", "last_seen"})


def percentile_cont(values: Sequence[float], fraction: float) -> float | None:
    """Continuous percentile with linear interpolation; None for no values."""
    ordered = sorted(values)
    if not ordered:
        return None
    position = fraction * (len(ordered) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    low_value = float(ordered[lower])
    if lower == upper:
        return low_value
    return low_value + (float(ordered[upper]) - low_value) * (position - lower)


@dataclass
class PerfDisplay:
    """Latency summary of one transaction name."""

    name: str
    count: int
    p50: float | None
    p95: float | None
    last_seen: datetime | None


@dataclass
class TransactionRow:
    """One stored transaction."""

    event_id: str
    duration_ms: float
    status: str
    spans: Any
    received_at: datetime


@dataclass
class SpanRow:
    """One span of a transaction."""

    op: str
    description: str
    duration_ms: float | None


@dataclass
class TransactionDetail:
    """Recent transactions of one name with the spans of the newest."""

    project_id: str
    project_name: str
    name: str
    transactions: list[TransactionRow] = field(default_factory=list)
    spans: list[SpanRow] = field(default_factory=list)


def _sort_key(column: str):
    def key(group: PerfDisplay) -> tuple:
        value = getattr(group, column)
        return (False,) if value is None else (True, value)

    return key


def list_transaction_groups(
    conn: sqlite3.Connection,
    project_id: str,
    sort: str = DEFAULT_SORT,
    direction: str = DEFAULT_DIRECTION,
) -> list[PerfDisplay]:
    """Summaries per transaction name; missing values sort first ascending, last descending."""
    column = sort if sort in _SORT_COLUMNS else DEFAULT_SORT
    try:
        rows = conn.execute(
            "SELECT name, duration_ms, received_at FROM transactions WHERE project_id = ?",
            (project_id,),
        ).fetchall()
    except sqlite3.Error:
        return []

    durations: dict[str, list[float]] = {}
    latest: dict[str, str] = {}
    for row in rows:
        name = row["name"]
        durations.setdefault(name, []).append(row["duration_ms"])
        if name not in latest or row["received_at"] > latest[name]:
            latest[name] = row["received_at"]

    groups = [
        PerfDisplay(
            name=name,
            count=len(values),
            p50=percentile_cont(values, 0.5),
            p95=percentile_cont(values, 0.95),
            last_seen=parse_db_time(latest[name]),
        )
        for name, values in durations.items()
    ]
    groups.sort(key=_sort_key(column), reverse=direction != "asc")
    return groups[:GROUP_LIMIT]


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _span(raw: Any) -> SpanRow:
    if not isinstance(raw, dict):
        return SpanRow(op="", description="", duration_ms=None)
    op = raw.get("op")
    description = raw.get("description")
    duration = _number(raw.get("duration_ms"))
    if duration is None:
        start = _number(raw.get("start_timestamp"))
        end = _number(raw.get("timestamp"))
        if start is not None and end is not None:
            duration = (end - start) * 1000.0
    return SpanRow(
        op=op if isinstance(op, str) else "",
        description=description if isinstance(description, str) else "",
        duration_ms=duration,
    )


def extract_spans(transactions: Sequence[TransactionRow]) -> list[SpanRow]:
    """Spans of the first (newest) transaction."""
    if not transactions:
        return []
    spans = transactions[0].spans
    if not isinstance(spans, list):
        return []
    return [_span(raw) for raw in spans]


def _load_json(text: str | None) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def transaction_detail(conn: sqlite3.Connection, project_id: str, name: str) -> TransactionDetail:
    """The most recent transactions with this name, newest first."""
    try:
        rows = conn.execute(
            "SELECT event_id, duration_ms, status, spans, received_at FROM transactions "
            "WHERE project_id = ? AND name = ? "
            f"ORDER BY received_at DESC, id DESC LIMIT {TRANSACTION_LIMIT}",
            (project_id, name),
        ).fetchall()
    except sqlite3.Error:
        rows = []
    transactions = [
        TransactionRow(
            event_id=row["event_id"],
            duration_ms=row["duration_ms"],
            status=row["status"],
            spans=_load_json(row["spans"]),
            received_at=parse_db_time(row["received_at"]),
        )
        for row in rows
    ]
    return TransactionDetail(
        project_id=project_id,
        project_name=project_name(conn, project_id),
        name=name,
        transactions=transactions,
        spans=extract_spans(transactions),
    )