"""Issues: error events grouped by fingerprint, with summaries and details."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from lightsentry.db import parse_db_time, project_name, utc_now
from lightsentry.errors import NotFound

ACTIVE = "active"
STALE = "stale"
RESOLVED = "resolved"

ISSUE_LIMIT = 100
EVENT_LIMIT = 20
DEFAULT_SORT = "last_seen"
ALL_STATUSES = "all"

_ORDER_CLAUSES = {
    "events": "ORDER BY count DESC",
    "events_asc": "ORDER BY count ASC",
    "last_seen_asc": "ORDER BY last_seen ASC",
}
_DEFAULT_ORDER = "ORDER BY last_seen DESC"

_SUMMARY_SELECT = (
    "SELECT e.fingerprint AS fingerprint, "
    "MAX(e.title) AS title, "
    "MAX(e.level) AS level, "
    "COUNT(*) AS count, "
    "MAX(e.received_at) AS last_seen, "
    "(SELECT context FROM error_events e2 "
    " WHERE e2.fingerprint = e.fingerprint AND e2.project_id = :project_id "
    " ORDER BY e2.received_at DESC, e2.id DESC LIMIT 1) AS last_context "
    "FROM error_events e "
)


def _as_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return parse_db_time(value)


def _as_json(value: Any) -> Any:
    """Decode a JSON text column; already decoded values pass through."""
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _str_at(obj: Any, *path: str) -> str | None:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj if isinstance(obj, str) else None


def relative_time(dt: datetime, now: datetime | None = None) -> str:
    """Describe how long ago ``dt`` was, in the coarsest fitting unit."""
    delta = (now or utc_now()) - dt
    minutes = delta // timedelta(minutes=1)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = delta // timedelta(hours=1)
    if hours < 24:
        return f"{hours}h ago"
    days = delta.days
    if days < 30:
        return f"{days}d ago"
    return f"{days // 30}mo ago"


def issue_status(last_seen: datetime | None, now: datetime | None = None) -> str:
    """Active within a week, stale within a month, otherwise resolved."""
    if last_seen is None:
        return RESOLVED
    days = ((now or utc_now()) - last_seen).days
    if days <= 7:
        return ACTIVE
    if days <= 30:
        return STALE
    return RESOLVED


def request_path_from_context(context: Any) -> str | None:
    """The path part of the request URL stored in an event context."""
    url = _str_at(context, "request", "url")
    if url is None:
        return None
    scheme_end = url.find("://")
    if scheme_end >= 0:
        path_start = url.find("/", scheme_end + 3)
        if path_start >= 0:
            return url[path_start:]
    return url


@dataclass
class IssueDisplay:
    """Summary of one issue, ready for display."""

    fingerprint: str
    title: str
    level: str
    count: int
    last_seen: datetime | None
    last_seen_relative: str
    request_path: str | None
    status: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any], now: datetime | None = None) -> IssueDisplay:
        """Build from a summary row with fingerprint, title, level, count,
        last_seen and last_context columns."""
        last_seen = _as_time(row["last_seen"])
        title = row["title"]
        level = row["level"]
        count = row["count"]
        return cls(
            fingerprint=row["fingerprint"],
            title=title if title is not None else "(unknown)",
            level=level if level is not None else "error",
            count=count if count is not None else 0,
            last_seen=last_seen,
            last_seen_relative=relative_time(last_seen, now) if last_seen is not None else "—",
            request_path=request_path_from_context(_as_json(row["last_context"])),
            status=issue_status(last_seen, now),
        )


@dataclass
class EventRow:
    """One stored occurrence of an issue."""

    event_id: str
    message: str
    stack_trace: Any
    context: Any
    received_at: datetime

    def request_url(self) -> str | None:
        """URL of the request during which the event happened."""
        return _str_at(self.context, "request", "url")

    def request_method(self) -> str | None:
        """HTTP method of the request during which the event happened."""
        return _str_at(self.context, "request", "method")


@dataclass
class StackFrame:
    """One frame of a stack trace, innermost first when listed."""

    filename: str
    lineno: str
    function: str


@dataclass
class IssueList:
    """The issues of a project with per-status counts."""

    project_id: str
    project_name: str
    issues: list[IssueDisplay]
    sort: str
    status_filter: str
    count_active: int
    count_stale: int
    count_resolved: int


@dataclass
class IssueDetail:
    """One issue with its latest stack trace and recent events."""

    project_id: str
    project_name: str
    issue: IssueDisplay
    frames: list[StackFrame] = field(default_factory=list)
    events: list[EventRow] = field(default_factory=list)


def _frame(raw: Any) -> StackFrame:
    if not isinstance(raw, dict):
        return StackFrame(filename="?", lineno="?", function="?")
    filename = _str_at(raw, "filename")
    function = _str_at(raw, "function")
    return StackFrame(
        filename=filename if filename is not None else "?",
        lineno=json.dumps(raw["lineno"]) if "lineno" in raw else "?",
        function=function if function is not None else "?",
    )


def extract_frames(events: Sequence[EventRow]) -> list[StackFrame]:
    """Frames of the first stack trace of the newest event, innermost first."""
    if not events:
        return []
    stack_trace = events[0].stack_trace
    values = stack_trace.get("values") if isinstance(stack_trace, dict) else None
    if not isinstance(values, list):
        values = stack_trace if isinstance(stack_trace, list) else None
    if values is None:
        return []
    for value in values:
        stacktrace = value.get("stacktrace") if isinstance(value, dict) else None
        frames = stacktrace.get("frames") if isinstance(stacktrace, dict) else None
        if isinstance(frames, list):
            return [_frame(raw) for raw in reversed(frames)]
    return []


def list_issues(
    conn: sqlite3.Connection,
    project_id: str,
    sort: str | None = None,
    status: str | None = None,
    now: datetime | None = None,
) -> IssueList:
    """Group a project's error events into issues, sorted and filtered by status."""
    sort = sort if sort is not None else DEFAULT_SORT
    order = _ORDER_CLAUSES.get(sort, _DEFAULT_ORDER)
    query = (
        _SUMMARY_SELECT
        + "WHERE e.project_id = :project_id GROUP BY e.fingerprint "
        + f"{order} LIMIT {ISSUE_LIMIT}"
    )
    try:
        rows = conn.execute(query, {"project_id": project_id}).fetchall()
    except sqlite3.Error:
        rows = []
    all_issues = [IssueDisplay.from_row(row, now) for row in rows]

    status_filter = status if status is not None else ALL_STATUSES
    if status_filter == ALL_STATUSES:
        issues = all_issues
    else:
        issues = [issue for issue in all_issues if issue.status == status_filter]

    return IssueList(
        project_id=project_id,
        project_name=project_name(conn, project_id),
        issues=issues,
        sort=sort,
        status_filter=status_filter,
        count_active=sum(1 for issue in all_issues if issue.status == ACTIVE),
        count_stale=sum(1 for issue in all_issues if issue.status == STALE),
        count_resolved=sum(1 for issue in all_issues if issue.status == RESOLVED),
    )


def _recent_events(conn: sqlite3.Connection, project_id: str, fingerprint: str) -> list[EventRow]:
    try:
        rows = conn.execute(
            "SELECT event_id, message, stack_trace, context, received_at FROM error_events "
            "WHERE project_id = ? AND fingerprint = ? "
            f"ORDER BY received_at DESC, id DESC LIMIT {EVENT_LIMIT}",
            (project_id, fingerprint),
        ).fetchall()
    except sqlite3.Error:
        return []
    return [
        EventRow(
            event_id=row["event_id"],
            message=row["message"],
            stack_trace=_as_json(row["stack_trace"]),
            context=_as_json(row["context"]),
            received_at=parse_db_time(row["received_at"]),
        )
        for row in rows
    ]


def issue_detail(
    conn: sqlite3.Connection,
    project_id: str,
    fingerprint: str,
    now: datetime | None = None,
) -> IssueDetail:
    """Summary, stack frames and recent events of one issue; NotFound if absent."""
    try:
        row = conn.execute(
            _SUMMARY_SELECT
            + "WHERE e.project_id = :project_id AND e.fingerprint = :fingerprint "
            + "GROUP BY e.fingerprint",
            {"project_id": project_id, "fingerprint": fingerprint},
        ).fetchone()
    except sqlite3.Error:
        row = None
    if row is None:
        raise NotFound()

    events = _recent_events(conn, project_id, fingerprint)
    return IssueDetail(
        project_id=project_id,
        project_name=project_name(conn, project_id),
        issue=IssueDisplay.from_row(row, now),
        frames=extract_frames(events),
        events=events,
    )