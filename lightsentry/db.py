"""SQLite storage: schema, connections and project lookups."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from os import PathLike

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    dsn_public TEXT NOT NULL UNIQUE,
    dsn_secret TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS error_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    event_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    level TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    stack_trace TEXT,
    context TEXT,
    received_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_error_events_project_fp
    ON error_events (project_id, fingerprint, received_at);
CREATE INDEX IF NOT EXISTS idx_error_events_received ON error_events (received_at);
CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    event_id TEXT NOT NULL,
    trace_id TEXT NOT NULL,
    name TEXT NOT NULL,
    duration_ms REAL NOT NULL,
    status TEXT NOT NULL,
    spans TEXT,
    context TEXT,
    received_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transactions_project_name
    ON transactions (project_id, name, received_at);
CREATE INDEX IF NOT EXISTS idx_transactions_received ON transactions (received_at);
CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    context TEXT NOT NULL,
    received_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_logs_project_received ON logs (project_id, received_at);
CREATE INDEX IF NOT EXISTS idx_logs_received ON logs (received_at);
"""

DEFAULT_PROJECT_NAME = "Project"


def timestamp_text(moment: datetime) -> str:
    """Render a moment as sortable UTC text; naive values are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_db_time(text: str) -> datetime:
    """Read a timestamp written by :func:`timestamp_text` back as an aware datetime."""
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def utc_now() -> datetime:
    """The current time in UTC."""
    return datetime.now(timezone.utc)


def open_database(path: str | PathLike[str]) -> sqlite3.Connection:
    """Open (creating if needed) a database and make sure the schema exists."""
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@dataclass(frozen=True)
class AppState:
    """Shared settings of the running application."""

    database: str
    registration_enabled: bool = False

    def connect(self) -> sqlite3.Connection:
        """Open a new connection to the application database."""
        return open_database(self.database)


def project_id_for_key(conn: sqlite3.Connection, public_key: str) -> str | None:
    """Return the id of the project with this public DSN key, if any."""
    try:
        row = conn.execute(
            "SELECT id FROM projects WHERE dsn_public = ?", (public_key,)
        ).fetchone()
    except sqlite3.Error:
        return None
    return row[0] if row is not None else None


def project_name(conn: sqlite3.Connection, project_id: str) -> str:
    """Return a project's name, or a generic one when it cannot be found."""
    try:
        row = conn.execute("SELECT name FROM projects WHERE id = ?", (project_id,)).fetchone()
    except sqlite3.Error:
        return DEFAULT_PROJECT_NAME
    return row[0] if row is not None else DEFAULT_PROJECT_NAME