"""Projects and their DSN keys."""

from __future__ import annotations

import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime

from lightsentry.db import parse_db_time, timestamp_text, utc_now

_KEY_BYTES = 16


@dataclass(frozen=True)
class Project:
    """A project that receives events under its public DSN key."""

    id: str
    name: str
    dsn_public: str
    created_at: datetime


def list_projects(conn: sqlite3.Connection) -> list[Project]:
    """All projects, newest first."""
    try:
        rows = conn.execute(
            "SELECT id, name, dsn_public, created_at FROM projects "
            "ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
    except sqlite3.Error:
        return []
    return [
        Project(id=row[0], name=row[1], dsn_public=row[2], created_at=parse_db_time(row[3]))
        for row in rows
    ]


def create_project(conn: sqlite3.Connection, name: str) -> Project:
    """Create a project with fresh random public and secret keys."""
    created_at = utc_now()
    project = Project(
        id=str(uuid.uuid4()),
        name=name,
        dsn_public=secrets.token_hex(_KEY_BYTES),
        created_at=created_at,
    )
    with conn:
        conn.execute(
            "INSERT INTO projects (id, name, dsn_public, dsn_secret, created_at)"
            " VALUES (?, ?, ?, ?, ?)",
            (
                project.id,
                project.name,
                project.dsn_public,
                secrets.token_hex(_KEY_BYTES),
                timestamp_text(created_at),
            ),
        )
    return project