"""Periodic deletion of stored data older than the retention period."""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from lightsentry.db import timestamp_text, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_INTERVAL = 3600.0
RETENTION_TABLES = ("error_events", "transactions", "logs")

_INTEGER = re.compile(r"[+-]?[0-9]+")


def retention_days_from_env(environ: Mapping[str, str] | None = None) -> int:
    """Read RETENTION_DAYS, falling back to the default when unset or invalid."""
    env = os.environ if environ is None else environ
    value = env.get("RETENTION_DAYS")
    if value is not None and _INTEGER.fullmatch(value):
        return int(value)
    return DEFAULT_RETENTION_DAYS


def purge_expired(
    conn: sqlite3.Connection, retention_days: int, now: datetime | None = None
) -> dict[str, int]:
    """Delete rows received before the retention cutoff; return deletions per table."""
    cutoff = timestamp_text((now or utc_now()) - timedelta(days=retention_days))
    deleted: dict[str, int] = {}
    for table in RETENTION_TABLES:
        try:
            with conn:
                cursor = conn.execute(f"DELETE FROM {table} WHERE received_at < ?", (cutoff,))
        except sqlite3.Error as exc:
            logger.error("Retention cleanup error on %s: %s", table, exc)
            continue
        deleted[table] = cursor.rowcount
        if cursor.rowcount > 0:
            logger.info("Retention cleanup: deleted %d rows from %s", cursor.rowcount, table)
    return deleted


class RetentionWorker(threading.Thread):
    """Background thread that purges expired rows once per interval."""

    def __init__(
        self,
        connect: Callable[[], sqlite3.Connection],
        retention_days: int,
        interval: float,
    ) -> None:
        super().__init__(name="retention-cleanup", daemon=True)
        self._connect = connect
        self.retention_days = retention_days
        self.interval = interval
        self._halt = threading.Event()

    def run(self) -> None:
        conn = self._connect()
        try:
            while not self._halt.is_set():
                purge_expired(conn, self.retention_days)
                self._halt.wait(self.interval)
        finally:
            conn.close()

    def stop(self, timeout: float | None = None) -> None:
        """Ask the thread to finish and wait for it."""
        self._halt.set()
        self.join(timeout)


def start_retention_thread(
    connect: Callable[[], sqlite3.Connection],
    retention_days: int | None = None,
    interval: float = DEFAULT_INTERVAL,
) -> RetentionWorker:
    """Start the cleanup thread; it opens its own connection with ``connect``."""
    days = retention_days_from_env() if retention_days is None else retention_days
    worker = RetentionWorker(connect, days, interval)
    worker.start()
    return worker