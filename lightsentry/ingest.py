"""Storing of error events, transactions and logs sent by Sentry SDKs."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Mapping
from typing import Any

from lightsentry.db import project_id_for_key, timestamp_text, utc_now
from lightsentry.decompress import DecompressError, decompress_body
from lightsentry.envelope import decode_json, parse_envelope, parse_timestamp
from lightsentry.errors import BadRequest, InternalError, Unauthorized
from lightsentry.events import ErrorEventRecord, build_context
from lightsentry.sentry_auth import extract_auth

logger = logging.getLogger(__name__)


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _nested_str(obj: Any, *path: str) -> str | None:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj if isinstance(obj, str) else None


def _field(obj: Any, key: str) -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


def ingest_error_event(conn: sqlite3.Connection, project_id: str, event: Any) -> ErrorEventRecord:
    """Store one error event and return the record that was written."""
    record = ErrorEventRecord.from_event(event)
    stack_trace = None if record.stack_trace is None else _json_text(record.stack_trace)
    with conn:
        conn.execute(
            "INSERT INTO error_events (project_id, event_id, fingerprint, level, title, message,"
            " stack_trace, context, received_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                project_id,
                record.event_id,
                record.fingerprint,
                record.level,
                record.title,
                record.message,
                stack_trace,
                _json_text(record.context),
                timestamp_text(utc_now()),
            ),
        )
    return record


def ingest_transaction(conn: sqlite3.Connection, project_id: str, event: Any) -> None:
    """Store one transaction event with its duration in milliseconds."""
    event_id = _nested_str(event, "event_id") or ""
    trace_id = _nested_str(event, "contexts", "trace", "trace_id") or ""
    name = _nested_str(event, "transaction")
    status = _nested_str(event, "contexts", "trace", "status")

    end = parse_timestamp(_field(event, "timestamp"))
    start = parse_timestamp(_field(event, "start_timestamp"))
    duration_ms = (end - start) * 1000.0 if end is not None and start is not None else 0.0

    spans = None
    if isinstance(event, dict) and "spans" in event:
        spans = _json_text(event["spans"])

    with conn:
        conn.execute(
            "INSERT INTO transactions (project_id, event_id, trace_id, name, duration_ms, status,"
            " spans, context, received_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                project_id,
                event_id,
                trace_id,
                name if name is not None else "unknown",
                duration_ms,
                status if status is not None else "ok",
                spans,
                _json_text(build_context(event)),
                timestamp_text(utc_now()),
            ),
        )


def ingest_logs(conn: sqlite3.Connection, project_id: str, payload: Any) -> int:
    """Store each entry of a log payload; return how many were stored."""
    items = _field(payload, "items")
    if not isinstance(items, list):
        return 0
    received_at = timestamp_text(utc_now())
    rows = []
    for entry in items:
        level = _nested_str(entry, "level")
        message = _nested_str(entry, "body")
        has_attributes = isinstance(entry, dict) and "attributes" in entry
        context = entry["attributes"] if has_attributes else {}
        rows.append(
            (
                project_id,
                level if level is not None else "info",
                message if message is not None else "",
                _json_text(context),
                received_at,
            )
        )
    with conn:
        conn.executemany(
            "INSERT INTO logs (project_id, level, message, context, received_at)"
            " VALUES (?, ?, ?, ?, ?)",
            rows,
        )
    return len(rows)


def _decode_body(headers: Mapping[str, str], body: bytes) -> str:
    try:
        return decompress_body(headers, body)
    except DecompressError as exc:
        raise BadRequest(str(exc)) from exc


def handle_store(
    conn: sqlite3.Connection,
    headers: Mapping[str, str],
    query: Mapping[str, str],
    body: bytes,
) -> dict[str, str]:
    """Handle a legacy store request holding a single JSON event."""
    auth = extract_auth(headers, query)
    if auth is None:
        raise Unauthorized()
    project_id = project_id_for_key(conn, auth.public_key)
    if project_id is None:
        raise Unauthorized()

    text = _decode_body(headers, body)
    try:
        event = decode_json(text)
    except ValueError as exc:
        raise BadRequest(f"invalid JSON: {exc}") from exc

    try:
        record = ingest_error_event(conn, project_id, event)
    except sqlite3.Error as exc:
        raise InternalError(exc) from exc
    return {"id": record.event_id}


def _key_from_dsn(dsn: str) -> str:
    parts = dsn.split("://")
    if len(parts) < 2:
        raise Unauthorized()
    return parts[1].split("@")[0]


_INGESTERS = {
    "event": ingest_error_event,
    "transaction": ingest_transaction,
    "log": ingest_logs,
}


def handle_envelope(
    conn: sqlite3.Connection,
    headers: Mapping[str, str],
    query: Mapping[str, str],
    body: bytes,
) -> dict[str, str]:
    """Handle an envelope request; items that fail to store are skipped."""
    auth = extract_auth(headers, query)
    text = _decode_body(headers, body)
    envelope = parse_envelope(text)
    if envelope is None:
        raise BadRequest("invalid envelope")

    if auth is not None:
        public_key = auth.public_key
    else:
        dsn = _field(envelope.header, "dsn")
        if not isinstance(dsn, str):
            raise Unauthorized()
        public_key = _key_from_dsn(dsn)

    project_id = project_id_for_key(conn, public_key)
    if project_id is None:
        raise Unauthorized()

    event_id = _nested_str(envelope.header, "event_id") or ""

    for item in envelope.items:
        ingester = _INGESTERS.get(item.item_type)
        if ingester is None:
            continue
        try:
            ingester(conn, project_id, item.payload)
        except sqlite3.Error as exc:
            logger.warning("Failed to store %s item: %s", item.item_type, exc)

    return {"id": event_id}