"""Grouping key for error events."""

from __future__ import annotations

import hashlib
from typing import Any


def _str_field(obj: Any, key: str) -> str | None:
    if isinstance(obj, dict):
        value = obj.get(key)
        if isinstance(value, str):
            return value
    return None


def _exception_values(event: Any) -> list | None:
    exception = event.get("exception") if isinstance(event, dict) else None
    values = exception.get("values") if isinstance(exception, dict) else None
    return values if isinstance(values, list) else None


def _frames(exc: Any) -> list:
    stacktrace = exc.get("stacktrace") if isinstance(exc, dict) else None
    frames = stacktrace.get("frames") if isinstance(stacktrace, dict) else None
    return frames if isinstance(frames, list) else []


def compute_fingerprint(event: Any) -> str:
    """Return a SHA-256 hex digest that groups similar events together."""
    hasher = hashlib.sha256()

    values = _exception_values(event)
    if values:
        exc = values[-1]
        exc_type = _str_field(exc, "type") or ""
        exc_value = _str_field(exc, "value") or ""
        hasher.update(f"{exc_type}:{exc_value}".encode())

        top_in_app = next(
            (f for f in reversed(_frames(exc)) if isinstance(f, dict) and f.get("in_app") is True),
            None,
        )
        if top_in_app is not None:
            filename = _str_field(top_in_app, "filename") or ""
            function = _str_field(top_in_app, "function") or ""
            hasher.update(f":{filename}:{function}".encode())
        return hasher.hexdigest()

    message = _str_field(event, "message")
    if message is None:
        logentry = event.get("logentry") if isinstance(event, dict) else None
        message = _str_field(logentry, "message")
    hasher.update((message if message is not None else "unknown").encode())
    return hasher.hexdigest()