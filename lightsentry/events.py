"""Extraction of the stored fields of an error event."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from lightsentry.fingerprint import compute_fingerprint

CONTEXT_KEYS = (
    "tags",
    "user",
    "request",
    "contexts",
    "breadcrumbs",
    "extra",
    "sdk",
    "server_name",
    "environment",
    "release",
    "platform",
)

_TITLE_LIMIT = 200


def _str_field(obj: Any, key: str) -> str | None:
    if isinstance(obj, dict):
        value = obj.get(key)
        if isinstance(value, str):
            return value
    return None


def _exception_values(event: Any) -> Any:
    exception = event.get("exception") if isinstance(event, dict) else None
    if isinstance(exception, dict) and "values" in exception:
        return exception["values"]
    return None


def extract_title(event: Any) -> str:
    """Title for an event: the last exception's type and value, else its message."""
    values = _exception_values(event)
    if isinstance(values, list) and values:
        exc = values[-1]
        exc_type = _str_field(exc, "type") or "Error"
        exc_value = _str_field(exc, "value") or ""
        return f"{exc_type}: {exc_value}"
    message = _str_field(event, "message")
    return (message if message is not None else "Unknown error")[:_TITLE_LIMIT]


def build_context(event: Any) -> dict[str, Any]:
    """Copy the contextual top-level fields of an event into a new dict."""
    if not isinstance(event, dict):
        return {}
    return {key: copy.deepcopy(event[key]) for key in CONTEXT_KEYS if key in event}


@dataclass
class ErrorEventRecord:
    """The columns stored for one error event."""

    event_id: str
    fingerprint: str
    level: str
    title: str
    message: str
    stack_trace: Any
    context: dict[str, Any]

    @classmethod
    def from_event(cls, event: Any) -> ErrorEventRecord:
        """Build a record from a decoded Sentry event payload."""
        event_id = _str_field(event, "event_id")
        level = _str_field(event, "level")
        message = _str_field(event, "message")
        return cls(
            event_id=event_id if event_id is not None else "",
            fingerprint=compute_fingerprint(event),
            level=level if level is not None else "error",
            title=extract_title(event),
            message=message if message is not None else "",
            stack_trace=copy.deepcopy(_exception_values(event)),
            context=build_context(event),
        )