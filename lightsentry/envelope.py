"""Parsing of the Sentry envelope format."""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

SUPPORTED_TYPES = frozenset({"event", "transaction", "log"})

_MAX_U64 = 2**64 - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_RFC3339 = re.compile(
    r"([0-9]{4})-([0-9]{2})-([0-9]{2})[Tt ]([0-9]{2}):([0-9]{2}):([0-9]{2})"
    r"(?:\.([0-9]+))?(?:([Zz])|([+-])([0-9]{2}):([0-9]{2}))",
    re.ASCII,
)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant: {name}")


def decode_json(text: str) -> Any:
    """Decode strict JSON (no NaN or Infinity); raises ValueError on bad input."""
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except RecursionError as exc:
        raise ValueError("JSON nested too deeply") from exc


@dataclass
class EnvelopeItem:
    """One supported item of an envelope with its decoded payload."""

    item_type: str
    payload: Any


@dataclass
class Envelope:
    """An envelope header and its supported items."""

    header: Any
    items: list[EnvelopeItem] = field(default_factory=list)


def _collect(lines: Iterator[str], length: int) -> str:
    collected = ""
    size = 0
    while size < length:
        line = next(lines, None)
        if line is None:
            break
        if size:
            collected += "\n"
            size += 1
        collected += line
        size += len(line.encode("utf-8"))
    return collected


def parse_envelope(raw: str) -> Envelope | None:
    """Parse an envelope; None when its header line is not JSON."""
    lines = iter(raw.split("\n"))
    try:
        header = decode_json(next(lines))
    except ValueError:
        return None

    items: list[EnvelopeItem] = []
    for item_header_line in lines:
        if not item_header_line.strip():
            continue
        try:
            item_header = decode_json(item_header_line)
        except ValueError:
            continue
        item_type = item_header.get("type") if isinstance(item_header, dict) else None
        if not isinstance(item_type, str):
            continue

        length = item_header.get("length")
        if isinstance(length, int) and not isinstance(length, bool) and 0 <= length <= _MAX_U64:
            payload_text = _collect(lines, length)
        else:
            payload_text = next(lines, "{}")

        if item_type in SUPPORTED_TYPES:
            try:
                payload = decode_json(payload_text)
            except ValueError:
                continue
            items.append(EnvelopeItem(item_type=item_type, payload=payload))

    return Envelope(header=header, items=items)


def parse_timestamp(value: Any) -> float | None:
    """Seconds since the epoch from a number or an RFC 3339 string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    match = _RFC3339.fullmatch(value)
    if match is None:
        return None
    year, month, day, hour, minute, second, fraction, zulu, sign, off_h, off_m = match.groups()
    try:
        if zulu:
            tz = timezone.utc
        else:
            offset = timedelta(hours=int(off_h), minutes=int(off_m))
            tz = timezone(-offset if sign == "-" else offset)
        moment = datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), tzinfo=tz
        )
    except ValueError:
        return None
    seconds = (moment - _EPOCH) // timedelta(seconds=1)
    nanos = int((fraction or "")[:9].ljust(9, "0"))
    return seconds + nanos / 1_000_000_000