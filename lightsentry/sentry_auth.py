"""Parsing of Sentry client credentials from headers and query strings."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_VERSION = "7"


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Look up a header by name, ignoring case."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


@dataclass(frozen=True)
class SentryAuth:
    """Credentials a Sentry SDK sends with each request."""

    public_key: str
    version: str = DEFAULT_VERSION
    client: str | None = None

    @classmethod
    def _from_pairs(cls, pairs) -> SentryAuth | None:
        found: dict[str, str] = {}
        for key, value in pairs:
            if key in ("sentry_key", "sentry_version", "sentry_client"):
                found[key] = value
        if "sentry_key" not in found:
            return None
        return cls(
            public_key=found["sentry_key"],
            version=found.get("sentry_version", DEFAULT_VERSION),
            client=found.get("sentry_client"),
        )

    @classmethod
    def from_header(cls, header: str) -> SentryAuth | None:
        """Parse an ``X-Sentry-Auth`` style header; None if it has no key."""
        if not header.startswith("Sentry "):
            return None
        body = header[len("Sentry "):].strip()
        pairs = []
        for part in body.split(","):
            key, sep, value = part.strip().partition("=")
            if sep:
                pairs.append((key.strip(), value.strip()))
        return cls._from_pairs(pairs)

    @classmethod
    def from_query(cls, query: str) -> SentryAuth | None:
        """Parse a raw query string; None if it has no key."""
        pairs = []
        for part in query.split("&"):
            key, sep, value = part.partition("=")
            if sep:
                pairs.append((key, value))
        return cls._from_pairs(pairs)


def extract_auth(headers: Mapping[str, str], query: Mapping[str, str]) -> SentryAuth | None:
    """Find credentials in the auth headers, falling back to query parameters."""
    for name in ("X-Sentry-Auth", "Authorization"):
        value = header_value(headers, name)
        if value is not None:
            return SentryAuth.from_header(value)
    key = query.get("sentry_key")
    if key is not None:
        return SentryAuth(
            public_key=key,
            version=query.get("sentry_version", DEFAULT_VERSION),
            client=query.get("sentry_client"),
        )
    return None