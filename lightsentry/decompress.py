"""Decoding of request bodies that Sentry SDKs may compress."""

from __future__ import annotations

import gzip
import zlib
from collections.abc import Mapping

_GZIP_MAGIC = b"\x1f\x8b"


class DecompressError(ValueError):
    """The body could not be decompressed or is not valid UTF-8."""


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return ""


def _gunzip(raw: bytes) -> bytes:
    return gzip.decompress(raw)


def decompress_body(headers: Mapping[str, str], raw: bytes) -> str:
    """Decompress according to Content-Encoding and decode as UTF-8."""
    encoding = _header(headers, "content-encoding")
    if encoding == "gzip":
        try:
            data = _gunzip(raw)
        except (OSError, EOFError, zlib.error) as exc:
            raise DecompressError(f"gzip decode error: {exc}") from exc
    elif encoding == "deflate":
        try:
            data = zlib.decompress(raw)
        except zlib.error as exc:
            raise DecompressError(f"deflate decode error: {exc}") from exc
    elif raw.startswith(_GZIP_MAGIC):
        # Some SDKs compress without saying so.
        try:
            data = _gunzip(raw)
        except (OSError, EOFError, zlib.error):
            data = bytes(raw)
    else:
        data = bytes(raw)

    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecompressError(f"invalid UTF-8: {exc}") from exc