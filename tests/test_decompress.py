import gzip
import zlib

import pytest

from lightsentry.decompress import DecompressError, decompress_body

PAYLOAD = '{"message": "héllo"}'


def test_plain_body():
    assert decompress_body({}, PAYLOAD.encode()) == PAYLOAD


def test_gzip_with_header():
    raw = gzip.compress(PAYLOAD.encode())
    assert decompress_body({"Content-Encoding": "gzip"}, raw) == PAYLOAD


def test_gzip_detected_without_header():
    raw = gzip.compress(PAYLOAD.encode())
    assert decompress_body({}, raw) == PAYLOAD


def test_deflate_with_header():
    raw = zlib.compress(PAYLOAD.encode())
    assert decompress_body({"content-encoding": "deflate"}, raw) == PAYLOAD


def test_unknown_encoding_passes_through():
    assert decompress_body({"Content-Encoding": "identity"}, PAYLOAD.encode()) == PAYLOAD


def test_bad_gzip_raises():
    with pytest.raises(DecompressError, match="gzip decode error"):
        decompress_body({"Content-Encoding": "gzip"}, b"not compressed")


def test_bad_deflate_raises():
    with pytest.raises(DecompressError, match="deflate decode error"):
        decompress_body({"Content-Encoding": "deflate"}, b"not compressed")


def test_invalid_utf8_raises():
    with pytest.raises(DecompressError, match="invalid UTF-8"):
        decompress_body({}, b"\xff\xfe\xfd")


def test_gzip_magic_fallback_then_utf8_failure():
    with pytest.raises(DecompressError, match="invalid UTF-8"):
        decompress_body({}, b"\x1f\x8bgarbage")