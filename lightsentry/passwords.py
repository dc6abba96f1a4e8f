"""Salted password hashing with scrypt, stored in a PHC-style string."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets

_SCHEME = "scrypt"
_LOG_N = 14
_BLOCK_SIZE = 8
_PARALLELISM = 1
_SALT_BYTES = 16
_KEY_BYTES = 32


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)


def _derive(plaintext: str, salt: bytes, log_n: int, r: int, p: int, length: int) -> bytes:
    n = 1 << log_n
    return hashlib.scrypt(
        plaintext.encode("utf-8"),
        salt=salt,
        n=n,
        r=r,
        p=p,
        maxmem=128 * r * (n + p + 2) + 1024 * 1024,
        dklen=length,
    )


def hash_password(plaintext: str) -> str:
    """Hash a password with a fresh random salt."""
    salt = secrets.token_bytes(_SALT_BYTES)
    try:
        key = _derive(plaintext, salt, _LOG_N, _BLOCK_SIZE, _PARALLELISM, _KEY_BYTES)
    except (ValueError, MemoryError) as exc:
        raise RuntimeError(f"hash error: {exc}") from exc
    params = f"ln={_LOG_N},r={_BLOCK_SIZE},p={_PARALLELISM}"
    return f"${_SCHEME}${params}${_b64encode(salt)}${_b64encode(key)}"


def _parse(stored_hash: str) -> tuple[int, int, int, bytes, bytes]:
    empty, scheme, params, salt_text, key_text = stored_hash.split("$")
    if empty or scheme != _SCHEME:
        raise ValueError("unsupported hash")
    values = dict(item.split("=", 1) for item in params.split(","))
    log_n, r, p = int(values["ln"]), int(values["r"]), int(values["p"])
    if not (1 <= log_n <= 24 and r > 0 and p > 0):
        raise ValueError("bad parameters")
    salt, key = _b64decode(salt_text), _b64decode(key_text)
    if not key:
        raise ValueError("empty key")
    return log_n, r, p, salt, key


def verify_password(plaintext: str, stored_hash: str) -> bool:
    """Check a password against a stored hash; malformed hashes never match."""
    try:
        log_n, r, p, salt, key = _parse(stored_hash)
        candidate = _derive(plaintext, salt, log_n, r, p, len(key))
    except (ValueError, KeyError, binascii.Error, MemoryError):
        return False
    return hmac.compare_digest(candidate, key)