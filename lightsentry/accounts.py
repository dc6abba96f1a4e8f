"""User registration and login."""

from __future__ import annotations

import sqlite3
import uuid

from lightsentry.db import timestamp_text, utc_now
from lightsentry.passwords import hash_password, verify_password

MIN_PASSWORD_LENGTH = 8

INVALID_CREDENTIALS = "Invalid credentials"
TOO_SHORT_MESSAGE = "Password must be at least 8 characters"
REGISTRATION_FAILED = "Registration failed"
EMAIL_TAKEN = "Email already registered"
REGISTRATION_DISABLED = "Registration is disabled"


class AccountError(Exception):
    """A login or registration attempt failed; the message is shown to the user."""


def login(conn: sqlite3.Connection, email: str, password: str) -> str:
    """Check credentials and return the user's id."""
    try:
        row = conn.execute(
            "SELECT id, password_hash FROM users WHERE email = ?", (email,)
        ).fetchone()
    except sqlite3.Error:
        row = None
    if row is None or not verify_password(password, row[1]):
        raise AccountError(INVALID_CREDENTIALS)
    return row[0]


def register(
    conn: sqlite3.Connection, email: str, password: str, registration_enabled: bool
) -> str:
    """Create a user and return its id."""
    if not registration_enabled:
        raise AccountError(REGISTRATION_DISABLED)
    if len(password.encode("utf-8")) < MIN_PASSWORD_LENGTH:
        raise AccountError(TOO_SHORT_MESSAGE)
    try:
        stored_hash = hash_password(password)
    except RuntimeError as exc:
        raise AccountError(REGISTRATION_FAILED) from exc

    user_id = str(uuid.uuid4())
    try:
        with conn:
            conn.execute(
                "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (user_id, email, stored_hash, timestamp_text(utc_now())),
            )
    except sqlite3.Error as exc:
        raise AccountError(EMAIL_TAKEN) from exc
    return user_id