"""
Translate internal errors into messages that are safe to show API callers.
"""

import re
from typing import Optional

SAFE_ERROR_PATTERNS = [
    re.compile(r"not found", re.IGNORECASE),
    re.compile(r"already exists", re.IGNORECASE),
    re.compile(r"already running|in progress", re.IGNORECASE),
    re.compile(r"invalid", re.IGNORECASE),
    re.compile(r"incorrect", re.IGNORECASE),
    re.compile(r"timeout|timed out", re.IGNORECASE),
    re.compile(r"expired", re.IGNORECASE),
    re.compile(r"unauthorized", re.IGNORECASE),
    re.compile(r"forbidden", re.IGNORECASE),
    re.compile(r"date format", re.IGNORECASE),
]

# Markers of schema, driver, connection or traceback details
LEAKY_MARKERS = (
    "sqlalchemy",
    "asyncpg",
    "aiosqlite",
    "psycopg",
    "database",
    "sql",
    "connection refused",
    "econnrefused",
    "etimedout",
    "traceback",
    "site-packages",
    'file "',
    "typeerror",
    "keyerror",
    "attributeerror",
)

MAX_MESSAGE_LENGTH = 200


def _message_of(error) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str):
        return message
    return str(error)


def is_safe_message(message: str) -> bool:
    return any(pattern.search(message) for pattern in SAFE_ERROR_PATTERNS)


def sanitize_error(error: Optional[BaseException], fallback_message: str) -> str:
    """
    Return a user-visible message for ``error``.

    Messages matching a known safe pattern pass through verbatim. Anything
    that mentions internal details, or is too long, becomes the fallback.
    """
    if error is None:
        return fallback_message

    message = _message_of(error).strip()
    if not message:
        return fallback_message

    lowered = message.lower()
    if any(marker in lowered for marker in LEAKY_MARKERS):
        return fallback_message

    if is_safe_message(message):
        return message

    if len(message) > MAX_MESSAGE_LENGTH:
        return fallback_message

    return message


def is_not_found_error(error) -> bool:
    return bool(re.search(r"not found", _message_of(error), re.IGNORECASE))


def is_timeout_error(error) -> bool:
    return bool(re.search(r"timeout|timed out", _message_of(error), re.IGNORECASE))


def is_validation_error(error) -> bool:
    return bool(re.search(r"invalid|format|validation", _message_of(error), re.IGNORECASE))


def is_conflict_error(error) -> bool:
    return bool(re.search(r"already exists|duplicate", _message_of(error), re.IGNORECASE))
