"""
Shared protocol conventions for duochat.

This module intentionally stays small: it defines the message shape, limits
and error types used by both the listener and the dialer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional


DEFAULT_PORT = 5000
DEFAULT_DIAL_HOST = "127.0.0.1"
DEFAULT_RETRY_DELAY = 3.0

MAX_BODY_LEN = 200
SERVER_SENDER = "Server"
ANONYMOUS = "Anonymous"
TIMESTAMP_FMT = "%H:%M:%S"

ValidationReason = Literal["empty", "too_long"]

_CLIENT_RE = re.compile(r"^(?P<sender>.*?) \[(?P<ts>\d{2}:\d{2}:\d{2})\]: (?P<body>.*)$", re.S)
_SERVER_PREFIX = SERVER_SENDER + ": "


class BindError(OSError):
    pass


class DialError(ConnectionError):
    pass


class NotConnected(OSError):
    pass


class ValidationError(ValueError):
    EMPTY: ValidationReason = "empty"
    TOO_LONG: ValidationReason = "too_long"

    def __init__(self, reason: ValidationReason, detail: str = ""):
        super().__init__(detail or reason)
        self.reason = reason


@dataclass(frozen=True)
class Message:
    sender: str
    body: str
    timestamp: Optional[str] = None

    @property
    def text(self) -> str:
        if self.timestamp is not None:
            return f"{self.sender} [{self.timestamp}]: {self.body}"
        if self.sender:
            return f"{self.sender}: {self.body}"
        return self.body

    @classmethod
    def parse(cls, text: str) -> "Message":
        if text.startswith(_SERVER_PREFIX):
            return cls(sender=SERVER_SENDER, body=text[len(_SERVER_PREFIX):])
        m = _CLIENT_RE.match(text)
        if m:
            return cls(sender=m.group("sender"), body=m.group("body"), timestamp=m.group("ts"))
        return cls(sender="", body=text)


def validate_body(body: str, max_len: Optional[int] = MAX_BODY_LEN) -> str:
    """Return the trimmed body or raise ValidationError."""
    s = (body or "").strip()
    if not s:
        raise ValidationError(ValidationError.EMPTY, "Message is empty.")
    if max_len is not None and len(s) > max_len:
        raise ValidationError(ValidationError.TOO_LONG, f"Message too long! (Max: {max_len} characters)")
    return s


def normalize_username(name: Optional[str]) -> str:
    # a ":" in the name would let "<name> [ts]: body" read as "Server: body"
    s = (name or "").replace(":", "").strip()
    return s if s else ANONYMOUS


def format_timestamp(when: datetime) -> str:
    return when.strftime(TIMESTAMP_FMT)
