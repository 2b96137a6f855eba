from __future__ import annotations

import os
from typing import Optional, Tuple

from duochat.common.protocol import DEFAULT_DIAL_HOST, DEFAULT_PORT, DEFAULT_RETRY_DELAY


HOST_ENV = "DUOCHAT_HOST"
PORT_ENV = "DUOCHAT_PORT"
ADDRESS_ENV = "DUOCHAT_ADDRESS"
RETRY_DELAY_ENV = "DUOCHAT_RETRY_DELAY"
USERNAME_ENV = "DUOCHAT_USERNAME"


def get_str(key: str) -> Optional[str]:
    v = os.environ.get(key)
    if v is None:
        return None
    s = v.strip()
    return s if s else None


def get_int(key: str) -> Optional[int]:
    v = get_str(key)
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        return None


def get_float(key: str) -> Optional[float]:
    v = get_str(key)
    if v is None:
        return None
    try:
        f = float(v)
    except ValueError:
        return None
    return f if f >= 0 else None


def parse_address(addr: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    """
    Accept "host:port", "host" or ":port" and return (host, port).
    """
    s = (addr or "").strip()
    if not s:
        raise ValueError("empty address")
    host, sep, port_s = s.rpartition(":")
    if not sep:
        host, port_s = s, ""
    host = host.strip("[]") or DEFAULT_DIAL_HOST
    if not port_s:
        return host, default_port
    try:
        port = int(port_s)
    except ValueError as e:
        raise ValueError(f"bad port in address: {addr!r}") from e
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return host, port


def listen_host() -> str:
    return get_str(HOST_ENV) or "0.0.0.0"


def listen_port() -> int:
    p = get_int(PORT_ENV)
    if p is None or not 0 <= p < 65536:
        return DEFAULT_PORT
    return p


def dial_address() -> Tuple[str, int]:
    raw = get_str(ADDRESS_ENV)
    if raw:
        try:
            return parse_address(raw)
        except ValueError:
            pass
    return DEFAULT_DIAL_HOST, DEFAULT_PORT


def retry_delay() -> float:
    v = get_float(RETRY_DELAY_ENV)
    return DEFAULT_RETRY_DELAY if v is None else v


def username() -> Optional[str]:
    return get_str(USERNAME_ENV)
