"""
Length-prefixed framing helpers (TCP).

Wire format:
  [2-byte length (uint16, network byte order)] [UTF-8 payload bytes]

Constraints:
  - 0 <= length <= 65535
  - one send() on one side is exactly one receive() on the other
"""

from __future__ import annotations

import contextlib
import socket
import struct
import threading
from typing import Optional, Tuple


HDR = struct.Struct("!H")
MAX_FRAME = 0xFFFF


class FramingError(Exception):
    pass


class PeerClosed(ConnectionError):
    """The peer closed the stream (EOF)."""


def encode_frame(text: str) -> bytes:
    payload = text.encode("utf-8")
    if len(payload) > MAX_FRAME:
        raise FramingError("frame too large")
    return HDR.pack(len(payload)) + payload


# ---------------------------
# blocking socket helpers
# ---------------------------
def send_frame_sync(sock: socket.socket, text: str) -> None:
    # header and payload go out in one sendall so a frame is never split
    # across two writers
    sock.sendall(encode_frame(text))


def _recv_exact_sync(sock: socket.socket, n: int) -> Optional[bytes]:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            return None
        buf.extend(chunk)
    return bytes(buf)


def recv_frame_sync(sock: socket.socket) -> Optional[str]:
    hdr = _recv_exact_sync(sock, HDR.size)
    if hdr is None:
        return None
    (length,) = HDR.unpack(hdr)
    payload = _recv_exact_sync(sock, length)
    if payload is None:
        return None
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FramingError("bad utf-8 payload") from e


class FramedChannel:
    """
    One live connection, seen as a sequence of text frames.

    Reads and writes use independent paths: send() may be called from any
    thread while another thread is blocked in receive(). Concurrent send()
    calls serialize on an internal lock.
    """

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.write_lock = threading.Lock()
        self.closed = False
        self.peer: Optional[Tuple[str, int]] = None
        with contextlib.suppress(OSError):
            name = sock.getpeername()
            if isinstance(name, tuple):
                self.peer = (name[0], name[1])

    def send(self, text: str) -> None:
        frame = encode_frame(text)
        with self.write_lock:
            if self.closed:
                raise PeerClosed("channel closed")
            self.sock.sendall(frame)

    def receive(self) -> str:
        text = recv_frame_sync(self.sock)
        if text is None:
            raise PeerClosed("peer closed the connection")
        return text

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # shutdown() wakes a thread blocked in recv(); close() alone does not on Linux
        with contextlib.suppress(OSError):
            self.sock.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(OSError):
            self.sock.close()

    def __enter__(self) -> "FramedChannel":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
