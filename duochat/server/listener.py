#!/usr/bin/env python3
"""
duochat listener (server role).

Binds one TCP port, accepts exactly one peer, then exchanges framed text
messages with it until the connection drops. The listener never accepts a
second connection; only the dialer side retries.

Transport:
  - TCP + length-prefixed UTF-8 frames (duochat/common/framing.py)
"""

from __future__ import annotations

import argparse
import contextlib
import socket
import sys
import threading
from typing import Optional, Tuple

from duochat.common import config
from duochat.common.endpoint import Endpoint
from duochat.common.events import Connected, Disconnected, EventQueue, command_from_line, flush_events, print_events
from duochat.common.framing import FramedChannel
from duochat.common.protocol import DEFAULT_PORT, SERVER_SENDER, BindError, Message, NotConnected, validate_body


class ListenerEndpoint(Endpoint):
    tag = "Listener"

    def __init__(self, on_event=None, log=print):
        super().__init__(on_event, log)
        self.server_sock: Optional[socket.socket] = None
        self.accepted = False
        self.receiver: Optional[threading.Thread] = None

    def start(self, port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> Tuple[str, int]:
        if self.server_sock is not None or self.accepted:
            raise RuntimeError("listener already started")
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
            s.listen(1)
        except (OSError, OverflowError) as e:
            s.close()
            detail = getattr(e, "strerror", None) or e
            raise BindError(f"cannot listen on {host}:{port}: {detail}") from e
        self.server_sock = s
        addr = s.getsockname()[:2]
        self._log(f"listen {addr[0]}:{addr[1]}")
        return addr[0], addr[1]

    @staticmethod
    def display_address() -> str:
        try:
            return socket.gethostbyname(socket.gethostname())
        except OSError:
            return "127.0.0.1"

    def accept_once(self) -> FramedChannel:
        if self.accepted:
            raise RuntimeError("listener accepts a single connection")
        if self.server_sock is None:
            raise RuntimeError("listener not started")
        self.accepted = True
        server_sock = self.server_sock
        try:
            conn, _addr = server_sock.accept()
        except OSError as e:
            raise NotConnected("listener closed before a peer connected") from e
        finally:
            self.server_sock = None
            with contextlib.suppress(OSError):
                server_sock.close()
        channel = FramedChannel(conn)
        with self.lock:
            self.channel = channel
        self._log("Client connected!")
        self._emit(Connected(channel.peer))
        return channel

    def start_receiving(self) -> threading.Thread:
        with self.lock:
            channel = self.channel
        if channel is None:
            raise NotConnected("no accepted connection")
        if self.receiver is not None:
            return self.receiver
        self.receiver = threading.Thread(target=self._receive_until_closed, args=(channel,), daemon=True)
        self.receiver.start()
        return self.receiver

    def _receive_until_closed(self, channel: FramedChannel) -> None:
        reason = self._receive_loop(channel)
        channel.close()
        self._log("Client disconnected.")
        self._emit(Disconnected(reason, retrying=False))

    def run(self, port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> threading.Thread:
        self.start(port, host)
        self.accept_once()
        return self.start_receiving()

    def send_message(self, body: str) -> Message:
        # listener messages carry no timestamp and no length cap
        text = validate_body(body, max_len=None)
        return self._send(Message(sender=SERVER_SENDER, body=text))

    def close(self) -> None:
        server_sock, self.server_sock = self.server_sock, None
        if server_sock is not None:
            # shutdown() wakes a thread blocked in accept(); close() alone does not on Linux
            with contextlib.suppress(OSError):
                server_sock.shutdown(socket.SHUT_RDWR)
            with contextlib.suppress(OSError):
                server_sock.close()
        with self.lock:
            channel = self.channel
        if channel is not None:
            channel.close()


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="duochat listener: accept one peer and chat with it")
    ap.add_argument("--host", default=config.listen_host())
    ap.add_argument("--port", type=int, default=config.listen_port())
    return ap.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    events = EventQueue()
    ep = ListenerEndpoint(events)
    try:
        ep.start(args.port, args.host)
    except BindError as e:
        print(f"[Listener] Error: {e}", file=sys.stderr)
        return 1

    print(f"Server IP Address: {ep.display_address()}")
    print("Waiting for a connection...", flush=True)

    done = threading.Event()
    threading.Thread(target=print_events, args=(events, done), daemon=True).start()
    try:
        ep.accept_once()
        ep.start_receiving()
        for line in sys.stdin:
            msg = ep.dispatch(command_from_line(line))
            if msg is not None:
                print(f"You: {msg.body}", flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        ep.close()
        if ep.receiver is not None:
            ep.receiver.join(timeout=1.0)
        done.set()
        flush_events(events)
    return 0


if __name__ == "__main__":
    sys.exit(main())
