#!/usr/bin/env python3
"""
duochat dialer (client role).

Keeps dialing a fixed listener address. Once connected it receives on its own
thread while the caller sends from the UI thread; when the connection drops it
waits a fixed delay and dials again, for as long as the process runs or until
stop() is called.

State machine:
  DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> ...
                       \\-> DISCONNECTED (dial failed, wait retry_delay)
"""

from __future__ import annotations

import argparse
import enum
import socket
import sys
import threading
from datetime import datetime
from typing import Callable, Optional, Tuple, Union

from duochat.common import config
from duochat.common.endpoint import Endpoint
from duochat.common.events import Connected, Disconnected, EventQueue, command_from_line, flush_events, print_events
from duochat.common.framing import FramedChannel
from duochat.common.protocol import (
    DEFAULT_DIAL_HOST,
    DEFAULT_PORT,
    DEFAULT_RETRY_DELAY,
    DialError,
    Message,
    format_timestamp,
    normalize_username,
    validate_body,
)


CONNECT_TIMEOUT = 5.0

Address = Tuple[str, int]


class DialState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def tcp_connect(address: Address) -> socket.socket:
    sock = socket.create_connection(address, timeout=CONNECT_TIMEOUT)
    # receive() blocks without a deadline once connected
    sock.settimeout(None)
    return sock


class DialerEndpoint(Endpoint):
    tag = "Dialer"

    def __init__(
        self,
        on_event=None,
        username: Optional[str] = None,
        *,
        connect: Callable[[Address], socket.socket] = tcp_connect,
        wait: Optional[Callable[[float], bool]] = None,
        now: Callable[[], datetime] = datetime.now,
        log=print,
    ):
        super().__init__(on_event, log)
        self.username = normalize_username(username)
        self.connect = connect
        self.stop_event = threading.Event()
        # wait(seconds) returns True when the loop should stop
        self.wait = wait or self.stop_event.wait
        self.now = now
        self.state = DialState.DISCONNECTED
        self.thread: Optional[threading.Thread] = None

    # -------------------------
    # Connection loop
    # -------------------------
    def run(
        self,
        address: Union[str, Address] = (DEFAULT_DIAL_HOST, DEFAULT_PORT),
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        if isinstance(address, str):
            address = config.parse_address(address)
        while not self.stop_event.is_set():
            self.state = DialState.CONNECTING
            try:
                channel = self._dial(address)
            except DialError as e:
                self.state = DialState.DISCONNECTED
                if self.stop_event.is_set():
                    break
                self._log("Unable to connect to the server. Retrying...")
                self._emit(Disconnected(str(e), retrying=True))
            else:
                reason = self._session(channel)
                self.state = DialState.DISCONNECTED
                if reason is None:
                    break
                stopping = self.stop_event.is_set()
                self._log(f"connection lost: {reason}")
                self._emit(Disconnected(reason, retrying=not stopping))
                if stopping:
                    break
            if self.wait(retry_delay):
                break
        self.state = DialState.DISCONNECTED

    def start(
        self,
        address: Union[str, Address] = (DEFAULT_DIAL_HOST, DEFAULT_PORT),
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> threading.Thread:
        if self.thread is not None and self.thread.is_alive():
            return self.thread
        self.thread = threading.Thread(target=self.run, args=(address, retry_delay), daemon=True)
        self.thread.start()
        return self.thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        with self.lock:
            channel = self.channel
        if channel is not None:
            channel.close()
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout)

    def _dial(self, address: Address) -> FramedChannel:
        try:
            sock = self.connect(address)
        except OSError as e:
            raise DialError(f"cannot reach {address[0]}:{address[1]}: {e}") from e
        return FramedChannel(sock)

    def _session(self, channel: FramedChannel) -> Optional[str]:
        """Run one connected session; None when stop() won the race with the dial."""
        with self.lock:
            self.channel = channel
        try:
            if self.stop_event.is_set():
                # stop() ran between the dial and the channel being published
                return None
            self.state = DialState.CONNECTED
            self._log("Connected to the server!")
            self._emit(Connected(channel.peer))
            return self._receive_loop(channel)
        finally:
            with self.lock:
                self.channel = None
            channel.close()

    # -------------------------
    # Commands
    # -------------------------
    def send_message(self, body: str) -> Message:
        text = validate_body(body)
        msg = Message(sender=self.username, body=text, timestamp=format_timestamp(self.now()))
        return self._send(msg)


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="duochat dialer: connect to a listener and keep reconnecting")
    host, port = config.dial_address()
    ap.add_argument("--address", default=f"{host}:{port}", help="listener host:port")
    ap.add_argument("--user", default=config.username(), help="display name (prompted when omitted)")
    ap.add_argument("--retry-delay", type=float, default=config.retry_delay())
    return ap.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        address = config.parse_address(args.address)
    except ValueError as e:
        print(f"[Dialer] Error: {e}", file=sys.stderr)
        return 2

    name = args.user
    if name is None:
        try:
            name = input("Enter your username: ")
        except EOFError:
            name = ""
    events = EventQueue()
    ep = DialerEndpoint(events, name)
    print(f"Your username: {ep.username}")
    print("Connecting to the server...", flush=True)

    done = threading.Event()
    threading.Thread(target=print_events, args=(events, done), daemon=True).start()
    ep.start(address, args.retry_delay)
    try:
        for line in sys.stdin:
            msg = ep.dispatch(command_from_line(line))
            if msg is not None:
                print(f"You [{msg.timestamp}]: {msg.body}", flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        ep.stop(timeout=1.0)
        done.set()
        flush_events(events)
    return 0


if __name__ == "__main__":
    sys.exit(main())
