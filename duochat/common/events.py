"""
Caller-facing event interface.

Endpoints push events to an EventSink (any callable taking one event) and
accept commands through Endpoint.dispatch(). A presentation layer typically
hands an EventQueue to the endpoint and drains it from its own thread.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from duochat.common.protocol import Message


# ---------------------------
# events (endpoint -> caller)
# ---------------------------
@dataclass(frozen=True)
class MessageReceived:
    message: Message


@dataclass(frozen=True)
class Connected:
    peer: Optional[Tuple[str, int]] = None


@dataclass(frozen=True)
class Disconnected:
    reason: str
    retrying: bool = False


@dataclass(frozen=True)
class ValidationFailed:
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class SendFailed:
    reason: str


@dataclass(frozen=True)
class HistoryCleared:
    pass


Event = Union[MessageReceived, Connected, Disconnected, ValidationFailed, SendFailed, HistoryCleared]
EventSink = Callable[[Event], None]


# ---------------------------
# commands (caller -> endpoint)
# ---------------------------
@dataclass(frozen=True)
class SendMessage:
    text: str


@dataclass(frozen=True)
class ClearHistory:
    pass


Command = Union[SendMessage, ClearHistory]


CLEAR_COMMAND = "/clear"


def discard(_event: Event) -> None:
    pass


def command_from_line(line: str) -> Command:
    if line.strip() == CLEAR_COMMAND:
        return ClearHistory()
    return SendMessage(line.rstrip("\r\n"))


def describe(event: Event) -> str:
    """One console line per event."""
    if isinstance(event, MessageReceived):
        return event.message.text
    if isinstance(event, Connected):
        if event.peer:
            return f"Connected to {event.peer[0]}:{event.peer[1]}"
        return "Connected!"
    if isinstance(event, Disconnected):
        if event.retrying:
            return f"Disconnected ({event.reason}). Retrying..."
        return f"Disconnected ({event.reason})."
    if isinstance(event, ValidationFailed):
        return event.detail or f"Message rejected: {event.reason}"
    if isinstance(event, SendFailed):
        return f"Error sending message: {event.reason}"
    if isinstance(event, HistoryCleared):
        return "-- chat cleared --"
    return repr(event)


class EventQueue:
    """Thread-safe sink: endpoints put(), the UI thread get()s."""

    def __init__(self):
        self.events: "queue.Queue[Event]" = queue.Queue()

    def __call__(self, event: Event) -> None:
        self.events.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list:
        out = []
        while True:
            try:
                out.append(self.events.get_nowait())
            except queue.Empty:
                return out


def print_events(events: EventQueue, done: threading.Event) -> None:
    while not done.is_set():
        ev = events.get(timeout=0.5)
        if ev is not None:
            print(describe(ev), flush=True)


def flush_events(events: EventQueue) -> None:
    for ev in events.drain():
        print(describe(ev), flush=True)
