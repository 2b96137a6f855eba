from __future__ import annotations

import threading
from typing import Callable, Optional

from duochat.common.events import (
    ClearHistory,
    Command,
    EventSink,
    HistoryCleared,
    MessageReceived,
    SendFailed,
    SendMessage,
    ValidationFailed,
    discard,
)
from duochat.common.framing import FramedChannel, FramingError, PeerClosed
from duochat.common.protocol import Message, NotConnected, ValidationError


class Endpoint:
    """
    State and behaviour shared by the listener and the dialer: one optional
    live channel, an event sink, and the command surface a UI talks to.
    """

    tag = "Endpoint"

    def __init__(self, on_event: Optional[EventSink] = None, log: Callable[[str], None] = print):
        self.on_event: EventSink = on_event or discard
        self.log = log
        self.channel: Optional[FramedChannel] = None
        self.lock = threading.Lock()

    def _log(self, msg: str) -> None:
        self.log(f"[{self.tag}] {msg}")

    def _emit(self, event) -> None:
        self.on_event(event)

    # -------------------------
    # Commands
    # -------------------------
    def send_message(self, body: str) -> Message:
        raise NotImplementedError

    def clear_history(self) -> None:
        self._emit(HistoryCleared())

    def dispatch(self, command: Command) -> Optional[Message]:
        """
        Run a UI command. Failures become exactly one event instead of an
        exception; the sent Message is returned on success.
        """
        if isinstance(command, ClearHistory):
            self.clear_history()
            return None
        if isinstance(command, SendMessage):
            try:
                return self.send_message(command.text)
            except ValidationError as e:
                self._emit(ValidationFailed(e.reason, str(e)))
            except (OSError, FramingError) as e:
                self._log(f"Error sending message: {e}")
                self._emit(SendFailed(str(e) or e.__class__.__name__))
            return None
        raise TypeError(f"unknown command: {command!r}")

    # -------------------------
    # Channel plumbing
    # -------------------------
    def _send(self, message: Message) -> Message:
        with self.lock:
            channel = self.channel
        if channel is None:
            raise NotConnected("not connected")
        try:
            channel.send(message.text)
        except OSError:
            # a failed write means the connection is gone; closing it makes the
            # receive loop report the disconnect
            channel.close()
            raise
        return message

    def _receive_loop(self, channel: FramedChannel) -> str:
        """Forward frames as MessageReceived until the channel fails; return the reason."""
        try:
            while True:
                text = channel.receive()
                self._emit(MessageReceived(Message.parse(text)))
        except PeerClosed as e:
            return str(e) or "peer closed the connection"
        except (OSError, FramingError) as e:
            return str(e) or e.__class__.__name__
