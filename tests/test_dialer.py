import queue
import socket
import threading
import time
from datetime import datetime

import pytest

from duochat.client.dialer import DialerEndpoint, DialState
from duochat.common.events import (
    ClearHistory,
    Connected,
    Disconnected,
    EventQueue,
    HistoryCleared,
    MessageReceived,
    SendFailed,
    SendMessage,
)
from duochat.common.framing import recv_frame_sync, send_frame_sync
from duochat.common.protocol import NotConnected, ValidationError


NOON = datetime(2024, 5, 1, 12, 0, 0)


def quiet(_line):
    pass


def next_event(events, timeout=2.0):
    ev = events.get(timeout=timeout)
    assert ev is not None, "timed out waiting for an event"
    return ev


class FlakyConnector:
    """Refuses the first `failures` dials, then hands out one end of a socketpair."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []
        self.peers = []

    def __call__(self, address):
        self.calls.append(address)
        if len(self.calls) <= self.failures:
            raise ConnectionRefusedError("refused")
        ours, theirs = socket.socketpair()
        self.peers.append(theirs)
        return ours

    def close(self):
        for p in self.peers:
            p.close()


class RecordingWait:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)
        return False


@pytest.fixture
def events():
    return EventQueue()


@pytest.fixture
def connector():
    c = FlakyConnector()
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def dialer(events, connector):
    ep = DialerEndpoint(events, "alice", connect=connector, now=lambda: NOON, log=quiet)
    try:
        yield ep
    finally:
        ep.stop(timeout=2.0)


def start_connected(ep, events, connector, retry_delay=10.0):
    ep.start(("127.0.0.1", 5000), retry_delay)
    assert isinstance(next_event(events), Connected)
    return connector.peers[-1]


def test_retries_after_failures_then_connects(events, connector):
    connector.failures = 3
    wait = RecordingWait()
    ep = DialerEndpoint(events, "bob", connect=connector, wait=wait, log=quiet)
    try:
        ep.start("127.0.0.1:5000", retry_delay=0.25)
        for _ in range(3):
            ev = next_event(events)
            assert isinstance(ev, Disconnected)
            assert ev.retrying is True
        assert isinstance(next_event(events), Connected)
        assert ep.state is DialState.CONNECTED
        assert wait.delays == [0.25, 0.25, 0.25]
        assert connector.calls == [("127.0.0.1", 5000)] * 4
    finally:
        ep.stop(timeout=2.0)
    assert ep.state is DialState.DISCONNECTED


def test_send_message_formats_username_and_timestamp(dialer, events, connector):
    peer = start_connected(dialer, events, connector)
    msg = dialer.send_message("  hello ")
    assert msg.text == "alice [12:00:00]: hello"
    peer.settimeout(2.0)
    assert recv_frame_sync(peer) == "alice [12:00:00]: hello"


def test_too_long_body_is_rejected_and_nothing_is_written(dialer, events, connector):
    peer = start_connected(dialer, events, connector)
    with pytest.raises(ValidationError) as e:
        dialer.send_message("x" * 201)
    assert e.value.reason == ValidationError.TOO_LONG
    peer.settimeout(0.2)
    with pytest.raises(socket.timeout):
        peer.recv(1)


@pytest.mark.parametrize("body", ["", "   ", "\n"])
def test_blank_body_is_rejected(dialer, events, connector, body):
    peer = start_connected(dialer, events, connector)
    with pytest.raises(ValidationError) as e:
        dialer.send_message(body)
    assert e.value.reason == ValidationError.EMPTY
    peer.settimeout(0.2)
    with pytest.raises(socket.timeout):
        peer.recv(1)


def test_validation_runs_before_connection_check(dialer):
    with pytest.raises(ValidationError):
        dialer.send_message("x" * 201)
    with pytest.raises(NotConnected):
        dialer.send_message("ok")


def test_send_is_not_blocked_by_pending_receive(dialer, events, connector):
    peer = start_connected(dialer, events, connector)
    # the dial thread is now parked in receive() with nothing to read
    time.sleep(0.1)
    done = threading.Event()

    def send():
        dialer.send_message("ping")
        done.set()

    threading.Thread(target=send).start()
    assert done.wait(2.0)
    peer.settimeout(2.0)
    assert recv_frame_sync(peer) == "alice [12:00:00]: ping"
    send_frame_sync(peer, "Server: pong")
    ev = next_event(events)
    assert isinstance(ev, MessageReceived)
    assert ev.message.sender == "Server"
    assert ev.message.body == "pong"


def test_peer_close_emits_one_disconnected_then_redials(events, connector):
    ep = DialerEndpoint(events, "alice", connect=connector, log=quiet)
    try:
        ep.start(("127.0.0.1", 5000), retry_delay=10.0)
        assert isinstance(next_event(events), Connected)
        connector.peers[-1].close()
        ev = next_event(events)
        assert isinstance(ev, Disconnected)
        assert ev.retrying is True
        time.sleep(0.2)
        # parked in the retry wait; nothing else was emitted
        assert events.drain() == []
        assert ep.state is DialState.DISCONNECTED
        assert len(connector.calls) == 1
    finally:
        ep.stop(timeout=2.0)
    assert not ep.thread.is_alive()
    assert events.drain() == []


def test_reconnects_after_connection_loss(events, connector):
    ep = DialerEndpoint(events, "alice", connect=connector, wait=RecordingWait(), now=lambda: NOON, log=quiet)
    try:
        ep.start(("127.0.0.1", 5000), retry_delay=0.0)
        assert isinstance(next_event(events), Connected)
        connector.peers[-1].close()
        assert isinstance(next_event(events), Disconnected)
        assert isinstance(next_event(events), Connected)
        peer = connector.peers[-1]
        ep.send_message("back again")
        peer.settimeout(2.0)
        assert recv_frame_sync(peer) == "alice [12:00:00]: back again"
    finally:
        ep.stop(timeout=2.0)


def test_stop_while_connected_ends_loop(dialer, events, connector):
    start_connected(dialer, events, connector)
    dialer.stop(timeout=2.0)
    ev = next_event(events)
    assert isinstance(ev, Disconnected)
    assert ev.retrying is False
    assert not dialer.thread.is_alive()
    assert dialer.state is DialState.DISCONNECTED


def test_clear_history_is_local_and_always_available(dialer, events):
    assert dialer.state is DialState.DISCONNECTED
    assert dialer.dispatch(ClearHistory()) is None
    assert isinstance(next_event(events), HistoryCleared)


def test_dispatch_while_disconnected_reports_send_failed(dialer, events):
    assert dialer.dispatch(SendMessage("hello")) is None
    assert isinstance(next_event(events), SendFailed)


def test_empty_username_falls_back_to_anonymous():
    assert DialerEndpoint(username="").username == "Anonymous"
    assert DialerEndpoint().username == "Anonymous"


class GatedConnector:
    """Each dial blocks until the test feeds an outcome: an exception to raise, or "ok"."""

    def __init__(self):
        self.entered = queue.Queue()
        self.outcomes = queue.Queue()
        self.peers = []

    def __call__(self, address):
        self.entered.put(address)
        outcome = self.outcomes.get(timeout=5.0)
        if isinstance(outcome, Exception):
            raise outcome
        ours, theirs = socket.socketpair()
        self.peers.append(theirs)
        return ours

    def close(self):
        for p in self.peers:
            p.close()


@pytest.fixture
def gated():
    c = GatedConnector()
    try:
        yield c
    finally:
        c.close()


def test_state_follows_dial_attempts(events, gated):
    states_while_waiting = []
    ep = DialerEndpoint(events, "alice", connect=gated, log=quiet)

    def wait(_seconds):
        states_while_waiting.append(ep.state)
        return False

    ep.wait = wait
    try:
        assert ep.state is DialState.DISCONNECTED
        ep.start(("127.0.0.1", 5000), retry_delay=0.0)

        gated.entered.get(timeout=2.0)
        assert ep.state is DialState.CONNECTING
        gated.outcomes.put(ConnectionRefusedError("refused"))
        assert isinstance(next_event(events), Disconnected)

        gated.entered.get(timeout=2.0)
        assert ep.state is DialState.CONNECTING
        assert states_while_waiting == [DialState.DISCONNECTED]
        gated.outcomes.put("ok")
        assert isinstance(next_event(events), Connected)
        assert ep.state is DialState.CONNECTED
    finally:
        ep.stop(timeout=2.0)
    assert ep.state is DialState.DISCONNECTED


def test_stop_during_successful_dial_emits_nothing(events, gated):
    ep = DialerEndpoint(events, "alice", connect=gated, log=quiet)
    ep.start(("127.0.0.1", 5000), retry_delay=0.0)
    gated.entered.get(timeout=2.0)
    ep.stop(timeout=0.1)
    gated.outcomes.put("ok")
    ep.thread.join(timeout=2.0)
    assert not ep.thread.is_alive()
    assert events.drain() == []
    assert ep.channel is None
    assert ep.state is DialState.DISCONNECTED


def test_stop_during_failing_dial_emits_nothing(events, gated):
    ep = DialerEndpoint(events, "alice", connect=gated, log=quiet)
    ep.start(("127.0.0.1", 5000), retry_delay=0.0)
    gated.entered.get(timeout=2.0)
    ep.stop(timeout=0.1)
    gated.outcomes.put(ConnectionRefusedError("refused"))
    ep.thread.join(timeout=2.0)
    assert not ep.thread.is_alive()
    assert events.drain() == []


def test_username_colons_are_dropped():
    ep = DialerEndpoint(username="Server: mallory", now=lambda: NOON, log=quiet)
    assert ep.username == "Server mallory"
