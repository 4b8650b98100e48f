import queue
import threading
import time

import pytest

from hycore.frag import Defragger
from hycore.protocol import UDPMessage
from hycore.udp import (
    DatagramTooLargeError,
    UDPSessionEntry,
    UDPSessionManager,
    send_message_auto_frag,
)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class FakeConn:
    def __init__(self, addr, read_error=None):
        self.addr = addr
        self.read_error = read_error
        self.reads = queue.Queue()
        self.writes = []
        self.close_calls = 0
        self._lock = threading.Lock()

    def read_from(self, size):
        if self.read_error is not None:
            raise self.read_error
        data = self.reads.get()
        if data is None:
            raise OSError("closed")
        return data[:size], self.addr

    def write_to(self, data, addr):
        self.writes.append((bytes(data), addr))
        return len(data)

    def close(self):
        with self._lock:
            self.close_calls += 1
        self.reads.put(None)


class FakeIO:
    def __init__(self):
        self.incoming = queue.Queue()
        self.sent = []
        self.conns = {}
        self.udp_errors = {}

    def receive_message(self):
        message = self.incoming.get()
        if message is None:
            raise ConnectionError("closed")
        return message

    def send_message(self, message):
        self.sent.append(message)

    def udp(self, req_addr):
        if req_addr in self.udp_errors:
            raise self.udp_errors[req_addr]
        return self.conns[req_addr]


class FakeEventLogger:
    def __init__(self):
        self.events = []

    def new(self, session_id, req_addr):
        self.events.append(("new", session_id, req_addr))

    def close(self, session_id, err):
        self.events.append(("close", session_id, err))


def msg(session_id, addr, data):
    return UDPMessage(session_id=session_id, packet_id=0, frag_id=0, frag_count=1, addr=addr, data=data)


@pytest.fixture
def setup():
    io = FakeIO()
    logger = FakeEventLogger()
    manager = UDPSessionManager(io, logger, idle_timeout=1.0, cleanup_interval=0.1)
    outcome = {}

    def target():
        try:
            manager.run()
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    yield io, logger, manager, outcome, thread
    io.incoming.put(None)
    thread.join(timeout=5)


def test_sessions_relay_and_time_out(setup):
    io, logger, manager, _, _ = setup
    addr1 = "address1.com:9000"
    addr2 = "address2.net:12450"
    conn1 = FakeConn(addr1)
    conn2 = FakeConn(addr2)
    io.conns = {addr1: conn1, addr2: conn2}

    io.incoming.put(msg(1234, addr1, b"hello"))
    conn1.reads.put(b"hi back")
    io.incoming.put(msg(5678, addr2, b"how are you"))
    conn2.reads.put(b"im fine")
    io.incoming.put(msg(1234, addr1, b"who are you?"))
    conn1.reads.put(b"im your father")

    assert wait_for(lambda: len(io.sent) == 3)
    assert msg(1234, addr1, b"hi back") in io.sent
    assert msg(5678, addr2, b"im fine") in io.sent
    assert msg(1234, addr1, b"im your father") in io.sent
    assert conn1.writes == [(b"hello", addr1), (b"who are you?", addr1)]
    assert conn2.writes == [(b"how are you", addr2)]
    assert [e for e in logger.events if e[0] == "new"] == [
        ("new", 1234, addr1),
        ("new", 5678, addr2),
    ]

    assert wait_for(lambda: manager.count() == 0)
    closes = [e for e in logger.events if e[0] == "close"]
    assert sorted(closes, key=lambda e: e[1]) == [("close", 1234, None), ("close", 5678, None)]
    assert conn1.close_calls >= 1
    assert conn2.close_calls >= 1


def test_read_error_is_propagated(setup):
    io, logger, manager, _, _ = setup
    addr = "oh-no.com:27015"
    err = OSError("UDP connection closed")
    conn = FakeConn(addr, read_error=err)
    io.conns = {addr: conn}

    io.incoming.put(msg(666, addr, b"dont say bye"))
    assert wait_for(lambda: ("close", 666, err) in logger.events)
    assert wait_for(lambda: conn.writes == [(b"dont say bye", addr)])
    assert logger.events[0] == ("new", 666, addr)
    assert conn.close_calls == 1
    assert wait_for(lambda: manager.count() == 0)


def test_connection_creation_error_is_propagated(setup):
    io, logger, manager, _, _ = setup
    addr = "callmemaybe.com:15353"
    err = OSError("UDP IO error")
    io.udp_errors = {addr: err}

    io.incoming.put(msg(777, addr, b"babe i miss you"))
    assert wait_for(lambda: len(logger.events) == 2)
    assert logger.events == [("new", 777, addr), ("close", 777, err)]
    assert manager.count() == 0


def test_run_stops_and_closes_sessions(setup):
    io, logger, manager, outcome, thread = setup
    addr = "example.com:53"
    conn = FakeConn(addr)
    io.conns = {addr: conn}
    io.incoming.put(msg(42, addr, b"query"))
    assert wait_for(lambda: manager.count() == 1)

    io.incoming.put(None)
    thread.join(timeout=5)
    assert isinstance(outcome["error"], ConnectionError)
    assert conn.close_calls >= 1
    assert wait_for(lambda: manager.count() == 0)
    assert ("close", 42, None) in logger.events


class LimitedIO:
    def __init__(self, limit, fail_after=None):
        self.limit = limit
        self.fail_after = fail_after
        self.sent = []

    def send_message(self, message):
        if message.size() > self.limit:
            raise DatagramTooLargeError(self.limit)
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise OSError("send failed")
        self.sent.append(message)

    def udp(self, req_addr):
        raise AssertionError("not used")

    def receive_message(self):
        raise AssertionError("not used")


def test_auto_frag_small_message_sent_whole():
    io = LimitedIO(limit=1000)
    message = msg(1, "test:123", b"hello")
    send_message_auto_frag(io, message)
    assert io.sent == [message]


def test_auto_frag_splits_and_reassembles():
    io = LimitedIO(limit=60)
    payload = bytes(range(200))
    send_message_auto_frag(io, msg(9, "test:123", payload))
    assert len(io.sent) > 1
    assert all(m.size() <= 60 for m in io.sent)
    assert len({m.packet_id for m in io.sent}) == 1
    assert 1 <= io.sent[0].packet_id <= 0xFFFF
    defragger = Defragger()
    results = [defragger.feed(m) for m in io.sent]
    assert results[:-1] == [None] * (len(io.sent) - 1)
    assert results[-1].data == payload
    assert results[-1].frag_count == 1


def test_auto_frag_propagates_send_error():
    io = LimitedIO(limit=60, fail_after=1)
    with pytest.raises(OSError):
        send_message_auto_frag(io, msg(9, "test:123", bytes(200)))
    assert len(io.sent) == 1


def test_entry_feed_writes_complete_messages():
    conn = FakeConn("test:123")
    entry = UDPSessionEntry(5, conn)
    first = UDPMessage(5, 7, 0, 2, "test:123", b"hello ")
    second = UDPMessage(5, 7, 1, 2, "test:123", b"moto")
    assert entry.feed(first) == 0
    assert entry.feed(second) == len(b"hello moto")
    assert conn.writes == [(b"hello moto", "test:123")]


def test_entry_receive_loop_sends_and_raises_on_close():
    conn = FakeConn("peer:1")
    io = LimitedIO(limit=10_000)
    entry = UDPSessionEntry(3, conn)
    conn.reads.put(b"data")
    conn.reads.put(None)
    with pytest.raises(OSError):
        entry.receive_loop(io)
    assert io.sent == [msg(3, "peer:1", b"data")]