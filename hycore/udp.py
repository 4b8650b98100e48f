"""Server-side UDP session management: relaying datagrams between the tunnel and targets."""

from __future__ import annotations

import random
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field, replace
from typing import Protocol

from hycore.frag import Defragger, frag_udp_message
from hycore.protocol import MAX_UDP_SIZE, UDPMessage

IDLE_CLEANUP_INTERVAL = 1.0  # seconds


class DatagramTooLargeError(Exception):
    """Raised by a sender when a message exceeds the datagram size limit."""

    def __init__(self, max_data_len: int) -> None:
        super().__init__(f"datagram too large, at most {max_data_len} bytes")
        self.max_data_len = max_data_len


class UDPConn(Protocol):
    """A UDP socket addressed by strings."""

    def read_from(self, size: int) -> tuple[bytes, str]:
        ...

    def write_to(self, data: bytes, addr: str) -> int:
        ...

    def close(self) -> None:
        ...


class UDPIO(Protocol):
    """The tunnel side of UDP relaying."""

    def receive_message(self) -> UDPMessage:
        ...

    def send_message(self, message: UDPMessage) -> None:
        ...

    def udp(self, req_addr: str) -> UDPConn:
        ...


class UDPEventLogger(Protocol):
    """Receives notice of sessions opening and closing."""

    def new(self, session_id: int, req_addr: str) -> None:
        ...

    def close(self, session_id: int, err: BaseException | None) -> None:
        ...


@dataclass(eq=False)
class UDPSessionEntry:
    """One UDP session and its outbound connection."""

    session_id: int
    conn: UDPConn
    defragger: Defragger = field(default_factory=Defragger)
    last: float = field(default_factory=time.monotonic)
    timeout: bool = False  # set when closed by idle cleanup

    def feed(self, message: UDPMessage) -> int:
        """Write a complete message to the connection; 0 while fragments are pending."""
        self.last = time.monotonic()
        complete = self.defragger.feed(message)
        if complete is None:
            return 0
        return self.conn.write_to(complete.data, complete.addr)

    def receive_loop(self, io: UDPIO) -> None:
        """Relay packets from the connection to the tunnel until an error is raised."""
        while True:
            data, addr = self.conn.read_from(MAX_UDP_SIZE)
            self.last = time.monotonic()
            message = UDPMessage(
                session_id=self.session_id,
                packet_id=0,
                frag_id=0,
                frag_count=1,
                addr=addr,
                data=bytes(data),
            )
            send_message_auto_frag(io, message)


def send_message_auto_frag(io: UDPIO, message: UDPMessage) -> None:
    """Send a message whole, falling back to fragments if it is too large."""
    try:
        io.send_message(message)
    except DatagramTooLargeError as exc:
        packet = replace(message, packet_id=random.randint(1, 0xFFFF))
        for fragment in frag_udp_message(packet, exc.max_data_len):
            io.send_message(fragment)


class UDPSessionManager:
    """Creates a session per new session ID and closes sessions that go idle."""

    def __init__(
        self,
        io: UDPIO,
        event_logger: UDPEventLogger,
        idle_timeout: float,
        cleanup_interval: float = IDLE_CLEANUP_INTERVAL,
    ) -> None:
        self._io = io
        self._event_logger = event_logger
        self._idle_timeout = idle_timeout
        self._cleanup_interval = cleanup_interval
        self._lock = threading.Lock()
        self._sessions: dict[int, UDPSessionEntry] = {}

    def run(self) -> None:
        """Receive and dispatch messages until the tunnel raises; that error propagates."""
        stop = threading.Event()
        cleaner = threading.Thread(target=self._idle_cleanup_loop, args=(stop,), daemon=True)
        cleaner.start()
        try:
            while True:
                self._feed(self._io.receive_message())
        finally:
            self._cleanup(idle_only=False)
            stop.set()

    def count(self) -> int:
        """Number of open sessions."""
        with self._lock:
            return len(self._sessions)

    def _idle_cleanup_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._cleanup_interval):
            self._cleanup(idle_only=True)

    def _cleanup(self, idle_only: bool) -> None:
        now = time.monotonic()
        with self._lock:
            expired = [
                entry
                for entry in self._sessions.values()
                if not idle_only or now - entry.last > self._idle_timeout
            ]
        for entry in expired:
            entry.timeout = True
            # Closing ends the receive loop, which removes the session.
            with suppress(Exception):
                entry.conn.close()

    def _feed(self, message: UDPMessage) -> None:
        with self._lock:
            entry = self._sessions.get(message.session_id)

        if entry is None:
            self._event_logger.new(message.session_id, message.addr)
            try:
                conn = self._io.udp(message.addr)
            except Exception as exc:
                self._event_logger.close(message.session_id, exc)
                return
            entry = UDPSessionEntry(message.session_id, conn)
            with self._lock:
                self._sessions[message.session_id] = entry
            threading.Thread(target=self._serve_session, args=(entry,), daemon=True).start()

        # Send errors are ignored: some are temporary, such as a bad address.
        with suppress(Exception):
            entry.feed(message)

    def _serve_session(self, entry: UDPSessionEntry) -> None:
        error: BaseException | None = None
        try:
            entry.receive_loop(self._io)
        except Exception as exc:
            error = exc
        if entry.timeout:
            # Already closed by cleanup; None marks a timeout.
            self._event_logger.close(entry.session_id, None)
        else:
            with suppress(Exception):
                entry.conn.close()
            self._event_logger.close(entry.session_id, error)
        with self._lock:
            if self._sessions.get(entry.session_id) is entry:
                del self._sessions[entry.session_id]