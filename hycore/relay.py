"""Bidirectional copying between the tunnel stream and the remote connection."""

from __future__ import annotations

import queue
import shutil
import threading
from collections.abc import Callable
from typing import Protocol

BUFFER_SIZE = 32 * 1024


class DisconnectRequested(Exception):
    """The traffic logger asked for the client to be disconnected."""

    def __init__(self) -> None:
        super().__init__("traffic logger requested disconnect")


class ReadWriter(Protocol):
    def read(self, size: int, /) -> bytes:
        ...

    def write(self, data: bytes, /) -> object:
        ...


class TrafficLogger(Protocol):
    def log(self, auth_id: str, tx: int, rx: int) -> bool:
        ...


def copy_with_log(dst: ReadWriter, src: ReadWriter, log: Callable[[int], bool]) -> None:
    """Copy src to dst until end of stream, reporting each chunk's size to log.

    Raises DisconnectRequested when log returns False; errors from src or
    dst propagate. End of stream is not an error.
    """
    while True:
        chunk = src.read(BUFFER_SIZE)
        if not chunk:
            return
        if not log(len(chunk)):
            raise DisconnectRequested()
        dst.write(chunk)


def _run_both(first: Callable[[], None], second: Callable[[], None]) -> None:
    results: queue.Queue[BaseException | None] = queue.Queue()

    def run(task: Callable[[], None]) -> None:
        try:
            task()
        except BaseException as exc:  # noqa: BLE001 - handed to the waiting caller
            results.put(exc)
        else:
            results.put(None)

    for task in (first, second):
        threading.Thread(target=run, args=(task,), daemon=True).start()
    # Return as soon as either direction finishes.
    error = results.get()
    if error is not None:
        raise error


def copy_two_way_with_logger(
    auth_id: str, server_rw: ReadWriter, remote_rw: ReadWriter, logger: TrafficLogger
) -> None:
    """Relay both ways, logging traffic; return once either direction ends."""
    _run_both(
        lambda: copy_with_log(server_rw, remote_rw, lambda n: logger.log(auth_id, 0, n)),
        lambda: copy_with_log(remote_rw, server_rw, lambda n: logger.log(auth_id, n, 0)),
    )


def copy_two_way(server_rw: ReadWriter, remote_rw: ReadWriter) -> None:
    """Relay both ways without logging; return once either direction ends."""
    _run_both(
        lambda: shutil.copyfileobj(remote_rw, server_rw, BUFFER_SIZE),
        lambda: shutil.copyfileobj(server_rw, remote_rw, BUFFER_SIZE),
    )