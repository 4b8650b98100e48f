"""Bandwidth units, clocks and acknowledgement records for congestion control.

Times are integer nanoseconds; a time of 0 means "not set".
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol

NANOSECOND = 1
MICROSECOND = 1_000 * NANOSECOND
MILLISECOND = 1_000 * MICROSECOND
SECOND = 1_000 * MILLISECOND

BITS_PER_SECOND = 1
BYTES_PER_SECOND = 8 * BITS_PER_SECOND

INF_BANDWIDTH = (1 << 64) - 1


def bandwidth_from_delta(num_bytes: int, delta: int) -> int:
    """Bandwidth in bits per second for num_bytes delivered over delta nanoseconds."""
    return num_bytes * SECOND // delta * BYTES_PER_SECOND


@dataclass(frozen=True)
class AckedPacketInfo:
    """A packet reported as acknowledged."""

    packet_number: int
    bytes_acked: int
    received_time: int = 0


@dataclass(frozen=True)
class LostPacketInfo:
    """A packet reported as lost."""

    packet_number: int
    bytes_lost: int


class Clock(Protocol):
    """Anything that tells the current time in nanoseconds."""

    def now(self) -> int:
        ...


class DefaultClock:
    """Clock backed by the system wall clock."""

    def now(self) -> int:
        """Current time in nanoseconds since the epoch."""
        return time.time_ns()