"""Ack aggregation ("ack height") tracking and send-time snapshots for bandwidth sampling.

Times are integer nanoseconds; a time of 0 means "not set". Bandwidths are
in bits per second, sizes in bytes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from hycore.congestion.bandwidth import SECOND
from hycore.congestion.packet_queue import INVALID_PACKET_NUMBER
from hycore.congestion.windowed_filter import WindowedFilter


def bytes_from_bandwidth_and_time_delta(bandwidth: int, delta: int) -> int:
    """Bytes delivered at a bandwidth (bits per second) over delta nanoseconds."""
    return bandwidth * delta // (SECOND * 8)


def time_delta_from_bytes_and_bandwidth(num_bytes: int, bandwidth: int) -> int:
    """Nanoseconds needed to deliver num_bytes at a bandwidth in bits per second."""
    return num_bytes * 8 * SECOND // bandwidth


@dataclass
class SendTimeState:
    """Connection state captured when a packet was sent."""

    # Whether the other fields hold a real snapshot.
    is_valid: bool = False
    # Whether the sender was app limited when the packet was sent.
    is_app_limited: bool = False
    # Totals at send time; total_bytes_sent includes the packet itself.
    total_bytes_sent: int = 0
    total_bytes_acked: int = 0
    total_bytes_lost: int = 0
    # Bytes in flight at send time, including the packet itself.
    bytes_in_flight: int = 0


@dataclass(frozen=True)
class ExtraAckedEvent:
    """One measurement of bytes acknowledged beyond what the bandwidth explains."""

    extra_acked: int = 0
    bytes_acked: int = 0
    time_delta: int = 0
    round: int = 0


def _compare_extra_acked(a: ExtraAckedEvent, b: ExtraAckedEvent) -> int:
    if a.extra_acked > b.extra_acked:
        return 1
    if a.extra_acked < b.extra_acked:
        return -1
    return 0


class MaxAckHeightTracker:
    """Tracks the degree of ack aggregation over a window of round trips."""

    def __init__(self, window_length: int) -> None:
        self._filter: WindowedFilter[ExtraAckedEvent] = WindowedFilter(
            window_length, _compare_extra_acked, ExtraAckedEvent()
        )
        # Start time and byte count of the current aggregation epoch.
        self._epoch_start_time = 0
        self._epoch_bytes = 0
        # Last packet sent before the current epoch started.
        self._last_sent_packet_before_epoch = INVALID_PACKET_NUMBER
        self._num_ack_aggregation_epochs = 0
        self.ack_aggregation_bandwidth_threshold = 1.0
        self.start_new_aggregation_epoch_after_full_round = False
        self.reduce_extra_acked_on_bandwidth_increase = False

    @property
    def num_ack_aggregation_epochs(self) -> int:
        """Number of aggregation epochs ever started, including the current one."""
        return self._num_ack_aggregation_epochs

    def get(self) -> int:
        """The largest recent extra-acked measurement."""
        return self._filter.best().extra_acked

    def _start_epoch(self, ack_time: int, bytes_acked: int, last_sent_packet_number: int) -> int:
        self._epoch_bytes = bytes_acked
        self._epoch_start_time = ack_time
        self._last_sent_packet_before_epoch = last_sent_packet_number
        self._num_ack_aggregation_epochs += 1
        return 0

    def update(
        self,
        bandwidth_estimate: int,
        is_new_max_bandwidth: bool,
        round_trip_count: int,
        last_sent_packet_number: int,
        last_acked_packet_number: int,
        ack_time: int,
        bytes_acked: int,
    ) -> int:
        """Account for an ack event; return the bytes acked beyond the estimate."""
        if self.reduce_extra_acked_on_bandwidth_increase and is_new_max_bandwidth:
            # Recompute the kept heights against the new bandwidth and reinsert them.
            kept = (self._filter.best(), self._filter.second_best(), self._filter.third_best())
            self._filter.clear()
            for event in kept:
                expected = bytes_from_bandwidth_and_time_delta(bandwidth_estimate, event.time_delta)
                if expected < event.bytes_acked:
                    event = replace(event, extra_acked=event.bytes_acked - expected)
                    self._filter.update(event, event.round)

        # Once a packet sent after the epoch began is acked, start a new epoch.
        force_new_epoch = (
            self.start_new_aggregation_epoch_after_full_round
            and self._last_sent_packet_before_epoch != INVALID_PACKET_NUMBER
            and last_acked_packet_number != INVALID_PACKET_NUMBER
            and last_acked_packet_number > self._last_sent_packet_before_epoch
        )
        if self._epoch_start_time == 0 or force_new_epoch:
            return self._start_epoch(ack_time, bytes_acked, last_sent_packet_number)

        # Bytes expected to be delivered if the bandwidth estimate is right.
        aggregation_delta = ack_time - self._epoch_start_time
        expected_bytes_acked = bytes_from_bandwidth_and_time_delta(bandwidth_estimate, aggregation_delta)
        # The epoch ends once acks arrive no faster than the estimated bandwidth.
        if self._epoch_bytes <= int(self.ack_aggregation_bandwidth_threshold * expected_bytes_acked):
            return self._start_epoch(ack_time, bytes_acked, last_sent_packet_number)

        self._epoch_bytes += bytes_acked
        extra_bytes_acked = self._epoch_bytes - expected_bytes_acked
        self._filter.update(
            ExtraAckedEvent(
                extra_acked=expected_bytes_acked,
                bytes_acked=self._epoch_bytes,
                time_delta=aggregation_delta,
            ),
            round_trip_count,
        )
        return extra_bytes_acked

    def set_filter_window_length(self, length: int) -> None:
        self._filter.set_window_length(length)

    def reset(self, new_height: int, new_time: int) -> None:
        """Replace all recorded heights with a single one."""
        self._filter.reset(ExtraAckedEvent(extra_acked=new_height, round=new_time), new_time)


@dataclass(frozen=True)
class AckPoint:
    """A point on the ack line: when, and how many bytes had been acked by then."""

    ack_time: int = 0
    total_bytes_acked: int = 0


class RecentAckPoints:
    """The two most recent ack points at distinct times."""

    def __init__(self) -> None:
        self._points = [AckPoint(), AckPoint()]

    def update(self, ack_time: int, total_bytes_acked: int) -> None:
        """Record an ack at ack_time with the running total of acked bytes."""
        latest = self._points[1]
        if ack_time < latest.ack_time:
            latest = replace(latest, ack_time=ack_time)
        elif ack_time > latest.ack_time:
            self._points[0] = latest
            latest = replace(latest, ack_time=ack_time)
        self._points[1] = replace(latest, total_bytes_acked=total_bytes_acked)

    def clear(self) -> None:
        self._points = [AckPoint(), AckPoint()]

    def most_recent_point(self) -> AckPoint:
        return self._points[1]

    def less_recent_point(self) -> AckPoint:
        """The older point if one has been recorded, otherwise the most recent."""
        if self._points[0].total_bytes_acked != 0:
            return self._points[0]
        return self._points[1]