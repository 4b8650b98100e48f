"""Per-packet bandwidth sampling from the slopes of the sent and acked byte curves.

A sample is taken for every acknowledged packet. It is based on the packet
itself (sent at S_1, acked at A_1) and on the most recently acknowledged
packet at the moment it was sent (S_0, A_0):

    send_rate = (bytes(S_1) - bytes(S_0)) / (time(S_1) - time(S_0))
    ack_rate = (bytes(A_1) - bytes(A_0)) / (time(A_1) - time(A_0))
    sample = min(send_rate, ack_rate)

Once on_app_limited() is called, every packet sent is marked app limited
until a packet sent after that call is acknowledged.

Times are integer nanoseconds; a time of 0 means "not set". Bandwidths are
in bits per second, sizes in bytes.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from hycore.congestion.ack_height import AckPoint, MaxAckHeightTracker, RecentAckPoints, SendTimeState
from hycore.congestion.bandwidth import (
    INF_BANDWIDTH,
    AckedPacketInfo,
    LostPacketInfo,
    bandwidth_from_delta,
)
from hycore.congestion.packet_queue import INVALID_PACKET_NUMBER, PacketNumberIndexedQueue
from hycore.congestion.ringbuffer import RingBuffer

INF_RTT = (1 << 63) - 1


def _valid_copy(state: SendTimeState) -> SendTimeState:
    return replace(state, is_valid=True)


@dataclass
class BandwidthSample:
    """The result of acknowledging a single packet."""

    # Zero if no valid bandwidth sample is available.
    bandwidth: int = 0
    # Zero if no RTT sample is available; delayed ack time is not removed.
    rtt: int = 0
    # Send rate between this packet and the one acked before it was sent.
    send_rate: int = INF_BANDWIDTH
    state_at_send: SendTimeState = field(default_factory=SendTimeState)


@dataclass
class CongestionEventSample:
    """The combined result of one congestion event (a batch of acks and losses)."""

    # Largest bandwidth sample among the acked packets, 0 if none.
    sample_max_bandwidth: int = 0
    # Whether sample_max_bandwidth came from an app-limited sample.
    sample_is_app_limited: bool = False
    # Smallest RTT sample among the acked packets, INF_RTT if none.
    sample_rtt: int = INF_RTT
    # Largest number of bytes acked while any one acked packet was in flight.
    sample_max_inflight: int = 0
    # Send state of the last acked packet, or of the last lost one if none were acked.
    last_packet_send_state: SendTimeState = field(default_factory=SendTimeState)
    # Bytes acked beyond what the bandwidth explains; larger means more aggregation.
    extra_acked: int = 0


@dataclass
class ConnectionStateOnSentPacket:
    """A sent packet and the sampler's view of the last acked packet at that moment."""

    sent_time: int
    size: int
    total_bytes_sent_at_last_acked_packet: int
    last_acked_packet_sent_time: int
    last_acked_packet_ack_time: int
    send_time_state: SendTimeState

    @classmethod
    def snapshot(
        cls, sent_time: int, size: int, bytes_in_flight: int, sampler: BandwidthSampler
    ) -> ConnectionStateOnSentPacket:
        """Record the sampler's state; bytes_in_flight includes the packet itself."""
        return cls(
            sent_time=sent_time,
            size=size,
            total_bytes_sent_at_last_acked_packet=sampler._total_bytes_sent_at_last_acked_packet,
            last_acked_packet_sent_time=sampler._last_acked_packet_sent_time,
            last_acked_packet_ack_time=sampler._last_acked_packet_ack_time,
            send_time_state=SendTimeState(
                is_valid=True,
                is_app_limited=sampler.is_app_limited,
                total_bytes_sent=sampler.total_bytes_sent,
                total_bytes_acked=sampler.total_bytes_acked,
                total_bytes_lost=sampler.total_bytes_lost,
                bytes_in_flight=bytes_in_flight,
            ),
        )


class BandwidthSampler:
    """Tracks sent and acknowledged packets and produces a bandwidth sample per ack."""

    def __init__(self, max_ack_height_tracker_window_length: int) -> None:
        self._total_bytes_sent = 0
        self._total_bytes_acked = 0
        self._total_bytes_lost = 0
        self._total_bytes_neutered = 0
        # Valid only while _last_acked_packet_sent_time is set.
        self._total_bytes_sent_at_last_acked_packet = 0
        self._last_acked_packet_sent_time = 0
        self._last_acked_packet_ack_time = 0
        self._last_sent_packet = INVALID_PACKET_NUMBER
        self._last_acked_packet = INVALID_PACKET_NUMBER
        self._is_app_limited = False
        self._end_of_app_limited_phase = INVALID_PACKET_NUMBER
        self._connection_state_map: PacketNumberIndexedQueue[ConnectionStateOnSentPacket] = (
            PacketNumberIndexedQueue()
        )
        self._recent_ack_points = RecentAckPoints()
        self._a0_candidates: RingBuffer[AckPoint] = RingBuffer()
        self._max_ack_height_tracker = MaxAckHeightTracker(max_ack_height_tracker_window_length)
        self._total_bytes_acked_after_last_ack_event = 0
        self._overestimate_avoidance = False
        self.limit_max_ack_height_tracker_by_send_rate = False

    @property
    def total_bytes_sent(self) -> int:
        return self._total_bytes_sent

    @property
    def total_bytes_acked(self) -> int:
        return self._total_bytes_acked

    @property
    def total_bytes_lost(self) -> int:
        return self._total_bytes_lost

    @property
    def total_bytes_neutered(self) -> int:
        return self._total_bytes_neutered

    @property
    def is_app_limited(self) -> bool:
        return self._is_app_limited

    @property
    def end_of_app_limited_phase(self) -> int:
        return self._end_of_app_limited_phase

    @property
    def num_ack_aggregation_epochs(self) -> int:
        return self._max_ack_height_tracker.num_ack_aggregation_epochs

    @property
    def is_overestimate_avoidance_enabled(self) -> bool:
        return self._overestimate_avoidance

    @property
    def ack_aggregation_bandwidth_threshold(self) -> float:
        return self._max_ack_height_tracker.ack_aggregation_bandwidth_threshold

    def max_ack_height(self) -> int:
        """The largest recent ack aggregation, in bytes."""
        return self._max_ack_height_tracker.get()

    def set_max_ack_height_tracker_window_length(self, length: int) -> None:
        self._max_ack_height_tracker.set_filter_window_length(length)

    def reset_max_ack_height_tracker(self, new_height: int, new_time: int) -> None:
        self._max_ack_height_tracker.reset(new_height, new_time)

    def set_start_new_aggregation_epoch_after_full_round(self, value: bool) -> None:
        self._max_ack_height_tracker.start_new_aggregation_epoch_after_full_round = value

    def set_reduce_extra_acked_on_bandwidth_increase(self, value: bool) -> None:
        self._max_ack_height_tracker.reduce_extra_acked_on_bandwidth_increase = value

    def enable_overestimate_avoidance(self) -> None:
        """Choose A0 points from past aggregation epochs to avoid overestimates."""
        if self._overestimate_avoidance:
            return
        self._overestimate_avoidance = True
        self._max_ack_height_tracker.ack_aggregation_bandwidth_threshold = 2.0

    def on_packet_sent(
        self,
        sent_time: int,
        packet_number: int,
        size: int,
        bytes_in_flight: int,
        is_retransmittable: bool,
    ) -> None:
        """Record a sent packet; bytes_in_flight excludes the packet itself."""
        self._last_sent_packet = packet_number
        if not is_retransmittable:
            return

        self._total_bytes_sent += size

        # With nothing in flight, the start of this transmission serves as the
        # A_0 point. This underestimates somewhat, but yields samples where
        # there would otherwise be none, notably at the start of a connection.
        if bytes_in_flight == 0:
            self._last_acked_packet_ack_time = sent_time
            if self._overestimate_avoidance:
                self._recent_ack_points.clear()
                self._recent_ack_points.update(sent_time, self._total_bytes_acked)
                self._a0_candidates.clear()
                self._a0_candidates.push_back(self._recent_ack_points.most_recent_point())
            self._total_bytes_sent_at_last_acked_packet = self._total_bytes_sent
            # Ack compression is no concern here: the send rate is effectively infinite.
            self._last_acked_packet_sent_time = sent_time

        self._connection_state_map.emplace(
            packet_number,
            ConnectionStateOnSentPacket.snapshot(sent_time, size, bytes_in_flight + size, self),
        )

    def on_congestion_event(
        self,
        ack_time: int,
        acked_packets: Sequence[AckedPacketInfo],
        lost_packets: Sequence[LostPacketInfo],
        max_bandwidth: int,
        est_bandwidth_upper_bound: int,
        round_trip_count: int,
    ) -> CongestionEventSample:
        """Process a batch of acks and losses and summarise the samples they give."""
        event = CongestionEventSample()

        last_lost_state = SendTimeState()
        for packet in lost_packets:
            state = self.on_packet_lost(packet.packet_number, packet.bytes_lost)
            if state.is_valid:
                last_lost_state = state

        if not acked_packets:
            # Loss-only event: only the send state is filled in.
            event.last_packet_send_state = last_lost_state
            return event

        last_acked_state = SendTimeState()
        max_send_rate = 0
        for packet in acked_packets:
            sample = self._on_packet_acknowledged(ack_time, packet.packet_number)
            if not sample.state_at_send.is_valid:
                continue
            last_acked_state = sample.state_at_send
            if sample.rtt != 0:
                event.sample_rtt = min(event.sample_rtt, sample.rtt)
            if sample.bandwidth > event.sample_max_bandwidth:
                event.sample_max_bandwidth = sample.bandwidth
                event.sample_is_app_limited = sample.state_at_send.is_app_limited
            if sample.send_rate != INF_BANDWIDTH:
                max_send_rate = max(max_send_rate, sample.send_rate)
            inflight_sample = self._total_bytes_acked - last_acked_state.total_bytes_acked
            if inflight_sample > event.sample_max_inflight:
                event.sample_max_inflight = inflight_sample

        if not last_lost_state.is_valid:
            event.last_packet_send_state = last_acked_state
        elif not last_acked_state.is_valid:
            event.last_packet_send_state = last_lost_state
        elif lost_packets[-1].packet_number > acked_packets[-1].packet_number:
            # A late loss alarm can declare the later of two packets lost after
            # the earlier one was acked.
            event.last_packet_send_state = last_lost_state
        else:
            event.last_packet_send_state = last_acked_state

        is_new_max_bandwidth = event.sample_max_bandwidth > max_bandwidth
        max_bandwidth = max(max_bandwidth, event.sample_max_bandwidth)
        if self.limit_max_ack_height_tracker_by_send_rate:
            max_bandwidth = max(max_bandwidth, max_send_rate)

        event.extra_acked = self._on_ack_event_end(
            min(est_bandwidth_upper_bound, max_bandwidth), is_new_max_bandwidth, round_trip_count
        )
        return event

    def on_packet_lost(self, packet_number: int, bytes_lost: int) -> SendTimeState:
        """Record a loss; return the packet's send state, invalid if unknown."""
        self._total_bytes_lost += bytes_lost
        sent = self._connection_state_map.get_entry(packet_number)
        if sent is None:
            return SendTimeState()
        return _valid_copy(sent.send_time_state)

    def on_packet_neutered(self, packet_number: int) -> None:
        """Forget a packet that will be neither acked nor lost."""

        def count(sent: ConnectionStateOnSentPacket) -> None:
            self._total_bytes_neutered += sent.size

        self._connection_state_map.remove(packet_number, count)

    def on_app_limited(self) -> None:
        """Enter the app-limited phase until a packet sent from now on is acked."""
        self._is_app_limited = True
        self._end_of_app_limited_phase = self._last_sent_packet

    def remove_obsolete_packets(self, least_unacked: int) -> None:
        """Drop records of packets below least_unacked that were never acked or lost."""
        self._connection_state_map.remove_up_to(least_unacked)

    def _choose_a0_point(self, total_bytes_acked: int) -> AckPoint | None:
        candidates = self._a0_candidates
        if candidates.empty():
            return None
        if len(candidates) == 1:
            return candidates.front()
        for index in range(1, len(candidates)):
            if candidates.offset(index).total_bytes_acked > total_bytes_acked:
                chosen = candidates.offset(index - 1)
                for _ in range(index - 1):
                    candidates.pop_front()
                return chosen
        chosen = candidates.back()
        for _ in range(len(candidates) - 1):
            candidates.pop_front()
        return chosen

    def _on_packet_acknowledged(self, ack_time: int, packet_number: int) -> BandwidthSample:
        sample = BandwidthSample()
        self._last_acked_packet = packet_number
        sent = self._connection_state_map.get_entry(packet_number)
        if sent is None:
            return sample

        self._total_bytes_acked += sent.size
        self._total_bytes_sent_at_last_acked_packet = sent.send_time_state.total_bytes_sent
        self._last_acked_packet_sent_time = sent.sent_time
        self._last_acked_packet_ack_time = ack_time
        if self._overestimate_avoidance:
            self._recent_ack_points.update(ack_time, self._total_bytes_acked)

        if self._is_app_limited and (
            self._end_of_app_limited_phase == INVALID_PACKET_NUMBER
            or packet_number > self._end_of_app_limited_phase
        ):
            self._is_app_limited = False

        # No packet had been acked when this one was sent: nothing to sample.
        if sent.last_acked_packet_sent_time == 0:
            return sample

        # An infinite send rate means only the ack rate is used.
        send_rate = INF_BANDWIDTH
        if sent.sent_time > sent.last_acked_packet_sent_time:
            send_rate = bandwidth_from_delta(
                sent.send_time_state.total_bytes_sent - sent.total_bytes_sent_at_last_acked_packet,
                sent.sent_time - sent.last_acked_packet_sent_time,
            )

        a0 = None
        if self._overestimate_avoidance:
            a0 = self._choose_a0_point(sent.send_time_state.total_bytes_acked)
        if a0 is None:
            a0 = AckPoint(sent.last_acked_packet_ack_time, sent.send_time_state.total_bytes_acked)

        # The ack time must move forward, or the slope is undefined.
        if ack_time - a0.ack_time <= 0:
            return sample

        ack_rate = bandwidth_from_delta(
            self._total_bytes_acked - a0.total_bytes_acked, ack_time - a0.ack_time
        )
        sample.bandwidth = min(send_rate, ack_rate)
        sample.rtt = ack_time - sent.sent_time
        sample.send_rate = send_rate
        sample.state_at_send = _valid_copy(sent.send_time_state)
        return sample

    def _on_ack_event_end(
        self, bandwidth_estimate: int, is_new_max_bandwidth: bool, round_trip_count: int
    ) -> int:
        newly_acked = self._total_bytes_acked - self._total_bytes_acked_after_last_ack_event
        if newly_acked == 0:
            return 0
        self._total_bytes_acked_after_last_ack_event = self._total_bytes_acked
        extra_acked = self._max_ack_height_tracker.update(
            bandwidth_estimate,
            is_new_max_bandwidth,
            round_trip_count,
            self._last_sent_packet,
            self._last_acked_packet,
            self._last_acked_packet_ack_time,
            newly_acked,
        )
        # A new epoch began: the last ack point of the previous one is an A0 candidate.
        if self._overestimate_avoidance and extra_acked == 0:
            self._a0_candidates.push_back(self._recent_ack_points.less_recent_point())
        return extra_acked