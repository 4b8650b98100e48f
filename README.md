# hycore

Building blocks of a QUIC-based proxy server, in pure Python with no
third-party dependencies.

## What is inside

- `hycore.protocol` holds the wire protocol:
  - authentication headers: `AuthRequest`, `AuthResponse`, `auth_request_from_headers`,
    `auth_request_to_headers`, `auth_response_from_headers`, `auth_response_to_headers`;
  - TCP request and response framing: `read_tcp_request`, `write_tcp_request`,
    `read_tcp_response`, `write_tcp_response`;
  - QUIC variable-length integers: `varint_len`, `varint_encode`, `read_varint`;
  - the UDP datagram format: `UDPMessage`, `parse_udp_message`.

  Malformed input raises `ProtocolError`, and a stream that ends too early raises `EOFError`.
- `hycore.frag` splits oversized UDP messages with `frag_udp_message` and
  reassembles them with `Defragger`. A `Defragger` handles one packet ID at a time.
- `hycore.udp` provides `UDPSessionManager`, which runs NAT-style UDP sessions.
  A session opens for each new session ID and closes after a set idle time.
  It works through an I/O object with `receive_message()`, `send_message(message)` and
  `udp(addr)`, and an event logger with `new(session_id, addr)` and
  `close(session_id, err)`. `send_message_auto_frag` sends a message whole.
  If the sender raises `DatagramTooLargeError`, it sends the message again as fragments.
- `hycore.relay` copies streams both ways with threads:
  - `copy_two_way` copies without reporting;
  - `copy_two_way_with_logger` reports every chunk to a traffic logger. When the
    logger returns `False` it raises `DisconnectRequested`.
- `hycore.congestion` holds parts of a BBR-style bandwidth estimator:
  - `bandwidth`: units, `bandwidth_from_delta`, `AckedPacketInfo`, `LostPacketInfo`,
    `DefaultClock`;
  - `ringbuffer.RingBuffer`;
  - `windowed_filter.WindowedFilter`, with `max_filter` and `min_filter`;
  - `packet_queue.PacketNumberIndexedQueue`;
  - `ack_height.MaxAckHeightTracker` and `ack_height.RecentAckPoints`;
  - `sampler.BandwidthSampler`, which produces a bandwidth sample for each
    acknowledged packet.

  Times in these modules are integer nanoseconds, and bandwidths are bits per second.

## Example

```python
import io
from hycore.protocol import (
    UDPMessage, parse_udp_message, read_tcp_request, read_varint, write_tcp_request,
)
from hycore.frag import Defragger, frag_udp_message

buf = io.BytesIO()
write_tcp_request(buf, "example.com:443")
buf.seek(0)
read_varint(buf)  # the frame type, normally consumed by the frame dispatcher
assert read_tcp_request(buf) == "example.com:443"

msg = UDPMessage(session_id=1, packet_id=7, frag_id=0, frag_count=1,
                 addr="example.com:53", data=b"x" * 100)
assert parse_udp_message(msg.serialize()).data == msg.data

defragger = Defragger()
whole = None
for part in frag_udp_message(msg, 40):
    whole = defragger.feed(part) or whole
assert whole.data == msg.data
```

## What it does not do

This package is not a working proxy server. It has none of the following:

- a QUIC or TLS transport, an HTTP/3 handler or a listener;
- authentication logic;
- server configuration or validation;
- default outbound connections;
- a command to run.

Its congestion-control support stops at bandwidth sampling. It has no pacer and no
complete congestion-control sender that could drive a connection. Users supply
transport and outbound connections themselves, through the small interfaces that
`hycore.udp` and `hycore.relay` expect.

## Running the tests

```
pip install -e ".[test]"
pytest
```