"""Wire format of the proxy protocol: auth headers, TCP and UDP framing."""

from __future__ import annotations

import io
import random
import struct
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import BinaryIO

URL_HOST = "hysteria"
URL_PATH = "/auth"

REQUEST_HEADER_AUTH = "Hysteria-Auth"
RESPONSE_HEADER_UDP_ENABLED = "Hysteria-UDP"
COMMON_HEADER_CC_RX = "Hysteria-CC-RX"
COMMON_HEADER_PADDING = "Hysteria-Padding"

STATUS_AUTH_OK = 233

FRAME_TYPE_TCP_REQUEST = 0x401

# Length limits guard against denial-of-service attempts.
MAX_ADDRESS_LENGTH = 2048
MAX_MESSAGE_LENGTH = 2048
MAX_PADDING_LENGTH = 4096

MAX_UDP_SIZE = 4096

_MAX_VARINT_1 = 63
_MAX_VARINT_2 = 16383
_MAX_VARINT_4 = 1073741823
_MAX_VARINT_8 = 4611686018427387903

_MAX_UINT64 = (1 << 64) - 1

PADDING_CHARS = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

_UDP_HEADER = struct.Struct(">IHBB")


class ProtocolError(Exception):
    """Raised when data on the wire violates the protocol."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class Padding:
    """A half-open range [min, max) of random padding lengths."""

    min: int
    max: int

    def generate(self) -> str:
        """Return a random alphanumeric string with a length inside the range."""
        length = random.randrange(self.min, self.max)
        return "".join(random.choices(PADDING_CHARS, k=length))


AUTH_REQUEST_PADDING = Padding(256, 2048)
AUTH_RESPONSE_PADDING = Padding(256, 2048)
TCP_REQUEST_PADDING = Padding(64, 512)
TCP_RESPONSE_PADDING = Padding(128, 1024)


@dataclass
class AuthRequest:
    """What the client sends to the server for authentication."""

    auth: str = ""
    rx: int = 0  # 0 means unknown: the client asks for bandwidth detection


@dataclass
class AuthResponse:
    """What the server sends back once authentication has passed."""

    udp_enabled: bool = False
    rx: int = 0  # 0 means unlimited
    rx_auto: bool = False  # the server asks the client to detect bandwidth


def _get_header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, item in headers.items():
        if key.lower() == lowered:
            return item
    return ""


def _set_header(headers: MutableMapping[str, str], name: str, value: str) -> None:
    lowered = name.lower()
    for key in [k for k in headers if k.lower() == lowered and k != name]:
        del headers[key]
    headers[name] = value


def _parse_uint(text: str) -> int:
    """Parse a base-10 unsigned integer; 0 on bad syntax, the maximum on overflow."""
    if not text or not text.isascii() or not text.isdigit():
        return 0
    return min(int(text), _MAX_UINT64)


_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})


def _parse_bool(text: str) -> bool:
    return text in _TRUE_WORDS


def auth_request_from_headers(headers: Mapping[str, str]) -> AuthRequest:
    """Read an auth request from HTTP headers."""
    return AuthRequest(
        auth=_get_header(headers, REQUEST_HEADER_AUTH),
        rx=_parse_uint(_get_header(headers, COMMON_HEADER_CC_RX)),
    )


def auth_request_to_headers(headers: MutableMapping[str, str], request: AuthRequest) -> None:
    """Write an auth request into HTTP headers, with random padding."""
    _set_header(headers, REQUEST_HEADER_AUTH, request.auth)
    _set_header(headers, COMMON_HEADER_CC_RX, str(request.rx))
    _set_header(headers, COMMON_HEADER_PADDING, AUTH_REQUEST_PADDING.generate())


def auth_response_from_headers(headers: Mapping[str, str]) -> AuthResponse:
    """Read an auth response from HTTP headers."""
    response = AuthResponse(udp_enabled=_parse_bool(_get_header(headers, RESPONSE_HEADER_UDP_ENABLED)))
    rx_text = _get_header(headers, COMMON_HEADER_CC_RX)
    if rx_text == "auto":
        response.rx_auto = True
    else:
        response.rx = _parse_uint(rx_text)
    return response


def auth_response_to_headers(headers: MutableMapping[str, str], response: AuthResponse) -> None:
    """Write an auth response into HTTP headers, with random padding."""
    _set_header(headers, RESPONSE_HEADER_UDP_ENABLED, "true" if response.udp_enabled else "false")
    _set_header(headers, COMMON_HEADER_CC_RX, "auto" if response.rx_auto else str(response.rx))
    _set_header(headers, COMMON_HEADER_PADDING, AUTH_RESPONSE_PADDING.generate())


def varint_len(value: int) -> int:
    """Number of bytes a QUIC variable-length integer takes."""
    if value < 0:
        raise ValueError(f"{value} is negative")
    if value <= _MAX_VARINT_1:
        return 1
    if value <= _MAX_VARINT_2:
        return 2
    if value <= _MAX_VARINT_4:
        return 4
    if value <= _MAX_VARINT_8:
        return 8
    raise ValueError(f"{value:#x} doesn't fit into 62 bits")


def varint_encode(value: int) -> bytes:
    """Encode a QUIC variable-length integer."""
    length = varint_len(value)
    prefix = {1: 0x00, 2: 0x40, 4: 0x80, 8: 0xC0}[length]
    encoded = bytearray(value.to_bytes(length, "big"))
    encoded[0] |= prefix
    return bytes(encoded)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {len(data)}")
        data += chunk
    return bytes(data)


def read_varint(stream: BinaryIO) -> int:
    """Read a QUIC variable-length integer from a binary stream."""
    first = _read_exact(stream, 1)[0]
    length = 1 << (first >> 6)
    value = first & 0x3F
    for byte in _read_exact(stream, length - 1):
        value = (value << 8) | byte
    return value


def _encode_text(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _decode_text(data: bytes) -> str:
    return data.decode("utf-8", "surrogateescape")


def _skip_padding(stream: BinaryIO) -> None:
    padding_len = read_varint(stream)
    if padding_len > MAX_PADDING_LENGTH:
        raise ProtocolError("invalid padding length")
    if padding_len:
        _read_exact(stream, padding_len)


def read_tcp_request(stream: BinaryIO) -> str:
    """Read a TCP request whose frame type has already been consumed; return the address."""
    addr_len = read_varint(stream)
    if addr_len == 0 or addr_len > MAX_ADDRESS_LENGTH:
        raise ProtocolError("invalid address length")
    addr = _read_exact(stream, addr_len)
    _skip_padding(stream)
    return _decode_text(addr)


def write_tcp_request(stream: BinaryIO, addr: str) -> None:
    """Write a complete TCP request frame, including its frame type."""
    addr_bytes = _encode_text(addr)
    padding = TCP_REQUEST_PADDING.generate().encode("ascii")
    stream.write(
        varint_encode(FRAME_TYPE_TCP_REQUEST)
        + varint_encode(len(addr_bytes))
        + addr_bytes
        + varint_encode(len(padding))
        + padding
    )


def read_tcp_response(stream: BinaryIO) -> tuple[bool, str]:
    """Read a TCP response; return (ok, message)."""
    status = _read_exact(stream, 1)[0]
    msg_len = read_varint(stream)
    if msg_len > MAX_MESSAGE_LENGTH:
        raise ProtocolError("invalid message length")
    message = _read_exact(stream, msg_len) if msg_len else b""
    _skip_padding(stream)
    return status == 0, _decode_text(message)


def write_tcp_response(stream: BinaryIO, ok: bool, message: str) -> None:
    """Write a TCP response with a status, a message and random padding."""
    msg_bytes = _encode_text(message)
    padding = TCP_RESPONSE_PADDING.generate().encode("ascii")
    stream.write(
        bytes([0 if ok else 1])
        + varint_encode(len(msg_bytes))
        + msg_bytes
        + varint_encode(len(padding))
        + padding
    )


@dataclass
class UDPMessage:
    """A UDP datagram relayed over the tunnel, possibly one fragment of it."""

    session_id: int = 0
    packet_id: int = 0
    frag_id: int = 0
    frag_count: int = 0
    addr: str = ""
    data: bytes = b""

    def header_size(self) -> int:
        """Size of everything before the payload."""
        addr_len = len(_encode_text(self.addr))
        return 4 + 2 + 1 + 1 + varint_len(addr_len) + addr_len

    def size(self) -> int:
        """Size of the serialized message."""
        return self.header_size() + len(self.data)

    def serialize(self) -> bytes:
        """Encode the message into its wire form."""
        addr_bytes = _encode_text(self.addr)
        return (
            _UDP_HEADER.pack(self.session_id, self.packet_id, self.frag_id, self.frag_count)
            + varint_encode(len(addr_bytes))
            + addr_bytes
            + bytes(self.data)
        )


def parse_udp_message(data: bytes) -> UDPMessage:
    """Decode a UDP message from its wire form."""
    if len(data) < _UDP_HEADER.size:
        raise ProtocolError("message too short")
    session_id, packet_id, frag_id, frag_count = _UDP_HEADER.unpack_from(data)
    reader = io.BytesIO(data[_UDP_HEADER.size:])
    try:
        addr_len = read_varint(reader)
    except EOFError as exc:
        raise ProtocolError("message too short") from exc
    if addr_len == 0 or addr_len > MAX_MESSAGE_LENGTH:
        raise ProtocolError("invalid address length")
    rest = reader.read()
    # At least one byte of data must follow the address.
    if len(rest) <= addr_len:
        raise ProtocolError("invalid message length")
    return UDPMessage(
        session_id=session_id,
        packet_id=packet_id,
        frag_id=frag_id,
        frag_count=frag_count,
        addr=_decode_text(rest[:addr_len]),
        data=bytes(rest[addr_len:]),
    )