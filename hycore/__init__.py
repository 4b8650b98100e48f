"""Building blocks of a QUIC-based proxy server: protocol, UDP sessions, relaying, bandwidth estimation."""

__version__ = "0.1.0"