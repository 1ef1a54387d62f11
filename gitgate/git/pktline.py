"""Pkt-line framing used by the Git smart transports.

A pkt-line is a 4-digit lowercase hex length (counting the header itself)
followed by the payload. `0000` is the flush packet.

Protocol Reference:
- https://git-scm.com/docs/protocol-common#_pkt_line_format
"""

from typing import Tuple

from gitgate.core import GitGatewayError, TransportService

FLUSH_PKT = b"0000"
HEADER_SIZE = 4
MAX_PKT_LENGTH = 0xFFFF
_HEX_DIGITS = b"0123456789abcdefABCDEF"


class MalformedFrame(GitGatewayError, ValueError):
    """Raised when a pkt-line header does not describe the bytes it frames."""


def encode_line(payload: bytes) -> bytes:
    """Format data as a pkt-line."""
    length = len(payload) + HEADER_SIZE
    if length > MAX_PKT_LENGTH:
        raise MalformedFrame(
            f"Payload of {len(payload)} bytes does not fit in a pkt-line"
        )
    return f"{length:04x}".encode("ascii") + payload


def encode_flush() -> bytes:
    """Return a flush packet (0000)."""
    return FLUSH_PKT


def decode_header(header: bytes) -> int:
    """Return the length declared by a 4-byte pkt-line header."""
    if len(header) != HEADER_SIZE:
        raise MalformedFrame(f"Truncated pkt-line header: {header!r}")
    # int() alone would accept signs, underscores and whitespace
    if not all(c in _HEX_DIGITS for c in header):
        raise MalformedFrame(f"Invalid pkt-line header: {header!r}")
    return int(header, 16)


def decode_line(data: bytes) -> Tuple[int, bytes]:
    """Decode exactly one pkt-line.

    Returns `(declared_length, payload)`; a flush packet decodes to `(0, b"")`.
    The declared length must match `len(data)` exactly.
    """
    length = decode_header(data[:HEADER_SIZE])

    if length == 0:
        if len(data) != HEADER_SIZE:
            raise MalformedFrame("Trailing bytes after flush packet")
        return 0, b""
    if length < HEADER_SIZE:
        raise MalformedFrame(f"Invalid pkt-line length: {length}")
    if length != len(data):
        raise MalformedFrame(
            f"Declared pkt-line length {length} does not match {len(data)} bytes"
        )
    return length, data[HEADER_SIZE:]


def service_prelude(service: TransportService) -> bytes:
    """Return the `# service=...` line and flush sent before an advertisement."""
    return encode_line(f"# service={service.service_name}\n".encode("ascii")) + encode_flush()
