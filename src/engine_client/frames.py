"""Reader for the engine's multiplexed stream framing.

Non-tty attach, exec and log streams interleave stdout and stderr as
frames. Each frame starts with an 8-byte header: one byte of stream type,
three bytes of padding, then a big-endian uint32 payload length. Tty
sessions are not framed at all and should be read as raw bytes.
"""

import io
import struct
from typing import Iterator, NamedTuple

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxI")

STDIN = 0
STDOUT = 1
STDERR = 2
SYSTEMERR = 3


class Frame(NamedTuple):
    stream: int
    payload: bytes


def parse_header(header: bytes) -> tuple[int, int]:
    """Return (stream type, payload length) for an 8-byte frame header."""
    if len(header) != HEADER_SIZE:
        raise ValueError(f"frame header must be {HEADER_SIZE} bytes, got {len(header)}")
    return _HEADER.unpack(header)


def read_frames(reader) -> Iterator[Frame]:
    """Yield frames from a readable binary stream until it is exhausted.

    A stream that ends partway through a frame raises EOFError.
    """
    while True:
        header = _read_exact(reader, HEADER_SIZE)
        if not header:
            return
        if len(header) < HEADER_SIZE:
            raise EOFError("stream ended inside a frame header")
        stream, length = parse_header(header)
        payload = _read_exact(reader, length)
        if len(payload) < length:
            raise EOFError(f"stream ended {length - len(payload)} bytes into a frame")
        yield Frame(stream, payload)


def split_frames(data: bytes) -> list[Frame]:
    """Split an already-buffered multiplexed body into frames.

    A body that ends partway through a frame raises EOFError, as with
    ``read_frames``.
    """
    return list(read_frames(io.BytesIO(data)))


def _read_exact(reader, size: int) -> bytes:
    if size == 0:
        return b""
    buf = bytearray()
    while len(buf) < size:
        chunk = reader.read(size - len(buf))
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)
