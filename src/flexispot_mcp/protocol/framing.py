"""Frame builder and parser for the desk control box serial link.

Frame layout::

    +-------+--------+------+------------+------------+-------------+-------------+------+
    | Start | Length | Type | Payload lo | Payload hi | Checksum lo | Checksum hi | End  |
    | 0x9B  |  0x06  | 1 B  |    1 B     |    1 B     |     1 B     |     1 B     | 0x9D |
    +-------+--------+------+------------+------------+-------------+-------------+------+

- Every frame, outbound or inbound, is exactly 8 bytes.
- Checksum bytes are carried through untouched. The control box algorithm is
  not known, so they are never computed or verified here.
"""

from __future__ import annotations

from dataclasses import dataclass

START_BYTE = 0x9B
LENGTH_BYTE = 0x06
END_BYTE = 0x9D
HEADER = bytes([START_BYTE, LENGTH_BYTE])
FRAME_SIZE = 8


@dataclass(frozen=True)
class Frame:
    """A parsed 8-byte frame."""

    type: int
    payload: bytes
    checksum: bytes
    raw: bytes

    @property
    def has_end_marker(self) -> bool:
        return self.raw[-1] == END_BYTE

    def __repr__(self) -> str:
        return (
            f"Frame(type=0x{self.type:02X}, "
            f"payload={self.payload.hex(' ')}, "
            f"checksum={self.checksum.hex(' ')})"
        )


def build_frame(
    frame_type: int, payload: bytes, checksum: bytes
) -> bytes:
    """Assemble an 8-byte frame from its fields.

    Args:
        frame_type: Single-byte frame type.
        payload: Two payload bytes (lo, hi).
        checksum: Two checksum bytes (lo, hi), copied verbatim.

    Returns:
        The frame as an immutable ``bytes`` object.
    """
    if not 0 <= frame_type <= 0xFF:
        raise ValueError(f"Frame type must be 0-255, got {frame_type}")
    if len(payload) != 2:
        raise ValueError(f"Payload must be 2 bytes, got {len(payload)}")
    if len(checksum) != 2:
        raise ValueError(f"Checksum must be 2 bytes, got {len(checksum)}")
    return HEADER + bytes([frame_type]) + payload + checksum + bytes([END_BYTE])


def parse_frame(data: bytes) -> Frame | None:
    """Parse the frame at the start of ``data``.

    Only the length and the 2-byte header are checked; the end marker is
    recorded on the frame but not required. Bytes after the first 8 are
    ignored.

    Returns:
        A ``Frame``, or ``None`` when ``data`` is shorter than a frame or
        does not begin with ``0x9B 0x06``.
    """
    if len(data) < FRAME_SIZE:
        return None
    if data[0] != START_BYTE or data[1] != LENGTH_BYTE:
        return None

    raw = bytes(data[:FRAME_SIZE])
    return Frame(type=raw[2], payload=raw[3:5], checksum=raw[5:7], raw=raw)


def find_frames(buffer: bytearray) -> list[Frame]:
    """Extract every complete, end-marked frame from ``buffer`` in place.

    Bytes before a header are discarded. A header whose eighth byte is not
    the end marker is treated as noise and scanning resumes one byte later.
    An incomplete trailing frame is left in the buffer for the next call.
    """
    frames: list[Frame] = []
    while True:
        start = buffer.find(HEADER)
        if start < 0:
            # Keep a lone trailing start byte, it may be half of a header
            keep = 1 if buffer[-1:] == bytes([START_BYTE]) else 0
            del buffer[: len(buffer) - keep]
            return frames
        if start:
            del buffer[:start]
        if len(buffer) < FRAME_SIZE:
            return frames
        if buffer[FRAME_SIZE - 1] != END_BYTE:
            del buffer[:1]
            continue
        frame = parse_frame(bytes(buffer[:FRAME_SIZE]))
        del buffer[:FRAME_SIZE]
        if frame is not None:
            frames.append(frame)
