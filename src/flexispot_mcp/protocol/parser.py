"""Telemetry decoding for frames received from the control box."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models.events import DeskEvent, HeightChanged, StatusChanged
from .framing import Frame, find_frames, parse_frame

logger = logging.getLogger(__name__)

MIN_HEIGHT_CM = 60.0
MAX_HEIGHT_CM = 120.0

# Offsets within an inbound telemetry frame
OFF_DISPLAY = 3   # 3 display bytes
OFF_HEIGHT = 5    # 2 bytes, big-endian, tenths of a centimetre


@dataclass(frozen=True)
class HeightReading:
    """Height decoded from a telemetry frame."""

    raw: int
    frame: Frame

    @property
    def height_cm(self) -> float:
        return self.raw / 10.0

    @property
    def in_range(self) -> bool:
        return MIN_HEIGHT_CM <= self.height_cm <= MAX_HEIGHT_CM

    @property
    def is_blank(self) -> bool:
        """True when the control box has not started reporting yet.

        That happens right after connecting, before the wake-up command has
        switched the display on.

        The display range (bytes 3-5) overlaps the high byte of the height
        word at byte 5. A frame with bytes 3-5 all zero is blank even when
        its low byte makes ``raw`` non-zero, so readings below 25.6 cm with
        an empty display never produce a height. A blank display's low byte
        is checksum noise, and such heights are far below the desk's range.
        """
        display = self.frame.raw[OFF_DISPLAY : OFF_DISPLAY + 3]
        return self.raw == 0 or not any(display)

    def __repr__(self) -> str:
        return f"HeightReading(raw={self.raw}, height_cm={self.height_cm})"


def parse_height(frame: Frame) -> HeightReading:
    """Read the height word out of a telemetry frame."""
    raw = (frame.raw[OFF_HEIGHT] << 8) | frame.raw[OFF_HEIGHT + 1]
    return HeightReading(raw=raw, frame=frame)


def frame_events(frame: Frame) -> list[DeskEvent]:
    """Events produced by one accepted frame.

    Blank readings produce nothing. Out-of-range readings are still
    reported, flagged through ``HeightChanged.in_range``.
    """
    reading = parse_height(frame)
    if reading.is_blank:
        logger.debug("Blank height in %r, display not active yet", frame)
        return []

    height = reading.height_cm
    if not reading.in_range:
        logger.warning(
            "Height %.1f cm outside %.0f-%.0f cm",
            height, MIN_HEIGHT_CM, MAX_HEIGHT_CM,
        )
    return [
        HeightChanged(height_cm=height, in_range=reading.in_range),
        StatusChanged(f"Desk height: {height:.1f} cm"),
    ]


def decode_frame(data: bytes) -> list[DeskEvent] | None:
    """Decode a single chunk into events.

    Returns:
        ``None`` if ``data`` is not a frame (shorter than 8 bytes or without
        the ``0x9B 0x06`` header), otherwise the list of events it produces,
        which is empty for blank readings.
    """
    frame = parse_frame(data)
    if frame is None:
        return None
    return frame_events(frame)


class FrameDecoder:
    """Turns inbound byte chunks into events.

    By default every chunk is handled on its own: a chunk is accepted only if
    it is itself at least 8 bytes long and starts with the frame header, and
    nothing is carried over to the next chunk. A frame split across two reads
    is therefore lost.

    With ``reassemble=True`` the decoder buffers bytes across chunks, resyncs
    on the header and yields every complete frame. This mode also requires
    the ``0x9D`` end marker, so it rejects frames the default mode would
    accept.
    """

    # Cap on buffered bytes in reassembling mode
    MAX_BUFFER = 256

    def __init__(self, reassemble: bool = False) -> None:
        self.reassemble = reassemble
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[DeskEvent]:
        """Process one chunk and return the events it completes."""
        if not self.reassemble:
            events = decode_frame(chunk)
            if events is None:
                logger.debug("Dropped %d-byte chunk: %s", len(chunk), chunk.hex(" "))
                return []
            return events

        self._buffer += chunk
        if len(self._buffer) > self.MAX_BUFFER:
            del self._buffer[: len(self._buffer) - self.MAX_BUFFER]
        events: list[DeskEvent] = []
        for frame in find_frames(self._buffer):
            events.extend(frame_events(frame))
        return events

    def reset(self) -> None:
        """Forget any partially received frame."""
        self._buffer.clear()
