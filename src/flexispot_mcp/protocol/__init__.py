"""Protocol layer: frame layout, the command table, and telemetry decoding."""

from .framing import Frame, build_frame, parse_frame
from .commands import Command, COMMAND_FRAMES, encode
from .parser import FrameDecoder, HeightReading, decode_frame
