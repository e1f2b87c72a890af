"""Command set and the static command frame table.

Every command is a fixed 8-byte frame. The frames are built once at import
time and never change; the checksum bytes are the values the control box
accepts and are copied as-is.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping

from ..errors import UnknownCommandError
from .framing import build_frame

COMMAND_FRAME_TYPE = 0x02


class Command(str, Enum):
    """Commands understood by the control box."""

    WAKE_UP = "WAKE_UP"
    UP = "UP"
    DOWN = "DOWN"
    PRESET1 = "PRESET1"
    PRESET2 = "PRESET2"
    SITTING = "SITTING"
    STANDING = "STANDING"


# (payload lo, payload hi, checksum lo, checksum hi)
_COMMAND_FIELDS: dict[Command, tuple[int, int, int, int]] = {
    Command.WAKE_UP: (0x00, 0x00, 0x6C, 0xA1),
    Command.UP: (0x01, 0x00, 0xFC, 0xA0),
    Command.DOWN: (0x02, 0x00, 0x0C, 0xA0),
    Command.PRESET1: (0x04, 0x00, 0xAC, 0xA3),
    Command.PRESET2: (0x08, 0x00, 0xAC, 0xA6),
    Command.SITTING: (0x00, 0x01, 0xAC, 0x60),
    Command.STANDING: (0x10, 0x00, 0xAC, 0xAC),
}

COMMAND_FRAMES: Mapping[Command, bytes] = MappingProxyType({
    cmd: build_frame(COMMAND_FRAME_TYPE, bytes(fields[:2]), bytes(fields[2:]))
    for cmd, fields in _COMMAND_FIELDS.items()
})

MOTION_COMMANDS = frozenset({Command.UP, Command.DOWN})
PRESET_COMMANDS = frozenset({
    Command.PRESET1,
    Command.PRESET2,
    Command.SITTING,
    Command.STANDING,
})

# Human-readable labels used in status messages
COMMAND_LABELS: dict[Command, str] = {
    Command.WAKE_UP: "wake up",
    Command.UP: "up",
    Command.DOWN: "down",
    Command.PRESET1: "preset 1",
    Command.PRESET2: "preset 2",
    Command.SITTING: "sitting",
    Command.STANDING: "standing",
}


def resolve_command(command: Command | str) -> Command:
    """Turn a ``Command`` or a command name into a ``Command``.

    Names are matched case-insensitively, ``"wake-up"`` and ``"wake_up"``
    both resolve to ``Command.WAKE_UP``.

    Raises:
        UnknownCommandError: If the name is not in the command table.
    """
    if isinstance(command, Command):
        return command
    if isinstance(command, str):
        key = command.strip().upper().replace("-", "_")
        try:
            return Command(key)
        except ValueError:
            pass
    raise UnknownCommandError(
        f"Unknown command {command!r}. Valid: {[c.value for c in Command]}"
    )


def encode(command: Command | str) -> bytes:
    """Return the 8-byte frame for a command."""
    return COMMAND_FRAMES[resolve_command(command)]
