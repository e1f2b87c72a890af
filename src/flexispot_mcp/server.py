"""MCP server entry point for FlexiSpot standing desks.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from mcp.server.fastmcp import FastMCP

from .desk import DeskController
from .errors import DeskError
from .models.events import (
    DeskEvent,
    ErrorOccurred,
    EventBus,
    StatusChanged,
)
from .protocol.commands import (
    COMMAND_FRAMES,
    COMMAND_LABELS,
    MOTION_COMMANDS,
    PRESET_COMMANDS,
    Command,
    resolve_command,
)
from .protocol.parser import MAX_HEIGHT_CM, MIN_HEIGHT_CM
from .transport.serial_connection import (
    BAUD_RATE,
    SerialConfig,
    SerialSession,
    enumerate_ports,
)

logger = logging.getLogger(__name__)

PORT_ENV_VAR = "FLEXISPOT_PORT"

mcp = FastMCP(
    "flexispot-desk",
    instructions="MCP server for FlexiSpot / Loctek motorized standing desks",
)

# One desk per server process; the controller itself holds no global state
_desk: DeskController | None = None
_last_status: str = ""
_last_error: str = ""


def _record_event(event: DeskEvent) -> None:
    global _last_status, _last_error
    if isinstance(event, StatusChanged):
        _last_status = event.text
    elif isinstance(event, ErrorOccurred):
        _last_error = event.message


def _get_desk() -> DeskController:
    """Get the connected desk, raising if not connected."""
    if _desk is None or not _desk.is_connected:
        raise RuntimeError(
            "Not connected to a desk. Use the 'connect' tool first."
        )
    return _desk


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_ports() -> dict[str, Any]:
    """List serial ports the desk control box may be attached to."""
    try:
        ports = enumerate_ports()
    except DeskError as e:
        return {"error": str(e)}
    return {
        "ports": [{"device": dev, "description": desc} for dev, desc in ports],
    }


@mcp.tool()
async def connect(port: str | None = None) -> dict[str, Any]:
    """Open the serial connection to the desk control box.

    Args:
        port: Serial device (e.g. /dev/ttyUSB0, COM3). Defaults to the
              FLEXISPOT_PORT environment variable.
    """
    global _desk
    if _desk is not None and _desk.is_connected:
        return {
            "connected": True,
            "message": "Already connected",
            "port": _desk.session.config.port,
        }

    port = port or os.environ.get(PORT_ENV_VAR)
    if not port:
        return {"error": f"No port given and {PORT_ENV_VAR} is not set"}

    bus = EventBus()
    bus.subscribe(_record_event)
    desk = DeskController(SerialSession(SerialConfig(port=port)), bus)
    try:
        await desk.connect()
    except DeskError as e:
        return {"connected": False, "error": str(e)}

    _desk = desk
    return {"connected": True, "port": port, "baud_rate": BAUD_RATE}


@mcp.tool()
async def disconnect() -> dict[str, bool]:
    """Stop any movement and close the connection to the desk."""
    global _desk
    if _desk is None:
        return {"disconnected": True}
    await _desk.disconnect()
    _desk = None
    return {"disconnected": True}


@mcp.tool()
def get_status() -> dict[str, Any]:
    """Connection state, movement state, last height and last messages."""
    result: dict[str, Any] = {"connected": False}
    if _desk is not None:
        result.update(_desk.status())
    result["last_status"] = _last_status
    result["last_error"] = _last_error
    return result


# ─── MOVEMENT TOOLS ───────────────────────────────────────────────────

@mcp.tool()
async def send_command(command: str) -> dict[str, Any]:
    """Send a single command frame to the desk.

    Args:
        command: One of WAKE_UP, UP, DOWN, PRESET1, PRESET2, SITTING, STANDING.
    """
    desk = _get_desk()
    try:
        await desk.send(command)
    except DeskError as e:
        return {"error": str(e)}
    return {"sent": resolve_command(command).value}


@mcp.tool()
async def move_to_preset(preset: str) -> dict[str, Any]:
    """Move the desk to a stored position.

    Args:
        preset: PRESET1, PRESET2, SITTING or STANDING.
    """
    desk = _get_desk()
    try:
        await desk.send_preset(preset)
    except (DeskError, ValueError) as e:
        return {"error": str(e)}
    return {"moving_to": resolve_command(preset).value}


@mcp.tool()
async def start_moving(direction: str) -> dict[str, Any]:
    """Start moving the desk up or down until stop_moving is called.

    Args:
        direction: "up" or "down".
    """
    desk = _get_desk()
    try:
        cmd = resolve_command(direction)
    except DeskError as e:
        return {"error": str(e)}
    if cmd not in MOTION_COMMANDS:
        return {"error": f"Direction must be up or down, got {direction!r}"}

    await desk.start_continuous(cmd)
    if not desk.is_moving:
        return {"moving": False, "error": _last_error}
    return {"moving": True, "direction": cmd.value}


@mcp.tool()
async def stop_moving() -> dict[str, Any]:
    """Stop continuous movement."""
    desk = _get_desk()
    await desk.stop_continuous()
    return {"moving": False, "height_cm": desk.last_height}


@mcp.tool()
async def wake_up() -> dict[str, Any]:
    """Switch the desk display on so it starts reporting its height."""
    desk = _get_desk()
    try:
        await desk.send(Command.WAKE_UP)
    except DeskError as e:
        return {"error": str(e)}
    return {"sent": Command.WAKE_UP.value}


@mcp.tool()
def get_height() -> dict[str, Any]:
    """Most recent height reported by the desk, in centimetres."""
    desk = _get_desk()
    height = desk.last_height
    if height is None:
        return {
            "height_cm": None,
            "message": "No height reported yet. Try the wake_up tool.",
        }
    return {
        "height_cm": height,
        "in_range": MIN_HEIGHT_CM <= height <= MAX_HEIGHT_CM,
    }


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("flexispot://desk/status")
def resource_desk_status() -> str:
    """Connection and movement state."""
    if _desk is None:
        return json.dumps({"connected": False})
    return json.dumps(_desk.status())


@mcp.resource("flexispot://desk/height")
def resource_desk_height() -> str:
    """Last reported height."""
    height = _desk.last_height if _desk is not None else None
    return json.dumps({"height_cm": height})


@mcp.resource("flexispot://catalog/commands")
def resource_command_catalog() -> str:
    """All commands with their frames."""
    commands = [
        {
            "name": cmd.value,
            "label": COMMAND_LABELS[cmd],
            "frame": frame.hex(" "),
            "continuous": cmd in MOTION_COMMANDS,
            "preset": cmd in PRESET_COMMANDS,
        }
        for cmd, frame in COMMAND_FRAMES.items()
    ]
    return json.dumps({"commands": commands, "count": len(commands)})


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def adjust_height(target_cm: float) -> str:
    """Guide the AI to bring the desk to a target height.

    Args:
        target_cm: Desired height in centimetres.
    """
    return f"""Bring the desk to {target_cm} cm.
Steps:
- Call get_height. If no height is known, call wake_up and check again.
- Use start_moving with "up" or "down" toward the target.
- Poll get_height and call stop_moving once within 0.5 cm of the target.
- The desk covers roughly {MIN_HEIGHT_CM:.0f}-{MAX_HEIGHT_CM:.0f} cm.

Prefer move_to_preset (SITTING, STANDING, PRESET1, PRESET2) when a stored
position is close to the target."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
