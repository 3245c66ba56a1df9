"""MCP server entry point for the disco floor bus.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from mcp.server.fastmcp import FastMCP

from .bus.client import FloorBusClient
from .exceptions import AddressingError, FloorBusError, PortError
from .models.config import BusConfig
from .models.floor import FloorCellList
from .transport.emulated_floor import EmulatedFloor
from .transport.serial_connection import available_ports

logger = logging.getLogger(__name__)

CONFIG_ENV = "DISCO_FLOOR_CONFIG"

mcp = FastMCP(
    "disco-floor",
    instructions="MCP server for an RS-485 LED dance floor",
)

# Global connection state
_client: FloorBusClient | None = None
_emulated: EmulatedFloor | None = None


def _load_config() -> BusConfig:
    path = os.environ.get(CONFIG_ENV)
    if path:
        return BusConfig.load(path)
    return BusConfig()


def _get_client() -> FloorBusClient:
    """Get the connected bus client, raising if not connected."""
    if _client is None or not _client.connected:
        raise RuntimeError(
            "Not connected to the floor. Use the 'connect' tool first."
        )
    return _client


def _cells() -> FloorCellList:
    return _get_client().cells


def _color(r: int, g: int, b: int) -> tuple[int, int, int] | None:
    if all(0 <= c <= 255 for c in (r, g, b)):
        return (r, g, b)
    return None


def _status() -> dict[str, Any]:
    if _client is None:
        return {"connected": False}
    result: dict[str, Any] = {
        "connected": _client.connected,
        "port": _client.config.port,
        "emulated": _emulated is not None,
        "stage": _client.stage.value,
        "running": _client.running,
        "node_count": _client.node_count,
        "frames_per_second": _client.frames_per_second,
    }
    if _client.last_error is not None:
        result["last_error"] = str(_client.last_error)
    return result


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_ports() -> dict[str, Any]:
    """List the serial devices the floor adapter could be connected to."""
    return {
        "ports": [
            {"device": p.device, "description": p.description, "hwid": p.hwid}
            for p in available_ports()
        ]
    }


@mcp.tool()
def connect(port: str | None = None, emulate_nodes: int = 0) -> dict[str, Any]:
    """Open the RS-485 bus.

    Args:
        port: Serial device (e.g. /dev/ttyUSB0). Defaults to the configured port.
        emulate_nodes: When > 0, connect to an emulated floor with this many
            nodes instead of real hardware.
    """
    global _client, _emulated
    if _client is not None and _client.connected:
        return {"connected": True, "message": "Already connected", "port": _client.config.port}

    config = _load_config()
    if emulate_nodes > 0:
        if emulate_nodes > 255:
            return {"error": "An emulated floor holds at most 255 nodes"}
        _emulated = EmulatedFloor(emulate_nodes)
        config.port = port or "emulated"
        _client = FloorBusClient(config, transport=_emulated)
    else:
        _emulated = None
        _client = FloorBusClient(config)

    try:
        _client.connect(port)
    except PortError as e:
        _client = None
        return {"error": str(e)}

    result = _status()
    result["message"] = (
        "Connected. Run assign_addresses to discover the nodes."
        if _client.node_count == 0
        else f"Connected, using {_client.node_count} cached node(s)."
    )
    return result


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Stop the update loop and close the bus."""
    global _client, _emulated
    if _client is None:
        return {"disconnected": True}
    _client.disconnect()
    _client = None
    _emulated = None
    return {"disconnected": True}


@mcp.tool()
def get_status() -> dict[str, Any]:
    """Connection state, bus stage, node count and update rate."""
    return _status()


# ─── BUS CONTROL TOOLS ───────────────────────────────────────────────

@mcp.tool()
def assign_addresses() -> dict[str, Any]:
    """Reset every node and discover the floor.

    Stops the update loop if it is running. Nodes are numbered in the order
    they sit on the daisy chain.
    """
    client = _get_client()
    client.stop()
    try:
        addresses = list(client.assign_addresses())
    except AddressingError as e:
        return {"error": str(e), "node_count": client.node_count}
    return {"addresses": addresses, "node_count": client.node_count}


@mcp.tool()
def run() -> dict[str, Any]:
    """Start sending colors and reading touch sensors continuously."""
    client = _get_client()
    if client.node_count == 0:
        return {"error": "No nodes. Run assign_addresses first."}
    started = client.run()
    return {"running": client.running, "started": started}


@mcp.tool()
def stop() -> dict[str, Any]:
    """Stop the update loop. The bus stays open."""
    client = _get_client()
    client.stop()
    return {"running": client.running}


@mcp.tool()
def send_message(
    command: int,
    destination: int = 0,
    flags: int = 0,
    length: int = 0,
    node_count: int = 0,
    body_hex: str = "",
) -> dict[str, Any]:
    """Send a hand-built message on the bus.

    Args:
        command: Command code (0-255).
        destination: Node address, 0 for broadcast.
        flags: Bit 0 batch mode. Response-expected messages are not supported here.
        length: Body length, or per-node slot size in batch mode.
        node_count: Number of slots in batch mode.
        body_hex: Body bytes as hex, e.g. "ff0000".
    """
    client = _get_client()
    if flags & 0b10:
        return {"error": "Response-expected messages cannot be sent by hand"}
    try:
        body = bytes.fromhex(body_hex)
    except ValueError:
        return {"error": f"Invalid hex body: {body_hex!r}"}
    try:
        client.start_message(command, destination, flags, length, node_count)
        client.send_data(body)
        client.end_message()
    except (ValueError, FloorBusError) as e:
        client.session.abort_message()
        return {"error": str(e)}
    return {"sent": True, "bytes": len(body)}


# ─── FLOOR TOOLS ─────────────────────────────────────────────────────

@mcp.tool()
def set_color(r: int, g: int, b: int) -> dict[str, Any]:
    """Set every cell to one solid color.

    Args:
        r: Red 0-255.
        g: Green 0-255.
        b: Blue 0-255.
    """
    color = _color(r, g, b)
    if color is None:
        return {"error": "Color channels must be 0-255"}
    _cells().set_color(color)
    return {"color": list(color)}


@mcp.tool()
def set_cell_color(x: int, y: int, r: int, g: int, b: int) -> dict[str, Any]:
    """Set the color of the cell at (x, y)."""
    color = _color(r, g, b)
    if color is None:
        return {"error": "Color channels must be 0-255"}
    cell = _cells().at(x, y)
    if cell is None:
        return {"error": f"No cell at ({x}, {y})"}
    cell.set_color(color)
    return {"x": x, "y": y, "color": list(color)}


@mcp.tool()
def fade_to_color(
    r: int,
    g: int,
    b: int,
    duration: float = 1.0,
    x: int | None = None,
    y: int | None = None,
) -> dict[str, Any]:
    """Fade one cell, or the whole floor, to a color.

    Args:
        duration: Fade time in seconds.
        x: Cell column. Omit x and y to fade every cell.
        y: Cell row.
    """
    color = _color(r, g, b)
    if color is None:
        return {"error": "Color channels must be 0-255"}
    if duration < 0:
        return {"error": "Duration cannot be negative"}
    cells = _cells()
    if x is None and y is None:
        cells.fade_to_color(color, duration)
        return {"color": list(color), "duration": duration, "cells": len(cells)}
    cell = cells.at(x or 0, y or 0)
    if cell is None:
        return {"error": f"No cell at ({x}, {y})"}
    cell.fade_to_color(color, duration)
    return {"x": cell.x, "y": cell.y, "color": list(color), "duration": duration}


@mcp.tool()
def get_sensors() -> dict[str, Any]:
    """Touch state of every addressed cell, as last read from the floor."""
    client = _get_client()
    cells = client.cells
    touched = []
    for index in range(client.node_count):
        cell = cells.at_index(index)
        if cell is not None and cell.sensor_value:
            touched.append({"address": index + 1, "x": cell.x, "y": cell.y})
    return {
        "node_count": client.node_count,
        "touched": touched,
        "sensors_enabled": client.config.sensors_enabled,
    }


@mcp.tool()
def touch_cell(address: int, touched: bool = True) -> dict[str, Any]:
    """Press or release a node's sensor on the emulated floor."""
    _get_client()
    if _emulated is None:
        return {"error": "Only available on an emulated floor"}
    node = _emulated.node_at(address)
    if node is None:
        return {"error": f"No emulated node with address {address}"}
    node.touched = touched
    return {"address": address, "touched": touched}


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("floor://status")
def resource_status() -> str:
    """Connection state, bus stage and update rate."""
    return json.dumps(_status())


@mcp.resource("floor://config")
def resource_config() -> str:
    """Bus configuration in effect."""
    config = _client.config if _client is not None else _load_config()
    return json.dumps(config.to_dict())


@mcp.resource("floor://cells")
def resource_cells() -> str:
    """Color and touch state of every cell."""
    if _client is None:
        return json.dumps({"connected": False})
    cells = _client.cells
    width, height = cells.dimensions
    return json.dumps({
        "width": width,
        "height": height,
        "cells": [
            {
                "index": cell.index,
                "x": cell.x,
                "y": cell.y,
                "color": list(cell.color),
                "fading": cell.is_fading,
                "touched": bool(cell.sensor_value),
            }
            for cell in cells
        ],
    })


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def bring_up_floor() -> str:
    """Connect, discover the nodes and start the show."""
    return """Use list_ports to find the RS-485 adapter, then connect to it.
Run assign_addresses and check that the node count matches the number of
cells that are physically wired. If nodes are missing, check the daisy-chain
cable after the last node found.

Then set_color to a dim white and start the update loop with run.
Use get_status to confirm frames_per_second is above zero."""


@mcp.prompt()
def light_show(mood: str) -> str:
    """Design a simple light show for a mood.

    Args:
        mood: The feel of the show (e.g., "calm", "party", "spooky").
    """
    return f"""Design a light show for a "{mood}" mood on the floor.
Read floor://cells to learn the dimensions.

Use fade_to_color for smooth transitions and set_cell_color for accents.
Check get_sensors and light up touched cells in a contrasting color."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
