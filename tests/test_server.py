"""Tests for the MCP server tools, run against an emulated floor."""

from __future__ import annotations

import json
import sys
from unittest.mock import MagicMock, patch

import pytest

from disco_floor_mcp.models.config import BusConfig


def _get_server_module():
    """Import server module with FastMCP mocked to avoid init issues."""
    mock_fastmcp_cls = MagicMock()
    mock_fastmcp_instance = MagicMock()
    # Make the @mcp.tool() decorator a no-op that returns the function unchanged
    mock_fastmcp_instance.tool.return_value = lambda fn: fn
    mock_fastmcp_instance.resource.return_value = lambda fn: fn
    mock_fastmcp_instance.prompt.return_value = lambda fn: fn
    mock_fastmcp_cls.return_value = mock_fastmcp_instance

    with patch.dict(sys.modules, {}):
        with patch("mcp.server.fastmcp.FastMCP", mock_fastmcp_cls):
            # Remove cached server module so it re-imports with our mock
            sys.modules.pop("disco_floor_mcp.server", None)
            import disco_floor_mcp.server as server_mod

    return server_mod


@pytest.fixture
def server(tmp_path, monkeypatch):
    config_path = tmp_path / "floor.json"
    BusConfig(
        reset_delay=0, stage_delay=0, sensor_delay=0, floor_width=2, floor_height=2,
    ).save(config_path)
    monkeypatch.setenv("DISCO_FLOOR_CONFIG", str(config_path))
    server_mod = _get_server_module()
    yield server_mod
    server_mod.disconnect()


def test_tools_require_connection(server):
    """Bus tools refuse to run before connect."""
    with pytest.raises(RuntimeError, match="connect"):
        server.assign_addresses()
    assert server.get_status() == {"connected": False}


def test_connect_emulated_and_address(server):
    """An emulated floor can be connected and addressed."""
    result = server.connect(emulate_nodes=4)
    assert result["connected"]
    assert result["emulated"]
    assert result["node_count"] == 0

    again = server.connect(emulate_nodes=4)
    assert again["message"] == "Already connected"

    result = server.assign_addresses()
    assert result == {"addresses": [1, 2, 3, 4], "node_count": 4}
    assert server.get_status()["stage"] == "addressing"


def test_connect_bad_port(server):
    """An unopenable port is reported, not raised."""
    result = server.connect(port="/dev/does-not-exist")
    assert "error" in result
    assert server.get_status() == {"connected": False}


def test_run_requires_nodes(server):
    """run refuses an unaddressed floor."""
    server.connect(emulate_nodes=2)
    assert "error" in server.run()


def test_colors_reach_emulated_nodes(server):
    """set_color followed by a cycle lights every emulated node."""
    server.connect(emulate_nodes=4)
    server.assign_addresses()
    assert server.set_color(0, 128, 255) == {"color": [0, 128, 255]}
    server._client.run_cycle()
    assert all(n.color == (0, 128, 255) for n in server._emulated.nodes)


def test_color_validation(server):
    """Channels outside 0-255 are rejected."""
    server.connect(emulate_nodes=1)
    assert "error" in server.set_color(0, 0, 256)
    assert "error" in server.set_cell_color(9, 9, 1, 2, 3)
    assert "error" in server.fade_to_color(1, 2, 3, duration=-1)


def test_fade_single_cell(server):
    """fade_to_color with coordinates fades just that cell."""
    server.connect(emulate_nodes=4)
    result = server.fade_to_color(10, 20, 30, duration=2.0, x=1, y=0)
    assert result["x"] == 1
    cells = json.loads(server.resource_cells())["cells"]
    assert [c["fading"] for c in cells] == [False, True, False, False]


def test_touch_reported_by_get_sensors(server):
    """A touched emulated node shows up after two cycles."""
    server.connect(emulate_nodes=4)
    server.assign_addresses()
    assert server.touch_cell(3)["touched"]
    server._client.run_cycle()
    server._client.run_cycle()
    sensors = server.get_sensors()
    assert sensors["touched"] == [{"address": 3, "x": 0, "y": 1}]


def test_touch_cell_needs_emulation(server):
    """touch_cell only works on an emulated floor."""
    server.connect(emulate_nodes=1)
    assert "error" in server.touch_cell(5)


def test_send_message(server):
    """A hand-built message reaches the addressed node."""
    server.connect(emulate_nodes=2)
    server.assign_addresses()
    result = server.send_message(0xA1, destination=2, length=3, body_hex="0a0b0c")
    assert result == {"sent": True, "bytes": 3}
    assert server._emulated.nodes[1].color == (10, 11, 12)

    assert "error" in server.send_message(0xA1, destination=2, length=3, body_hex="0a")
    assert "error" in server.send_message(0xA3, flags=0b11)
    assert "error" in server.send_message(0xA1, body_hex="zz")
    # A failed message does not block the bus
    assert server.send_message(0xA1, destination=1, length=3, body_hex="010203")["sent"]


def test_run_and_stop(server):
    """The loop starts and stops through the tools."""
    server.connect(emulate_nodes=2)
    server.assign_addresses()
    assert server.run()["started"]
    assert server.stop() == {"running": False}


def test_resources(server):
    """Resources return JSON."""
    assert json.loads(server.resource_status()) == {"connected": False}
    config = json.loads(server.resource_config())
    assert config["floor_width"] == 2
    server.connect(emulate_nodes=4)
    cells = json.loads(server.resource_cells())
    assert (cells["width"], cells["height"]) == (2, 2)


def test_prompts(server):
    """Prompts mention the tools they rely on."""
    assert "assign_addresses" in server.bring_up_floor()
    assert "calm" in server.light_show("calm")
