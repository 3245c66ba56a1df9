"""Tests for floor cells and fades."""

import pytest

from disco_floor_mcp.models.floor import BLACK, FadeController, build_floor
from disco_floor_mcp.models.node import MAX_COMMAND_ID, Node


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_build_floor_row_major():
    """Cells are laid out row by row."""
    floor = build_floor(6, width=4)
    assert len(floor) == 6
    assert floor.dimensions == (4, 2)
    assert floor.at(1, 1).index == 5
    assert floor.at(3, 1) is None
    assert floor.at_index(6) is None


def test_build_floor_rejects_bad_width():
    with pytest.raises(ValueError):
        build_floor(4, width=0)


def test_set_color_clamps():
    """Colors are clamped to 0-255."""
    cell = build_floor(1).at_index(0)
    cell.set_color((300, -5, 12))
    assert cell.color == (255, 0, 12)


def test_fade_progress():
    """A fade moves linearly from the start color to the target."""
    clock = FakeClock()
    cell = build_floor(1, clock=clock).at_index(0)
    cell.fade_to_color((100, 200, 0), 2.0)
    assert cell.is_fading
    assert cell.target_color == (100, 200, 0)

    clock.now = 1.0
    cell.update_color()
    assert cell.color == (50, 100, 0)
    assert cell.fade_duration == pytest.approx(1.0)

    clock.now = 2.5
    cell.update_color()
    assert cell.color == (100, 200, 0)
    assert not cell.is_fading
    assert cell.target_color is None


def test_set_color_stops_fade():
    """A solid color stops a running fade by default."""
    clock = FakeClock()
    cell = build_floor(1, clock=clock).at_index(0)
    cell.fade_to_color((100, 100, 100), 1.0)
    cell.set_color((1, 2, 3))
    assert not cell.is_fading
    assert cell.color == (1, 2, 3)


def test_set_color_retargets_fade():
    """With stop_fade=False the fade continues toward the new color."""
    clock = FakeClock()
    cell = build_floor(1, clock=clock).at_index(0)
    cell.fade_to_color((100, 0, 0), 2.0)
    clock.now = 1.0
    cell.set_color((0, 0, 100), stop_fade=False)
    assert cell.is_fading
    assert cell.target_color == (0, 0, 100)

    clock.now = 2.0
    cell.update_color()
    assert cell.color == (0, 0, 100)
    assert not cell.is_fading


def test_fade_zero_duration_jumps():
    """A zero-length fade lands on the target at the next update."""
    controller = FadeController(clock=FakeClock())
    controller.start(BLACK, (9, 9, 9), 0)
    assert controller.current_color == (9, 9, 9)
    assert controller.done


def test_floor_wide_operations():
    """set_color and fade_to_color apply to every cell."""
    clock = FakeClock()
    floor = build_floor(4, width=2, clock=clock)
    floor.set_color((5, 5, 5))
    assert all(cell.color == (5, 5, 5) for cell in floor)
    floor.fade_to_color((15, 15, 15), 1.0)
    clock.now = 0.5
    floor.update_color()
    assert all(cell.color == (10, 10, 10) for cell in floor)
    assert floor.sensor_values() == [False] * 4


def test_node_tracks_last_signature():
    """A node needs an update only when its signature changes."""
    node = Node(address=3)
    assert node.index == 2
    assert node.needs_update((0xA1, 1, 2, 3))
    node.mark_sent((0xA1, 1, 2, 3))
    assert not node.needs_update((0xA1, 1, 2, 3))
    assert node.needs_update((0xA1, 1, 2, 4))



def test_node_command_id_rolls_over():
    """The command id counts 0..7 and wraps."""
    node = Node(address=1)
    for _ in range(MAX_COMMAND_ID):
        node.mark_sent(())
    assert node.last_command_id == MAX_COMMAND_ID
    node.mark_sent(())
    assert node.last_command_id == 0
