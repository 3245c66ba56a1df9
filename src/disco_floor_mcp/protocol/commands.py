"""Command codes and high-level message builders.

Every builder returns a :class:`~.framing.Message`; serialize it with
:func:`~.framing.build_frame` or hand it to the bus session.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import IntEnum

from .framing import BROADCAST_ADDRESS, MAX_FIELD, Flags, Message

Color = tuple[int, int, int]

COLOR_SIZE = 3
SENSOR_VALUE_SIZE = 1
SENSOR_NO_RESPONSE = 0xFF


class Command(IntEnum):
    """Bus command codes."""

    RESET = 0xFA
    ADDRESS = 0xFB
    NULL = 0xFF
    SET_COLOR = 0xA1
    RUN_SENSOR = 0xA2
    GET_SENSOR_VALUE = 0xA3


def _check_address(address: int) -> None:
    if not 0 <= address <= MAX_FIELD:
        raise ValueError(f"Address must be 0-255, got {address}")


def _color_bytes(color: Sequence[int]) -> bytes:
    if len(color) != COLOR_SIZE:
        raise ValueError(f"Color must have 3 channels, got {len(color)}")
    for channel in color:
        if not 0 <= channel <= 255:
            raise ValueError(f"Color channels must be 0-255, got {channel}")
    return bytes(color)


def build_command(
    command: Command,
    body: bytes = b"",
    destination: int = BROADCAST_ADDRESS,
) -> Message:
    """Build a single, non-batch message."""
    _check_address(destination)
    return Message(command=command.value, destination=destination, body=body)


def build_null() -> Message:
    """Build a NULL message, used to clear the bus and end addressing."""
    return build_command(Command.NULL)


def build_reset() -> Message:
    """Build a RESET broadcast; every node forgets its address."""
    return build_command(Command.RESET)


def build_set_color(color: Sequence[int], destination: int = BROADCAST_ADDRESS) -> Message:
    """Build a SET_COLOR message for one node, or every node when broadcast.

    Args:
        color: RGB values 0-255.
        destination: Node address, or 0 to broadcast the same color.
    """
    return build_command(Command.SET_COLOR, _color_bytes(color), destination)


def build_set_color_batch(colors: Sequence[Sequence[int]]) -> Message:
    """Build one batch SET_COLOR message carrying a color for every node.

    Args:
        colors: One RGB triple per node, in address order.
    """
    if not colors:
        raise ValueError("Batch color update needs at least one node")
    body = b"".join(_color_bytes(color) for color in colors)
    return Message(
        command=Command.SET_COLOR.value,
        flags=Flags.BATCH_MODE,
        body=body,
        node_count=len(colors),
    )


def build_run_sensor(selection: Sequence[bool]) -> Message:
    """Build a batch RUN_SENSOR message.

    Args:
        selection: One flag per node; nodes flagged True sample their sensor.
    """
    if not selection:
        raise ValueError("Sensor run needs at least one node")
    return Message(
        command=Command.RUN_SENSOR.value,
        flags=Flags.BATCH_MODE,
        body=bytes(1 if selected else 0 for selected in selection),
        node_count=len(selection),
    )


def sensor_selection(node_count: int, cycle: int) -> list[bool]:
    """Pick which half of the nodes samples its touch sensor on ``cycle``.

    Even-indexed nodes sample on even cycles and odd-indexed nodes on odd
    cycles, so neighbouring sensors are never active at the same time.
    """
    parity = cycle % 2
    return [index % 2 == parity for index in range(node_count)]


def build_get_sensor_value(node_count: int) -> Message:
    """Build the GET_SENSOR_VALUE request with every slot pre-filled.

    The bus session streams this request header-first and lets the nodes
    write their own slots; the pre-filled body (``0xFF``, "no response") is
    what a floor with no live nodes would produce.
    """
    return Message(
        command=Command.GET_SENSOR_VALUE.value,
        flags=Flags.BATCH_MODE | Flags.RESPONSE_EXPECTED,
        body=bytes([SENSOR_NO_RESPONSE]) * (node_count * SENSOR_VALUE_SIZE),
        node_count=node_count,
    )
