"""Response parsing for node replies."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .commands import SENSOR_NO_RESPONSE, Command
from .framing import Message


@dataclass
class SensorReading:
    """One node's answer to GET_SENSOR_VALUE."""

    node_index: int
    raw: int

    @property
    def valid(self) -> bool:
        return self.raw in (0, 1)

    @property
    def touched(self) -> bool | None:
        """True/False for a valid reading, None when the node gave nothing usable."""
        if not self.valid:
            return None
        return bool(self.raw)

    def __repr__(self) -> str:
        return f"SensorReading(node={self.node_index}, raw=0x{self.raw:02X})"


def parse_sensor_values(responses: Sequence[bytes]) -> list[SensorReading]:
    """Turn per-node response slots into sensor readings.

    Empty slots are treated as "no response".
    """
    readings = []
    for index, slot in enumerate(responses):
        raw = slot[0] if slot else SENSOR_NO_RESPONSE
        readings.append(SensorReading(node_index=index, raw=raw))
    return readings


def parse_sensor_message(message: Message) -> list[SensorReading] | None:
    """Parse a complete GET_SENSOR_VALUE frame seen on the bus."""
    if message.command != Command.GET_SENSOR_VALUE or not message.batch_mode:
        return None
    slots = [message.slot(i) for i in range(message.node_count)]
    return parse_sensor_values(slots)


def parse_colors(message: Message) -> list[tuple[int, int, int]] | None:
    """Extract the per-node colors from a SET_COLOR frame.

    A broadcast non-batch frame yields a single color.
    """
    if message.command != Command.SET_COLOR:
        return None
    if message.batch_mode:
        slots = [message.slot(i) for i in range(message.node_count)]
    else:
        slots = [message.body]
    colors = []
    for slot in slots:
        if len(slot) < 3:
            return None
        colors.append((slot[0], slot[1], slot[2]))
    return colors
