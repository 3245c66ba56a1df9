"""Floor cells: the color and touch-sensor state the bus reads and writes.

Light show programs change cell colors; the bus session reads them every
cycle to build SET_COLOR payloads and writes each cell's ``sensor_value``
after a GET_SENSOR_VALUE round.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Sequence
from typing import Protocol

Color = tuple[int, int, int]
BLACK: Color = (0, 0, 0)


def _clamp_color(color: Sequence[float]) -> Color:
    return tuple(max(0, min(255, int(round(c)))) for c in color)  # type: ignore[return-value]


class CellLike(Protocol):
    """What the bus session needs from a single cell."""

    sensor_value: bool

    @property
    def color(self) -> Color: ...

    @property
    def is_fading(self) -> bool: ...

    @property
    def target_color(self) -> Color | None: ...

    def update_color(self) -> None: ...


class CellSource(Protocol):
    """What the bus session needs from the floor: cells by node index."""

    def at_index(self, index: int) -> CellLike | None: ...


class FadeController:
    """Linear fade of all three channels over a fixed duration."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.is_fading = False
        self._start_color: Color = BLACK
        self._target_color: Color = BLACK
        self._started_at = 0.0
        self._duration = 0.0

    @property
    def target_color(self) -> Color | None:
        return self._target_color if self.is_fading else None

    @target_color.setter
    def target_color(self, color: Color) -> None:
        # Retarget mid-fade from wherever the fade currently is.
        if not self.is_fading:
            return
        current = self.current_color
        remaining = self.remaining
        self._start_color = current
        self._target_color = tuple(color)  # type: ignore[assignment]
        self._started_at = self._clock()
        self._duration = remaining

    @property
    def remaining(self) -> float:
        """Seconds left in the current fade."""
        if not self.is_fading:
            return 0.0
        return max(0.0, self._duration - (self._clock() - self._started_at))

    @property
    def current_color(self) -> Color:
        if not self.is_fading or self._duration <= 0:
            return self._target_color
        progress = min(1.0, (self._clock() - self._started_at) / self._duration)
        return _clamp_color(
            s + (t - s) * progress
            for s, t in zip(self._start_color, self._target_color)
        )

    @property
    def done(self) -> bool:
        return self.is_fading and self.remaining <= 0

    def start(self, from_color: Color, to_color: Color, duration: float) -> None:
        self.is_fading = True
        self._start_color = tuple(from_color)  # type: ignore[assignment]
        self._target_color = tuple(to_color)  # type: ignore[assignment]
        self._started_at = self._clock()
        self._duration = max(0.0, duration)

    def stop(self) -> None:
        self.is_fading = False


class FloorCell:
    """A single square on the floor."""

    def __init__(
        self,
        index: int,
        x: int = 0,
        y: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.index = index
        self.x = x
        self.y = y
        self.sensor_value = False
        self._color: Color = BLACK
        self._fade = FadeController(clock)

    @property
    def color(self) -> Color:
        return self._color

    @property
    def is_fading(self) -> bool:
        return self._fade.is_fading

    @property
    def target_color(self) -> Color | None:
        return self._fade.target_color

    @property
    def fade_duration(self) -> float:
        """Seconds left in the current fade, 0 when not fading."""
        return self._fade.remaining

    def set_color(self, color: Sequence[int], stop_fade: bool = True) -> None:
        """Set the cell color.

        Args:
            color: RGB values 0-255.
            stop_fade: Stop a running fade. When False the fade keeps going
                and is retargeted to ``color`` instead.
        """
        color = _clamp_color(color)
        if self._fade.is_fading:
            if stop_fade:
                self._fade.stop()
            else:
                self._fade.target_color = color
                return
        self._color = color

    def fade_to_color(self, color: Sequence[int], duration: float) -> None:
        """Start fading from the current color to ``color`` over ``duration`` seconds."""
        self._fade.start(self._color, _clamp_color(color), duration)

    def update_color(self) -> None:
        """Advance a running fade to the current time."""
        if not self._fade.is_fading:
            return
        self._color = self._fade.current_color
        if self._fade.done:
            self._fade.stop()

    def __repr__(self) -> str:
        return f"FloorCell(index={self.index}, x={self.x}, y={self.y}, color={self._color})"


class FloorCellList:
    """All floor cells, in node address order."""

    def __init__(self, cells: list[FloorCell], width: int, height: int) -> None:
        self._cells = cells
        self._width = width
        self._height = height
        self._map = {(cell.x, cell.y): cell for cell in cells}

    def __len__(self) -> int:
        return len(self._cells)

    def __iter__(self) -> Iterator[FloorCell]:
        return iter(self._cells)

    @property
    def dimensions(self) -> tuple[int, int]:
        return self._width, self._height

    def at(self, x: int, y: int) -> FloorCell | None:
        return self._map.get((x, y))

    def at_index(self, index: int) -> FloorCell | None:
        if 0 <= index < len(self._cells):
            return self._cells[index]
        return None

    def set_color(self, color: Sequence[int]) -> None:
        """Set a solid, non-fading color on every cell."""
        for cell in self._cells:
            cell.set_color(color)

    def fade_to_color(self, color: Sequence[int], duration: float) -> None:
        for cell in self._cells:
            cell.fade_to_color(color, duration)

    def update_color(self) -> None:
        for cell in self._cells:
            cell.update_color()

    def sensor_values(self) -> list[bool]:
        return [cell.sensor_value for cell in self._cells]


def build_floor(
    count: int,
    width: int = 8,
    clock: Callable[[], float] = time.monotonic,
) -> FloorCellList:
    """Build ``count`` cells laid out row by row, ``width`` cells per row."""
    if width < 1:
        raise ValueError(f"Floor width must be positive, got {width}")
    cells = [FloorCell(i, i % width, i // width, clock) for i in range(count)]
    height = (count + width - 1) // width if count else 0
    return FloorCellList(cells, width, height)
