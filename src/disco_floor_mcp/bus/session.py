"""Bus session: the master's half of the floor protocol.

The session owns the transport and keeps exactly one message in flight.
Messages are either written whole (:meth:`BusSession.send`) or streamed
with the low-level API, which lets nodes answer inside the message body::

    session.start_message(Command.GET_SENSOR_VALUE, flags=..., length=1, node_count=n)
    responses = session.collect_responses(defaults)
    session.end_message()

Stages move ``IDLE -> ADDRESSING -> RUNNING``. While running, every cycle
is SET_COLOR, RUN_SENSOR, GET_SENSOR_VALUE.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum

from ..exceptions import BusBusyError, FramingError, TransportError
from ..models.config import BusConfig
from ..models.floor import BLACK, CellSource, Color
from ..models.node import Node, Signature
from ..protocol.commands import (
    COLOR_SIZE,
    Command,
    build_get_sensor_value,
    build_null,
    build_reset,
    build_run_sensor,
    build_set_color,
    build_set_color_batch,
    sensor_selection,
)
from ..protocol.framing import (
    BROADCAST_ADDRESS,
    MAX_FIELD,
    SOM,
    Flags,
    Message,
    Unstuffer,
    build_frame,
    build_header,
    escape,
)
from ..protocol.parser import parse_sensor_values
from ..transport.daisy_line import DaisyLine
from ..utils.crc import crc16, crc16_update, crc_to_bytes
from .events import BusEvent, EventEmitter
from .responses import AddressTracker, ResponseCollector

logger = logging.getLogger(__name__)

STREAM_COMMANDS = frozenset({Command.ADDRESS})
ADDRESS_CORRECTION = 0x00

# Wire sizes before stuffing: start marker, header, body, CRC.
UNICAST_COLOR_FRAME = 2 + 4 + COLOR_SIZE + 2


def batch_color_frame(node_count: int) -> int:
    return 2 + 5 + COLOR_SIZE * node_count + 2


class Stage(Enum):
    IDLE = "idle"
    ADDRESSING = "addressing"
    RUNNING = "running"


class Step(Enum):
    SET_COLOR = "set_color"
    RUN_SENSOR = "run_sensor"
    GET_SENSOR_VALUE = "get_sensor_value"


@dataclass
class PendingMessage:
    """The message currently on the bus."""

    command: int
    flags: int
    destination: int
    node_count: int
    length: int
    crc: int
    sent: int = 0

    @property
    def stream(self) -> bool:
        return self.command in STREAM_COMMANDS

    @property
    def response_expected(self) -> bool:
        return bool(self.flags & Flags.RESPONSE_EXPECTED)

    @property
    def body_length(self) -> int:
        if self.flags & Flags.BATCH_MODE:
            return self.node_count * self.length
        return self.length

    @property
    def remaining(self) -> int:
        return self.body_length - self.sent


class FrameRate:
    """Cycles per second, averaged over the last few one-second windows."""

    def __init__(self, windows: int = 4, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows = windows
        self._counts: deque[int] = deque([0] * windows, maxlen=windows)
        self._second = int(clock())
        self._frames = 0

    def _roll(self) -> None:
        now = int(self._clock())
        elapsed = now - self._second
        if elapsed <= 0:
            return
        self._counts.append(self._frames)
        for _ in range(min(elapsed - 1, self._windows)):
            self._counts.append(0)
        self._frames = 0
        self._second = now

    def tick(self) -> None:
        self._roll()
        self._frames += 1

    @property
    def value(self) -> int:
        self._roll()
        return round(sum(self._counts) / self._windows)

    def reset(self) -> None:
        self._counts.extend([0] * self._windows)
        self._frames = 0
        self._second = int(self._clock())


class BusSession:
    """Drives one bus through addressing and the update cycle.

    Args:
        transport: An open :class:`SerialConnection` or :class:`EmulatedFloor`.
        config: Timeouts, delays and feature switches.
        cells: Where colors come from and sensor values go.
        events: Listener registry; a private one is created when omitted.
    """

    def __init__(
        self,
        transport,
        config: BusConfig | None = None,
        cells: CellSource | None = None,
        events: EventEmitter | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.config = config or BusConfig()
        self.cells = cells
        self.events = events or EventEmitter()
        self.daisy = DaisyLine(transport)
        self.nodes: list[Node] = []
        self.stage = Stage.IDLE
        self.step = Step.SET_COLOR
        self.cycle = 0
        self.collector: ResponseCollector | None = None
        self.fps = FrameRate(clock=clock)
        self._sleep = sleep
        self._pending: PendingMessage | None = None
        self._unstuffer = Unstuffer()
        self._address_rx: deque[int] = deque()

    # State

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def pending(self) -> PendingMessage | None:
        return self._pending

    @property
    def busy(self) -> bool:
        return self._pending is not None

    def set_stage(self, stage: Stage) -> None:
        if stage == self.stage:
            return
        old, self.stage = self.stage, stage
        logger.info("Bus stage %s -> %s", old.value, stage.value)
        self.events.emit(BusEvent.STAGE_CHANGE, old=old, new=stage)

    def register_node(self, address: int) -> Node:
        node = Node(address)
        self.nodes.append(node)
        return node

    def register_nodes(self, count: int) -> None:
        """Register nodes ``1..count`` without discovery (cached node count)."""
        self.nodes = [Node(address) for address in range(1, count + 1)]
        logger.info("Using cached node count %d", count)

    def reset(self) -> None:
        """Forget the in-flight message and every node, back to IDLE."""
        self._pending = None
        self.collector = None
        self.nodes = []
        self.cycle = 0
        self.step = Step.SET_COLOR
        self.fps.reset()
        self.set_stage(Stage.IDLE)

    # Low-level message API

    def start_message(
        self,
        command: int,
        destination: int = BROADCAST_ADDRESS,
        flags: int = Flags.NONE,
        length: int = 0,
        node_count: int = 0,
    ) -> None:
        """Write the start marker and header of a new message.

        Raises:
            BusBusyError: If another message is still in flight.
            ValueError: If a header field is out of range.
        """
        if self._pending is not None:
            raise BusBusyError(
                f"Message 0x{self._pending.command:02X} is still in flight"
            )
        for name, value in (("command", command), ("destination", destination),
                            ("flags", flags), ("length", length),
                            ("node_count", node_count)):
            if not 0 <= value <= MAX_FIELD:
                raise ValueError(f"{name} must be 0-255, got {value}")
        if (flags & Flags.BATCH_MODE and node_count == 0
                and command not in STREAM_COMMANDS):
            raise ValueError("Batch messages need a node count of at least 1")

        header = build_header(command, length, destination, flags, node_count)
        pending = PendingMessage(
            command=command,
            flags=flags,
            destination=destination,
            node_count=node_count if flags & Flags.BATCH_MODE else 0,
            length=length,
            crc=crc16(header),
        )
        self._pending = pending
        self.collector = None
        self._write(bytes([SOM, SOM]) + escape(header))
        logger.debug(
            "Started message 0x%02X dest=%d flags=%#04x len=%d nodes=%d",
            command, destination, flags, length, node_count,
        )

    def send_data(self, data: bytes) -> None:
        """Write body bytes for the message in flight.

        Raises:
            ValueError: If no message is in flight or ``data`` runs past the
                declared body length.
        """
        pending = self._require_pending()
        if not pending.stream and len(data) > pending.remaining:
            raise ValueError(
                f"{len(data)} byte(s) exceed the {pending.remaining} remaining "
                f"in message 0x{pending.command:02X}"
            )
        self._write(escape(data))
        self._fold(data)

    def end_message(self) -> None:
        """Finish the message in flight and wait until it has left the port.

        A regular message ends with its CRC. An open-ended addressing stream
        ends with a complete NULL frame, whose start marker closes the stream
        on every node.

        Raises:
            ValueError: If body bytes are still missing.
        """
        pending = self._require_pending()
        if pending.stream:
            self._write(build_frame(build_null()))
        else:
            if pending.remaining:
                raise ValueError(
                    f"Message 0x{pending.command:02X} is missing "
                    f"{pending.remaining} body byte(s)"
                )
            self._write(escape(crc_to_bytes(pending.crc)))
        self.transport.flush()
        self._pending = None
        logger.debug("Ended message 0x%02X", pending.command)

    def abort_message(self) -> None:
        """Drop the message in flight. Nodes discard it at the next start marker."""
        if self._pending is not None:
            logger.debug("Aborted message 0x%02X", self._pending.command)
        self._pending = None
        self.collector = None

    def collect_responses(self, defaults: bytes) -> list[bytes]:
        """Run the response phase of the message in flight.

        Each node writes its slot in turn. A node that stays quiet for the
        response timeout gets its slot filled from ``defaults``, written onto
        the bus so the following nodes can answer.

        Returns:
            One slot per node, in address order.
        """
        pending = self._require_pending()
        if not pending.response_expected:
            raise ValueError(f"Message 0x{pending.command:02X} expects no response")
        slots = pending.node_count if pending.flags & Flags.BATCH_MODE else 1
        collector = ResponseCollector(slots, pending.length, defaults)
        self.collector = collector
        self._unstuffer.reset()

        while not collector.complete:
            data = self.transport.read(self.config.response_timeout)
            if not data:
                fill = collector.fill_current()
                self._write(escape(fill))
                self._fold(fill)
                continue
            for byte in data:
                value = self._unstuff(byte)
                if value is None:
                    continue
                if collector.complete:
                    logger.debug("Ignoring extra response byte 0x%02X", value)
                    continue
                collector.push(value)
                self._fold(bytes([value]))
        return collector.responses()

    def send(self, message: Message) -> None:
        """Write a complete message in one call and drain it."""
        if self._pending is not None:
            raise BusBusyError(
                f"Message 0x{self._pending.command:02X} is still in flight"
            )
        self._write(build_frame(message))
        self.transport.flush()
        logger.debug("Sent %r", message)

    def request(self, message: Message) -> list[bytes]:
        """Send a response-expected message and collect the answers.

        The message body supplies the default for every node that stays
        silent.
        """
        self.start_message(
            message.command,
            destination=message.destination,
            flags=message.flags,
            length=message.length,
            node_count=message.node_count,
        )
        try:
            responses = self.collect_responses(message.body)
            self.end_message()
        except BaseException:
            self.abort_message()
            raise
        return responses

    # Addressing

    def address_nodes(self, start_from: int = 0) -> Iterator[int]:
        """Run one addressing pass, yielding each confirmed address.

        Raises:
            AddressingError: When a node needs too many corrections.
        """
        self.set_stage(Stage.ADDRESSING)
        tracker = AddressTracker(start_from, self.config.max_address_corrections)
        self._address_rx.clear()
        self._unstuffer.reset()

        self.daisy.disable()
        self.transport.reset_input()
        self.start_message(
            Command.ADDRESS,
            flags=Flags.BATCH_MODE | Flags.RESPONSE_EXPECTED,
            length=2,
            node_count=start_from,
        )
        try:
            self.daisy.enable()
            self.send_data(bytes([start_from]))

            while tracker.last_address < MAX_FIELD:
                reply = self._read_address_reply()
                if reply is None:
                    break
                if tracker.offer(reply):
                    address = tracker.last_address
                    self.send_data(bytes([address]))
                    self.register_node(address)
                    logger.debug("Node %d confirmed", address)
                    self.events.emit(BusEvent.NEW_NODE, address=address)
                    yield address
                else:
                    self.send_data(bytes([ADDRESS_CORRECTION, tracker.last_address]))
        except TransportError:
            self._pending = None
            raise
        finally:
            if self._pending is not None:
                self.end_message()
                self.daisy.disable()

        logger.info(
            "Addressing pass from %d found %d node(s)",
            start_from, tracker.last_address - start_from,
        )

    def _read_address_reply(self) -> int | None:
        while not self._address_rx:
            data = self.transport.read(self.config.addressing_timeout)
            if not data:
                return None
            for byte in data:
                value = self._unstuff(byte)
                if value is not None:
                    self._address_rx.append(value)
        return self._address_rx.popleft()

    def clear_bus(self) -> None:
        """Send a NULL frame then RESET, so every node forgets its address."""
        self.send(build_null())
        self.send(build_reset())
        self.nodes = []

    # Update cycle

    def run_cycle(self) -> None:
        """Run one SET_COLOR, RUN_SENSOR, GET_SENSOR_VALUE cycle."""
        if not self.nodes:
            return
        self.set_stage(Stage.RUNNING)

        self.step = Step.SET_COLOR
        self.send_colors()

        if self.config.sensors_enabled:
            self._sleep(self.config.stage_delay)
            self.step = Step.RUN_SENSOR
            self.run_sensors()

            self._sleep(self.config.sensor_delay)
            self.step = Step.GET_SENSOR_VALUE
            self.read_sensors()

        self.cycle += 1
        self.fps.tick()
        self.events.emit(BusEvent.FLOOR_UPDATED, cycle=self.cycle)
        self._sleep(self.config.stage_delay)

    def _node_state(self, node: Node) -> tuple[Color, Signature]:
        """Current color of the node's cell and its change signature."""
        cell = self.cells.at_index(node.index) if self.cells is not None else None
        if cell is None:
            return BLACK, (Command.SET_COLOR.value, BLACK, None)
        cell.update_color()
        color: Color = tuple(cell.color)  # type: ignore[assignment]
        return color, (Command.SET_COLOR.value, color, cell.target_color)

    def send_colors(self) -> int:
        """Put changed colors on the bus with the fewest bytes.

        Returns:
            The number of messages written.
        """
        refresh = self.config.refresh_interval
        force = self.cycle == 0 or (refresh > 0 and self.cycle % refresh == 0)
        states = [self._node_state(node) for node in self.nodes]
        colors = [color for color, _ in states]
        signatures = [signature for _, signature in states]
        dirty = [
            i for i, node in enumerate(self.nodes)
            if force or node.needs_update(signatures[i])
        ]
        if not dirty:
            return 0

        if len(dirty) == len(self.nodes) and len(set(signatures)) == 1:
            messages = [build_set_color(colors[0])]
        elif len(dirty) * UNICAST_COLOR_FRAME < batch_color_frame(len(self.nodes)):
            messages = [
                build_set_color(colors[i], destination=self.nodes[i].address)
                for i in dirty
            ]
        else:
            messages = [build_set_color_batch(colors)]

        for message in messages:
            self.send(message)
        for i in dirty:
            self.nodes[i].mark_sent(signatures[i])
        return len(messages)

    def run_sensors(self) -> None:
        """Tell half of the nodes to sample their touch sensor."""
        self.send(build_run_sensor(sensor_selection(self.node_count, self.cycle)))

    def read_sensors(self) -> list[bool | None]:
        """Collect every node's sensor value and store it on its cell.

        Returns:
            Per node, the reading or None when the node gave nothing usable.
        """
        responses = self.request(build_get_sensor_value(self.node_count))
        readings = parse_sensor_values(responses)
        for reading in readings:
            if not reading.valid or self.cells is None:
                continue
            cell = self.cells.at_index(reading.node_index)
            if cell is not None:
                cell.sensor_value = reading.touched
        return [reading.touched for reading in readings]

    # Internals

    def _require_pending(self) -> PendingMessage:
        if self._pending is None:
            raise ValueError("No message in flight")
        return self._pending

    def _write(self, data: bytes) -> None:
        if data:
            self.transport.write(data)

    def _fold(self, data: bytes) -> None:
        pending = self._pending
        for byte in data:
            pending.crc = crc16_update(pending.crc, byte)
        pending.sent += len(data)

    def _unstuff(self, byte: int) -> int | None:
        if byte == SOM:
            logger.debug("Unexpected start marker in response stream")
            self._unstuffer.reset()
            return None
        try:
            return self._unstuffer.feed(byte)
        except FramingError as e:
            logger.debug("Discarding response byte: %s", e)
            return None
