"""An emulated floor: a chain of simulated nodes behind a fake serial port.

It implements the same methods as :class:`SerialConnection`, so the bus
session can drive it exactly like hardware. Every byte the master writes is
parsed the way a node's firmware would parse it, and node replies are put
back on the (shared) bus, where all other nodes hear them too.

Usage::

    floor = EmulatedFloor(4)
    floor.nodes[1].touched = True
    client = FloorBusClient(transport=floor)
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from ..protocol.commands import Command
from ..protocol.framing import (
    BROADCAST_ADDRESS,
    FrameHeader,
    FrameParser,
    Message,
    SOM,
    escape,
)
from ..models.floor import BLACK, Color

logger = logging.getLogger(__name__)


class AddressState(Enum):
    UNSET = "unset"
    SENT = "sent"
    CONFIRMED = "confirmed"


@dataclass
class EmulatedNode:
    """One simulated floor node.

    Attributes:
        responsive: False simulates a dead transceiver. The node never
            answers, but its daisy-chain output follows its input so the
            nodes behind it can still be addressed.
        answers_sensor: False makes the node stay silent in response
            phases, so the master has to default-fill its slot.
        wrong_replies: Number of bogus address replies sent before the node
            behaves, to exercise the correction sub-protocol.
        skip_passes: Number of addressing passes the node sleeps through,
            simulating a node slow to boot.
    """

    position: int
    responsive: bool = True
    answers_sensor: bool = True
    wrong_replies: int = 0
    skip_passes: int = 0
    touched: bool = False
    address: int = 0
    color: Color = BLACK
    sensing: bool = False
    sensor_reading: int = 0
    state: AddressState = AddressState.UNSET
    last_address: int = 0
    daisy_out: bool = False
    passes_seen: int = 0
    history: list[Message] = field(default_factory=list)

    def reset(self) -> None:
        self.address = 0
        self.state = AddressState.UNSET
        self.last_address = 0
        self.daisy_out = False
        self.passes_seen = 0


class EmulatedFloor:
    """Fake serial transport backed by simulated nodes.

    Args:
        nodes: Number of well-behaved nodes, or a list of configured nodes.
        realtime: Block for the full timeout in :meth:`read` when nothing is
            pending, like a real port does.
    """

    def __init__(self, nodes: int | list[EmulatedNode] = 0, realtime: bool = False) -> None:
        if isinstance(nodes, int):
            nodes = [EmulatedNode(position=i) for i in range(nodes)]
        self.nodes = nodes
        self.realtime = realtime
        self.written = bytearray()
        self.messages: list[Message] = []
        self.daisy = False
        self.flushes = 0
        self._connected = False
        self._rx = bytearray()
        self._queue: deque[tuple[int, bool]] = deque()
        self._from_node = False
        self._pumping = False
        self._responded: set[int] = set()
        self._parser = FrameParser(
            receive_timeout=None,
            stream_commands=(Command.ADDRESS,),
            on_stream_byte=self._on_address_byte,
        )

    @property
    def connected(self) -> bool:
        return self._connected

    def open(self) -> None:
        self._connected = True

    def close(self) -> None:
        self._connected = False

    def flush(self) -> None:
        self.flushes += 1

    def reset_input(self) -> None:
        self._rx.clear()

    def set_daisy(self, enabled: bool) -> None:
        self.daisy = enabled

    def write(self, data: bytes) -> int:
        self.written += data
        self._queue.extend((byte, False) for byte in data)
        self._pump()
        return len(data)

    def read(self, timeout: float) -> bytes:
        if self._rx:
            data = bytes(self._rx)
            self._rx.clear()
            return data
        if self.realtime:
            time.sleep(timeout)
        return b""

    def node_at(self, address: int) -> EmulatedNode | None:
        for node in self.nodes:
            if node.address == address and address != 0:
                return node
        return None

    @property
    def addressed(self) -> list[EmulatedNode]:
        return sorted(
            (n for n in self.nodes if n.address), key=lambda n: n.address
        )

    # Bus processing

    def _pump(self) -> None:
        if self._pumping:
            return
        self._pumping = True
        try:
            while self._queue:
                byte, self._from_node = self._queue.popleft()
                self._bus_byte(byte)
        finally:
            self._pumping = False

    def _reply(self, logical: bytes) -> None:
        wire = escape(logical)
        self._rx += wire
        self._queue.extend((byte, True) for byte in wire)

    def _bus_byte(self, byte: int) -> None:
        parser = self._parser
        if byte == SOM:
            self._responded.clear()
        was_streaming = parser.streaming
        message = parser.feed(byte)
        if was_streaming and not parser.streaming:
            self._end_addressing()
        if parser.streaming and not was_streaming:
            self._begin_addressing()
        if message is not None:
            self.messages.append(message)
            self._handle_message(message)
            self._responded.clear()
        elif parser.in_message:
            self._maybe_respond(parser.header, len(parser.body))

    def _maybe_respond(self, header: FrameHeader, received: int) -> None:
        if not header.response_expected or not header.complete or self._parser.streaming:
            return
        length = header.length
        if length == 0:
            return
        if header.batch_mode:
            if received % length or received >= header.body_length:
                return
            slot = received // length
            node = self.node_at(slot + 1)
        else:
            if received:
                return
            slot = 0
            node = self.node_at(header.destination)
        if slot in self._responded:
            return
        self._responded.add(slot)
        if node is None or not node.responsive or not node.answers_sensor:
            return
        self._reply(self._response_for(node, header.command, length))

    def _response_for(self, node: EmulatedNode, command: int, length: int) -> bytes:
        if command == Command.GET_SENSOR_VALUE:
            return bytes([node.sensor_reading]) * length
        return bytes(length)

    def _handle_message(self, message: Message) -> None:
        command = message.command
        if command == Command.RESET:
            for node in self.nodes:
                node.reset()
            return
        targets = self._targets(message)
        for index, node in targets:
            node.history.append(message)
            if command == Command.SET_COLOR:
                slot = message.slot(index) if message.batch_mode else message.body
                if len(slot) >= 3:
                    node.color = (slot[0], slot[1], slot[2])
            elif command == Command.RUN_SENSOR:
                slot = message.slot(index) if message.batch_mode else message.body
                node.sensing = bool(slot and slot[0])
                if node.sensing:
                    node.sensor_reading = 1 if node.touched else 0

    def _targets(self, message: Message) -> list[tuple[int, EmulatedNode]]:
        if message.batch_mode:
            return [
                (node.address - 1, node)
                for node in self.addressed
                if node.address <= message.node_count
            ]
        if message.destination == BROADCAST_ADDRESS:
            return [(0, node) for node in self.addressed]
        node = self.node_at(message.destination)
        return [(0, node)] if node else []

    # Addressing

    def _begin_addressing(self) -> None:
        for node in self.nodes:
            node.passes_seen += 1
            if node.state == AddressState.SENT:
                node.state = AddressState.UNSET

    def _end_addressing(self) -> None:
        for node in self.nodes:
            if node.state == AddressState.SENT:
                node.state = AddressState.UNSET

    def _candidate(self) -> EmulatedNode | None:
        """The first node whose incoming enable line is high and has no address."""
        enabled = self.daisy
        for node in self.nodes:
            if not enabled:
                return None
            if not node.responsive:
                # Dead node: its output simply follows its input.
                continue
            if node.address == 0:
                if node.passes_seen <= node.skip_passes:
                    return None
                return node
            enabled = node.daisy_out
        return None

    def _on_address_byte(self, header: FrameHeader, value: int) -> None:
        if self._from_node:
            # A transceiver does not hear its own transmission.
            return
        node = self._candidate()
        if node is None:
            return

        if node.state != AddressState.SENT:
            self._send_tentative(node, value)
            return

        if value != node.last_address:
            # Correction from the master: wait for the last good address.
            node.state = AddressState.UNSET
            node.last_address = value
            return

        node.address = value
        node.state = AddressState.CONFIRMED
        node.daisy_out = True
        logger.debug("Emulated node %d took address %d", node.position, value)

        # The next node sees its enable line go high and answers right away.
        following = self._candidate()
        if following is not None and following.state == AddressState.UNSET:
            self._send_tentative(following, value)

    def _send_tentative(self, node: EmulatedNode, value: int) -> None:
        tentative = value + 1
        if node.wrong_replies > 0:
            node.wrong_replies -= 1
            tentative = value + 2
        node.state = AddressState.SENT
        node.last_address = tentative & 0xFF
        self._reply(bytes([node.last_address]))
