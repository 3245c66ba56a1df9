"""Message frame builder and streaming parser for the floor bus.

Frame layout::

    +---------+-------+------+---------+------------+--------+----------+--------+
    |   SOM   | Flags | Dest | Command | Node count | Length |   Body   |  CRC   |
    | FF FF   | 1 B   | 1 B  |  1 B    | 1 B, batch | 1 B    | variable | 2 B BE |
    +---------+-------+------+---------+------------+--------+----------+--------+

- SOM: two raw ``0xFF`` bytes. They are never escaped.
- Flags: bit 0 BATCH_MODE, bit 1 RESPONSE_EXPECTED.
- Dest: node address, ``0`` broadcasts to every node.
- Node count: only present in batch mode. The body then holds
  ``node count * length`` bytes, one ``length``-sized slot per node in
  address order.
- CRC: CRC-16 (0xA001, init 0xFFFF) over every logical byte from Flags to
  the end of the body, high byte first.

Everything after the SOM is byte-stuffed: a logical ``0xFF`` is sent as
``FE 01`` and a logical ``0xFE`` as ``FE 00``. A raw ``0xFF`` on the wire is
therefore always the start of a new message.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum, IntFlag

from ..exceptions import FramingError
from ..utils.crc import CRC_INIT, crc16, crc16_update, crc_to_bytes

logger = logging.getLogger(__name__)

SOM = 0xFF
ESCAPE = 0xFE
ESCAPED_SOM = 0x01
ESCAPED_ESCAPE = 0x00
BROADCAST_ADDRESS = 0
MAX_FIELD = 0xFF
DEFAULT_RECEIVE_TIMEOUT = 0.5  # seconds


class Flags(IntFlag):
    """Header flag bits."""

    NONE = 0
    BATCH_MODE = 0b01
    RESPONSE_EXPECTED = 0b10


@dataclass(frozen=True)
class Message:
    """A single bus transmission.

    For batch messages ``body`` is the concatenation of every node's slot and
    ``node_count`` is the number of slots.
    """

    command: int
    destination: int = BROADCAST_ADDRESS
    flags: int = Flags.NONE
    body: bytes = b""
    node_count: int = 0

    def __post_init__(self) -> None:
        for name in ("command", "destination", "flags"):
            value = getattr(self, name)
            if not 0 <= value <= MAX_FIELD:
                raise ValueError(f"{name} must be 0-255, got {value}")
        if self.batch_mode:
            if not 1 <= self.node_count <= MAX_FIELD:
                raise ValueError(
                    f"Batch messages need a node count of 1-255, got {self.node_count}"
                )
            if len(self.body) % self.node_count:
                raise ValueError(
                    f"Batch body of {len(self.body)} bytes does not split "
                    f"into {self.node_count} slots"
                )
        elif self.node_count:
            raise ValueError("Only batch messages carry a node count")
        if self.length > MAX_FIELD:
            raise ValueError(f"Body length must be 0-255, got {self.length}")

    @property
    def batch_mode(self) -> bool:
        return bool(self.flags & Flags.BATCH_MODE)

    @property
    def response_expected(self) -> bool:
        return bool(self.flags & Flags.RESPONSE_EXPECTED)

    @property
    def length(self) -> int:
        """The length byte: per-node slot size in batch mode, else body size."""
        if self.batch_mode:
            return len(self.body) // self.node_count
        return len(self.body)

    def header(self) -> bytes:
        """Logical header bytes (after the start marker, before stuffing)."""
        return build_header(
            self.command,
            self.length,
            destination=self.destination,
            flags=self.flags,
            node_count=self.node_count,
        )

    @property
    def crc(self) -> int:
        return crc16(self.header() + self.body)

    def slot(self, index: int) -> bytes:
        """Return the body slot for the node at ``index`` (0-based)."""
        size = self.length
        return self.body[index * size : (index + 1) * size]

    def __repr__(self) -> str:
        return (
            f"Message(command=0x{self.command:02X}, dest={self.destination}, "
            f"flags={self.flags:#04x}, "
            f"body={self.body.hex(' ') if self.body else '(empty)'})"
        )


def build_header(
    command: int,
    length: int,
    destination: int = BROADCAST_ADDRESS,
    flags: int = Flags.NONE,
    node_count: int = 0,
) -> bytes:
    """Build the logical header bytes for a message."""
    header = [flags, destination, command]
    if flags & Flags.BATCH_MODE:
        header.append(node_count)
    header.append(length)
    return bytes(header)


def escape(data: Iterable[int]) -> bytes:
    """Byte-stuff logical bytes so that no raw ``0xFF`` remains."""
    out = bytearray()
    for byte in data:
        if byte == SOM:
            out += bytes([ESCAPE, ESCAPED_SOM])
        elif byte == ESCAPE:
            out += bytes([ESCAPE, ESCAPED_ESCAPE])
        else:
            out.append(byte)
    return bytes(out)


class Unstuffer:
    """Undo :func:`escape` one wire byte at a time.

    Raw start markers must be handled by the caller before feeding.
    """

    def __init__(self) -> None:
        self._escaped = False

    def reset(self) -> None:
        self._escaped = False

    def feed(self, byte: int) -> int | None:
        """Return the logical byte, or ``None`` while inside an escape pair.

        Raises:
            FramingError: If the escape byte is followed by an unknown code.
        """
        if self._escaped:
            self._escaped = False
            if byte == ESCAPED_SOM:
                return SOM
            if byte == ESCAPED_ESCAPE:
                return ESCAPE
            raise FramingError(f"Invalid escape sequence FE {byte:02X}")
        if byte == ESCAPE:
            self._escaped = True
            return None
        return byte


def unescape(data: bytes) -> bytes:
    """Decode a complete stuffed byte string (no start markers allowed)."""
    unstuffer = Unstuffer()
    out = bytearray()
    for byte in data:
        if byte == SOM:
            raise FramingError("Unexpected start marker in stuffed data")
        value = unstuffer.feed(byte)
        if value is not None:
            out.append(value)
    return bytes(out)


def build_frame(message: Message) -> bytes:
    """Serialize a complete message: start marker, stuffed header/body, CRC.

    Args:
        message: The message to serialize.

    Returns:
        The exact bytes to write to the bus.
    """
    logical = message.header() + message.body
    crc = crc16(logical)
    return bytes([SOM, SOM]) + escape(logical + crc_to_bytes(crc))


class ParseState(Enum):
    WAIT_SOM1 = "wait_som1"
    WAIT_SOM2 = "wait_som2"
    HEADER = "header"
    BODY = "body"
    CRC = "crc"
    READY = "ready"
    ABORTED = "aborted"


@dataclass
class FrameHeader:
    """Header fields of the message currently being parsed."""

    flags: int = 0
    destination: int = 0
    command: int = 0
    node_count: int = 0
    length: int = 0
    raw: list[int] = field(default_factory=list)

    @property
    def batch_mode(self) -> bool:
        return bool(self.flags & Flags.BATCH_MODE)

    @property
    def response_expected(self) -> bool:
        return bool(self.flags & Flags.RESPONSE_EXPECTED)

    @property
    def size(self) -> int:
        return 5 if self.batch_mode else 4

    @property
    def complete(self) -> bool:
        return len(self.raw) == self.size

    @property
    def body_length(self) -> int:
        if self.batch_mode:
            return self.node_count * self.length
        return self.length


StreamCallback = Callable[[FrameHeader, int], None]


class FrameParser:
    """Byte-at-a-time parser turning a raw bus stream into messages.

    Usage::

        parser = FrameParser()
        for message in parser.feed_bytes(chunk):
            handle(message)

    Commands listed in ``stream_commands`` carry an open-ended body (the
    addressing exchange). Their bytes are passed to ``on_stream_byte`` and
    the stream ends at the next start marker without producing a message.
    """

    def __init__(
        self,
        receive_timeout: float | None = DEFAULT_RECEIVE_TIMEOUT,
        stream_commands: Iterable[int] = (),
        on_stream_byte: StreamCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._receive_timeout = receive_timeout
        self._stream_commands = frozenset(stream_commands)
        self._on_stream_byte = on_stream_byte
        self._clock = clock
        self._unstuffer = Unstuffer()
        self._last_byte_at = 0.0
        self._crc = CRC_INIT
        self._crc_received: list[int] = []
        self._streaming = False
        self.state = ParseState.WAIT_SOM1
        self.header = FrameHeader()
        self.body = bytearray()
        self.errors = 0
        self.timeouts = 0

    @property
    def in_message(self) -> bool:
        return self.state in (ParseState.HEADER, ParseState.BODY, ParseState.CRC)

    @property
    def streaming(self) -> bool:
        return self._streaming and self.state == ParseState.BODY

    def reset(self) -> None:
        """Drop any partial message and wait for a new start marker."""
        self.state = ParseState.WAIT_SOM1
        self._begin()

    def check_timeout(self) -> bool:
        """Reset a message stuck before READY for longer than the timeout.

        Returns:
            True if a partial message was discarded.
        """
        if self._receive_timeout is None:
            return False
        if self.state not in (ParseState.WAIT_SOM2, ParseState.HEADER,
                              ParseState.BODY, ParseState.CRC):
            return False
        if self._clock() - self._last_byte_at <= self._receive_timeout:
            return False
        logger.debug("Receive timeout in state %s, discarding", self.state.value)
        self.timeouts += 1
        self.reset()
        return True

    def feed(self, byte: int) -> Message | None:
        """Consume one raw byte from the bus.

        Returns:
            The completed ``Message`` when this byte finished a valid frame,
            otherwise ``None``.
        """
        self.check_timeout()
        self._last_byte_at = self._clock()

        if self.state in (ParseState.READY, ParseState.ABORTED):
            self.state = ParseState.WAIT_SOM1

        if byte == SOM:
            self._start_marker()
            return None

        if self.state == ParseState.WAIT_SOM1:
            return None
        if self.state == ParseState.WAIT_SOM2:
            self.state = ParseState.WAIT_SOM1
            return None

        try:
            value = self._unstuffer.feed(byte)
        except FramingError as e:
            self._abort(str(e))
            return None
        if value is None:
            return None

        if self.state == ParseState.HEADER:
            self._parse_header(value)
        elif self.state == ParseState.BODY:
            self._parse_body(value)
        elif self.state == ParseState.CRC:
            return self._parse_crc(value)
        return None

    def feed_bytes(self, data: bytes) -> list[Message]:
        """Consume a chunk of raw bytes, returning every completed message."""
        messages = []
        for byte in data:
            message = self.feed(byte)
            if message is not None:
                messages.append(message)
        return messages

    def _begin(self) -> None:
        self.header = FrameHeader()
        self.body = bytearray()
        self._unstuffer.reset()
        self._crc = CRC_INIT
        self._crc_received = []
        self._streaming = False

    def _start_marker(self) -> None:
        if self.state == ParseState.WAIT_SOM2:
            self._begin()
            self.state = ParseState.HEADER
            return
        if self.state == ParseState.HEADER and not self.header.raw:
            # A run of 0xFF: the last two are the start marker.
            self._begin()
            return
        if self.in_message:
            if not self._streaming:
                # A raw 0xFF cannot occur inside a stuffed message.
                self.errors += 1
                logger.debug(
                    "Start marker inside %s, re-arming", self.state.value
                )
            self._begin()
        self.state = ParseState.WAIT_SOM2

    def _parse_header(self, value: int) -> None:
        self._crc = crc16_update(self._crc, value)
        header = self.header
        header.raw.append(value)
        position = len(header.raw)
        if position == 1:
            header.flags = value
        elif position == 2:
            header.destination = value
        elif position == 3:
            header.command = value
        elif position == 4 and header.batch_mode:
            header.node_count = value
        else:
            header.length = value

        if not header.complete:
            return

        if header.command in self._stream_commands:
            self._streaming = True
            self.state = ParseState.BODY
        elif header.batch_mode and header.node_count == 0:
            self._abort("batch header with a node count of 0")
        elif header.body_length == 0:
            self.state = ParseState.CRC
        else:
            self.state = ParseState.BODY

    def _parse_body(self, value: int) -> None:
        if self._streaming:
            if self._on_stream_byte is not None:
                self._on_stream_byte(self.header, value)
            return
        self._crc = crc16_update(self._crc, value)
        self.body.append(value)
        if len(self.body) >= self.header.body_length:
            self.state = ParseState.CRC

    def _parse_crc(self, value: int) -> Message | None:
        self._crc_received.append(value)
        if len(self._crc_received) < 2:
            return None
        received = (self._crc_received[0] << 8) | self._crc_received[1]
        if received != self._crc:
            self._abort(
                f"CRC mismatch (got 0x{received:04X}, expected 0x{self._crc:04X})"
            )
            return None
        self.state = ParseState.READY
        header = self.header
        return Message(
            command=header.command,
            destination=header.destination,
            flags=header.flags,
            body=bytes(self.body),
            node_count=header.node_count if header.batch_mode else 0,
        )

    def _abort(self, reason: str) -> None:
        self.errors += 1
        logger.debug("Discarding frame: %s", reason)
        self.state = ParseState.ABORTED


def parse_frame(data: bytes) -> Message | None:
    """Parse the first complete message found in ``data``.

    Returns:
        A ``Message`` if a frame with a valid CRC is present, else ``None``.
    """
    parser = FrameParser(receive_timeout=None)
    for byte in data:
        message = parser.feed(byte)
        if message is not None:
            return message
    return None
