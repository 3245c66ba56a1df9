"""Errors raised by the floor bus.

Only addressing and transport errors stop the update cycle. Framing errors
and response timeouts are resolved where they happen and are only logged.
"""

from __future__ import annotations


class FloorBusError(Exception):
    """Base class for all floor bus errors."""


class FramingError(FloorBusError):
    """A received frame had a bad CRC, length or escape sequence."""


class AddressingError(FloorBusError):
    """Discovery found no nodes or a node could not be corrected."""


class ResponseTimeoutError(FloorBusError):
    """A node did not answer within the response timeout."""

    def __init__(self, node_index: int, missing: int) -> None:
        super().__init__(
            f"Node {node_index + 1} timed out, default-filled {missing} byte(s)"
        )
        self.node_index = node_index
        self.missing = missing


class TransportError(FloorBusError):
    """The serial port failed or closed underneath the session."""


class PortError(TransportError):
    """The serial device could not be opened."""


class BusBusyError(FloorBusError):
    """A message was started while another one is still in flight."""
