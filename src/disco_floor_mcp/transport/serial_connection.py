"""Serial connection to the RS-485 bus adapter.

The adapter is a USB serial dongle driving an RS-485 transceiver. RTS and
DTR are wired together to the first node's daisy-chain enable input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import serial
from serial.tools import list_ports

from ..exceptions import PortError, TransportError
from ..models.config import BAUD_RATE

logger = logging.getLogger(__name__)

WRITE_TIMEOUT = 1.0  # seconds


@dataclass
class PortInfo:
    """Basic identification of a serial device."""

    device: str = ""
    description: str = ""
    hwid: str = ""


def available_ports() -> list[PortInfo]:
    """List the serial devices connected to this computer."""
    return [
        PortInfo(device=p.device, description=p.description or "", hwid=p.hwid or "")
        for p in list_ports.comports()
    ]


class SerialConnection:
    """Manages the serial connection to the bus.

    Usage::

        conn = SerialConnection("/dev/ttyUSB0")
        conn.open()
        conn.write(frame_bytes)
        conn.flush()
        reply = conn.read(0.05)
        conn.close()
    """

    def __init__(self, port: str, baudrate: int = BAUD_RATE) -> None:
        self._port = port
        self._baudrate = baudrate
        self._serial: serial.Serial | None = None
        self._timeout: float | None = None
        self._port_info = PortInfo(device=port)

    @property
    def connected(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def port_info(self) -> PortInfo:
        return self._port_info

    def open(self) -> PortInfo:
        """Open the port with the daisy line released.

        Returns:
            PortInfo describing the opened device.

        Raises:
            PortError: If the device path is invalid or already in use.
        """
        if self.connected:
            return self._port_info

        ser = serial.Serial()
        ser.port = self._port
        ser.baudrate = self._baudrate
        ser.timeout = 0
        ser.write_timeout = WRITE_TIMEOUT
        # Keep the enable line low from the moment the port opens.
        ser.rts = False
        ser.dtr = False
        try:
            ser.open()
        except (serial.SerialException, ValueError) as e:
            raise PortError(f"Could not open serial port {self._port!r}: {e}") from e

        self._serial = ser
        self._timeout = 0
        for info in available_ports():
            if info.device == self._port:
                self._port_info = info
                break

        logger.info("Connected to %s at %d baud", self._port, self._baudrate)
        return self._port_info

    def close(self) -> None:
        """Close the serial port."""
        if self._serial is None:
            return
        try:
            self._serial.close()
        except serial.SerialException as e:
            logger.warning("Error closing port: %s", e)
        finally:
            self._serial = None
            logger.info("Disconnected from %s", self._port)

    def _require(self) -> serial.Serial:
        if not self.connected:
            raise TransportError("Not connected to the bus")
        return self._serial

    def write(self, data: bytes) -> int:
        """Write raw bytes to the bus.

        Raises:
            TransportError: If not connected or the write fails.
        """
        ser = self._require()
        try:
            return ser.write(data)
        except serial.SerialException as e:
            raise TransportError(f"Write failed: {e}") from e

    def flush(self) -> None:
        """Block until every written byte has left the transmit buffer."""
        ser = self._require()
        try:
            ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"Flush failed: {e}") from e

    def read(self, timeout: float) -> bytes:
        """Read whatever arrives within ``timeout`` seconds.

        Returns as soon as at least one byte is available, together with
        anything else already buffered. Returns ``b""`` on timeout.
        """
        ser = self._require()
        try:
            if self._timeout != timeout:
                ser.timeout = timeout
                self._timeout = timeout
            first = ser.read(1)
            if not first:
                return b""
            waiting = ser.in_waiting
            return first + (ser.read(waiting) if waiting else b"")
        except serial.SerialException as e:
            raise TransportError(f"Read failed: {e}") from e

    def reset_input(self) -> None:
        """Drop any stale bytes in the receive buffer."""
        ser = self._require()
        try:
            ser.reset_input_buffer()
        except serial.SerialException as e:
            raise TransportError(f"Could not reset input: {e}") from e

    def set_daisy(self, enabled: bool) -> None:
        """Drive the outgoing daisy-chain line (RTS and DTR together)."""
        ser = self._require()
        try:
            ser.rts = enabled
            ser.dtr = enabled
        except serial.SerialException as e:
            raise TransportError(f"Could not set daisy line: {e}") from e
