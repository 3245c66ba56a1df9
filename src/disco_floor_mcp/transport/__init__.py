"""Bus transports: the pyserial RS-485 adapter and an emulated floor."""

from .daisy_line import DaisyLine
from .emulated_floor import EmulatedFloor, EmulatedNode
from .serial_connection import PortInfo, SerialConnection, available_ports
