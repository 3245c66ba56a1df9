"""CRC-16 used by every message on the floor bus.

Reflected polynomial 0xA001 with an initial value of 0xFFFF (the same
algorithm as avr-libc's ``_crc16_update``, also known as CRC-16/MODBUS).
There is no final XOR.
"""

from __future__ import annotations

from collections.abc import Iterable

CRC_INIT = 0xFFFF
CRC_POLY = 0xA001


def crc16_update(crc: int, byte: int) -> int:
    """Fold a single byte into a running CRC."""
    crc ^= byte & 0xFF
    for _ in range(8):
        if crc & 1:
            crc = (crc >> 1) ^ CRC_POLY
        else:
            crc >>= 1
    return crc & 0xFFFF


def crc16(data: Iterable[int], crc: int = CRC_INIT) -> int:
    """Compute the CRC of a byte sequence, optionally continuing from ``crc``."""
    for byte in data:
        crc = crc16_update(crc, byte)
    return crc


def crc_to_bytes(crc: int) -> bytes:
    """Split a CRC into its on-the-wire order (high byte first)."""
    return bytes([(crc >> 8) & 0xFF, crc & 0xFF])
