"""Tests for CRC-16 calculation."""

from disco_floor_mcp.utils.crc import CRC_INIT, crc16, crc16_update, crc_to_bytes


def test_crc16_empty():
    """CRC of empty data is the initial value."""
    assert crc16(b"") == CRC_INIT == 0xFFFF


def test_crc16_check_value():
    """The standard check string gives the CRC-16/MODBUS check value."""
    result = crc16(b"123456789")
    assert result == 0x4B37, f"Expected 0x4B37, got 0x{result:04X}"


def test_crc16_single_zero_byte():
    """One zero byte, worked out by hand from the 0xA001 polynomial."""
    assert crc16(b"\x00") == 0x40BF


def test_crc16_deterministic():
    """Same input should always produce same output."""
    data = b"\x00\x02\xa1\x03\x12\x34\x56"
    assert crc16(data) == crc16(data)


def test_crc16_different_inputs():
    """Different inputs should produce different CRCs."""
    assert crc16(b"\xa1\x01") != crc16(b"\xa1\x02")


def test_crc16_update_matches_whole_buffer():
    """Folding bytes one at a time equals computing over the whole buffer."""
    data = bytes(range(0, 256, 7))
    crc = CRC_INIT
    for byte in data:
        crc = crc16_update(crc, byte)
    assert crc == crc16(data)


def test_crc16_continues_from_partial():
    """A CRC can be continued across chunks, as the bus session does."""
    head, tail = b"\x03\x00\xa3\x04\x01", b"\x00\x01\xff\x01"
    assert crc16(tail, crc16(head)) == crc16(head + tail)


def test_crc_to_bytes_high_byte_first():
    """The CRC goes on the wire high byte first."""
    assert crc_to_bytes(0x4B37) == b"\x4b\x37"
