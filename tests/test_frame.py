"""Tests for frame layout and checksum."""

import pytest

from femto_flasher.protocol.frame import (
    FRAME_SIZE,
    Frame,
    checksum,
    CMD_READ_FLASH,
    CMD_LOAD_BUFFER,
)


def test_checksum_golden_vectors():
    """Hand-folded values for the '@'-seeded revision."""
    assert checksum(bytes(5), 0x40) == 0xBA
    assert checksum(bytes([0, 0, 0, 0, CMD_READ_FLASH]), 0x40) == 0x3A


def test_checksum_depends_on_seed():
    payload = bytes([0x12, 0x34, 0x60, 0x07, CMD_LOAD_BUFFER])
    assert checksum(payload, 0x40) != checksum(payload, 0x41)
    assert checksum(payload, 0x01) != checksum(payload, 0x40)


def test_checksum_is_deterministic():
    payload = bytes([0xAA, 0x55, 0x80, 0x07, 0x45])
    assert checksum(payload, 0x40) == checksum(payload, 0x40)


def test_checksum_ignores_stale_checksum_slot():
    """The slot is folded as zero, whatever it held before."""
    payload = bytes([1, 2, 3, 4, 5])
    assert checksum(payload + b"\x00", 0x40) == checksum(payload + b"\xEE", 0x40)


@pytest.mark.parametrize("seed", [0x40, 0x41, 0x01])
def test_single_bit_flip_is_detected(seed):
    """Flipping any bit of any transmitted byte breaks the checksum match."""
    frame = Frame.build(0x43, z=0x0760, r0=0x12, r1=0x34)
    wire = frame.finalize(seed)

    for index in range(FRAME_SIZE):
        for bit in range(8):
            corrupted = bytearray(wire)
            corrupted[index] ^= 1 << bit
            assert checksum(bytes(corrupted[:5]), seed) != corrupted[5]


class TestFrame:
    """Field helpers and wire encoding."""

    def test_field_order_on_the_wire(self):
        frame = Frame()
        frame.set_r01(0xBEEF).set_z(0x0780).set_command(0x89)
        wire = frame.finalize(0x40)
        assert wire[:5] == bytes([0xEF, 0xBE, 0x80, 0x07, 0x89])
        assert wire[5] == frame.checksum == checksum(wire[:5], 0x40)
        assert len(wire) == FRAME_SIZE

    def test_z_property_roundtrip(self):
        frame = Frame.build(CMD_READ_FLASH, z=0x1234)
        assert (frame.z_low, frame.z_high) == (0x34, 0x12)
        assert frame.z == 0x1234

    def test_finalize_recomputes_after_mutation(self):
        frame = Frame.build(CMD_READ_FLASH, z=0)
        first = frame.finalize(0x40)
        frame.set_z(1)
        second = frame.finalize(0x40)
        assert first[5] != second[5]
        assert second[5] == checksum(second[:5], 0x40)

    def test_build_masks_register_values(self):
        frame = Frame.build(CMD_LOAD_BUFFER, z=2, r0=0x1FF, r1=0x100)
        assert (frame.r0, frame.r1) == (0xFF, 0x00)
