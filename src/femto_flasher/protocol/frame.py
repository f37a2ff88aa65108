"""
Bootloader command frame.

Frame format (6 bytes, bit-exact on the wire):
[ r0 | r1 | z_low | z_high | command | checksum ]

r0/r1 carry either a 16-bit value or two independent payload bytes,
z_low/z_high form the Z pointer (flash/data address or page buffer
offset). The checksum covers the five leading bytes and is seeded with a
per-revision constant (see ProtocolProfile.seed).
"""

from dataclasses import dataclass

FRAME_SIZE = 6

# Opcodes understood by the bootloader
CMD_WRITE_DATA = 0x00    # store r0 at data address Z, reply with readback
CMD_LOAD_BUFFER = 0x41   # load r1:r0 into page buffer at offset Z
CMD_ERASE_PAGE = 0x43    # erase flash page at Z
CMD_WRITE_PAGE = 0x45    # commit page buffer to flash page at Z
CMD_READ_FLASH = 0x80    # reply with flash byte at Z
CMD_READ_FUSES = 0x89    # reply with fuse/lock byte Z
CMD_READ_DATA = 0xD0     # reply with data space byte at Z


def checksum(frame: bytes, seed: int) -> int:
    """
    Calculate the frame checksum.

    The fold runs over all six frame bytes with the checksum slot taken as
    zero: sum = ((sum ^ byte) + 1) for each byte, starting from seed. The
    result is (sum - 1) ^ 0xFF, all arithmetic modulo 256.

    Args:
        frame: The five payload/opcode bytes (a sixth byte is ignored)
        seed: Fold seed for the protocol revision

    Returns:
        Checksum byte
    """
    payload = bytes(frame[:FRAME_SIZE - 1]) + b"\x00"
    total = seed & 0xFF
    for byte in payload:
        total = ((total ^ byte) + 1) & 0xFF
    return ((total - 1) & 0xFF) ^ 0xFF


@dataclass
class Frame:
    """
    One bootloader command.

    Fields are plain assignments with no validation; the bootloader defines
    which opcodes are legal. The checksum is only meaningful after
    finalize() and must be recomputed before every transmission.
    """
    r0: int = 0
    r1: int = 0
    z_low: int = 0
    z_high: int = 0
    command: int = 0
    checksum: int = 0

    def set_r01(self, value: int) -> "Frame":
        """Split a 16-bit value across r0 (low) and r1 (high)."""
        self.r0 = value & 0xFF
        self.r1 = (value >> 8) & 0xFF
        return self

    def set_z(self, address: int) -> "Frame":
        """Load the Z pointer."""
        self.z_low = address & 0xFF
        self.z_high = (address >> 8) & 0xFF
        return self

    def set_command(self, command: int) -> "Frame":
        self.command = command & 0xFF
        return self

    @property
    def z(self) -> int:
        return self.z_high << 8 | self.z_low

    def payload(self) -> bytes:
        """The five bytes covered by the checksum."""
        return bytes([self.r0 & 0xFF, self.r1 & 0xFF, self.z_low, self.z_high, self.command])

    def finalize(self, seed: int) -> bytes:
        """Recompute the checksum and return the wire bytes."""
        self.checksum = checksum(self.payload(), seed)
        return self.payload() + bytes([self.checksum])

    @classmethod
    def build(cls, command: int, z: int = 0, r0: int = 0, r1: int = 0) -> "Frame":
        """Build a frame from its fields."""
        frame = cls(r0=r0 & 0xFF, r1=r1 & 0xFF)
        frame.set_z(z)
        frame.set_command(command)
        return frame

    def __str__(self) -> str:
        return (
            f"cmd=0x{self.command:02X} z=0x{self.z:04X} "
            f"r0=0x{self.r0:02X} r1=0x{self.r1:02X}"
        )
