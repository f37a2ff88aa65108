"""
Memory operations expressed as bootloader commands.

Every byte read costs one command round trip; page programming is a
sequence of page-buffer loads (one word per command), an erase and a
commit.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .engine import ProtocolEngine, ProtocolError
from .frame import (
    Frame,
    CMD_WRITE_DATA,
    CMD_LOAD_BUFFER,
    CMD_ERASE_PAGE,
    CMD_WRITE_PAGE,
    CMD_READ_FLASH,
    CMD_READ_FUSES,
    CMD_READ_DATA,
)
from ..models.registry import DeviceModel, get_device, DEFAULT_DEVICE

logger = logging.getLogger(__name__)


class ReadAborted(ProtocolError):
    """
    A range read stopped early.

    Attributes:
        address: Address whose command failed
        partial: Bytes read before the failure (not to be trusted as an image)
        cause: Underlying failure
    """

    def __init__(self, address: int, partial: bytes, cause: Exception):
        self.address = address
        self.partial = partial
        self.cause = cause
        super().__init__(f"Read aborted at 0x{address:04X}: {cause}")


class ValueMismatch(ProtocolError):
    """Readback after a write differs from the value written"""

    def __init__(self, address: int, expected: int, actual: int):
        self.address = address
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Mismatch at 0x{address:04X}: expected 0x{expected:02X}, got 0x{actual:02X}"
        )


@dataclass(frozen=True)
class FuseBytes:
    """Fuse and lock bytes in the order the bootloader returns them."""
    low: int
    lock: int
    extended: int
    high: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "FuseBytes":
        if len(data) < 4:
            raise ValueError(f"Need 4 fuse bytes, got {len(data)}")
        return cls(low=data[0], lock=data[1], extended=data[2], high=data[3])

    def to_dict(self) -> dict:
        return {
            "LFuse": self.low,
            "HFuse": self.high,
            "EFuse": self.extended,
            "LockBits": self.lock,
        }


class MemoryOps:
    """
    Typed memory access on top of ProtocolEngine.

    Example:
        memory = MemoryOps(engine)
        flash = memory.read_flash(0, 2048)
        memory.load_page_buffer(page)
        memory.erase_page(0x0760)
        memory.commit_page(0x0760)
    """

    def __init__(self, engine: ProtocolEngine, device: Optional[DeviceModel] = None):
        self.engine = engine
        self.device = device or get_device(DEFAULT_DEVICE)

    def _run(self, command: int, z: int = 0, r0: int = 0, r1: int = 0) -> int:
        return self.engine.execute(Frame.build(command, z=z, r0=r0, r1=r1))

    def read_range(
        self,
        start: int,
        length: int,
        command: int,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> bytes:
        """
        Read length bytes starting at start, one command per address.

        Args:
            start: First Z address
            length: Number of bytes
            command: Read opcode
            progress_cb: Optional callback(bytes_done, total)

        Raises:
            ReadAborted: On the first failed command; nothing after it is read
        """
        if length < 0:
            raise ValueError(f"Negative length: {length}")

        data = bytearray()
        frame = Frame.build(command)
        for address in range(start, start + length):
            frame.set_z(address)
            try:
                data.append(self.engine.execute(frame))
            except ProtocolError as e:
                raise ReadAborted(address, bytes(data), e) from e

            if progress_cb:
                progress_cb(len(data), length)

        logger.debug(f"Read 0x{start:04X}+{length} with cmd 0x{command:02X}")
        return bytes(data)

    def read_flash(
        self,
        start: int = 0,
        length: Optional[int] = None,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> bytes:
        """Read program memory (whole flash by default)."""
        if length is None:
            length = self.device.flash_size - start
        return self.read_range(start, length, CMD_READ_FLASH, progress_cb)

    def read_fuses(self) -> FuseBytes:
        """Read fuse and lock bytes."""
        data = self.read_range(0, self.device.fuse_count, CMD_READ_FUSES)
        return FuseBytes.from_bytes(data)

    def read_data(self, address: int) -> int:
        """Read one byte of the data address space (registers, I/O, RAM)."""
        return self._run(CMD_READ_DATA, z=address)

    def read_registers(self, count: Optional[int] = None) -> bytes:
        count = self.device.register_count if count is None else count
        return self.read_range(0, count, CMD_READ_DATA)

    def read_ram(self, length: Optional[int] = None) -> bytes:
        length = self.device.ram_size if length is None else length
        return self.read_range(self.device.ram_start, length, CMD_READ_DATA)

    def write_byte(self, address: int, value: int, verify: bool = False) -> int:
        """
        Store one byte in the data address space.

        Returns:
            Value the device reports at address after the write

        Raises:
            ValueMismatch: If verify is set and the readback differs
        """
        actual = self._run(CMD_WRITE_DATA, z=address, r0=value, r1=value)
        if actual != value & 0xFF:
            logger.warning(
                f"Write 0x{value:02X} to 0x{address:04X} reads back 0x{actual:02X}"
            )
            if verify:
                raise ValueMismatch(address, value & 0xFF, actual)
        return actual

    def erase_page(self, address: int) -> int:
        """Erase the flash page containing address."""
        logger.debug(f"Erase page 0x{address:04X}")
        return self._run(CMD_ERASE_PAGE, z=address)

    def load_word(self, offset: int, low: int, high: int) -> int:
        """Load one instruction word into the page buffer."""
        return self._run(CMD_LOAD_BUFFER, z=offset, r0=low, r1=high)

    def load_page_buffer(self, data: bytes) -> None:
        """
        Fill the device page buffer from offset 0.

        An odd trailing byte is padded with the erased value.

        Raises:
            ValueError: If data exceeds one page (nothing is sent)
        """
        page_size = self.device.page_size
        if len(data) > page_size:
            raise ValueError(
                f"Page buffer overflow: {len(data)} bytes (max {page_size})"
            )

        if len(data) % 2:
            data = bytes(data) + bytes([self.device.pad_byte])

        for offset in range(0, len(data), 2):
            self.load_word(offset, data[offset], data[offset + 1])

    def commit_page(self, address: int) -> int:
        """Write the page buffer to the flash page at address."""
        logger.debug(f"Write page 0x{address:04X}")
        return self._run(CMD_WRITE_PAGE, z=address)

    def read_eeprom(self, address: int = 0, length: Optional[int] = None) -> bytes:
        """EEPROM access needs I/O register sequencing the bootloader lacks."""
        raise NotImplementedError("EEPROM read is not implemented by the bootloader client")

    def write_eeprom(self, address: int, data: bytes) -> None:
        """EEPROM access needs I/O register sequencing the bootloader lacks."""
        raise NotImplementedError("EEPROM write is not implemented by the bootloader client")
