"""
Firmware upload planning and execution.

The bootloader lives at the top of flash and must regain control on every
reset, so the application image is patched before upload:

1. The application's reset vector (an rjmp at address 0) is re-encoded as
   an rcall placed in the last word before the bootloader. The bootloader
   jumps there to start the application.
2. Address 0 is overwritten with an rjmp into the bootloader.

Pages are then programmed in order. A page that is entirely 0xFF is only
erased; any other page is loaded into the page buffer, erased and
committed, in that order.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..models.registry import DeviceModel, get_device, DEFAULT_DEVICE
from ..protocol.engine import ProtocolError
from ..protocol.memory import MemoryOps, ValueMismatch
from ..protocol.transport import TransportError

logger = logging.getLogger(__name__)

# AVR relative jump / call encodings: opcode nibble + 12-bit word offset
RJMP_OPCODE = 0xC000
RCALL_OPCODE = 0xD000
OPCODE_MASK = 0xF000
OFFSET_MASK = 0x0FFF


class UploadAborted(Exception):
    """
    A page operation failed; remaining pages were not touched.

    Attributes:
        address: Page address of the failed operation
        pages_done: Pages fully processed before the failure
        cause: Underlying failure
    """

    def __init__(self, address: int, pages_done: int, cause: Exception):
        self.address = address
        self.pages_done = pages_done
        self.cause = cause
        super().__init__(
            f"Upload aborted at page 0x{address:04X} after {pages_done} pages: {cause}"
        )


def relative_offset(word: int) -> int:
    """Signed byte offset encoded in an rjmp/rcall word."""
    k = word & OFFSET_MASK
    if k & 0x800:
        k -= 0x1000
    return k * 2


def relative_target(word: int, at: int) -> int:
    """Byte address reached by an rjmp/rcall located at byte address at."""
    return at + 2 + relative_offset(word)


def encode_relative(opcode: int, at: int, target: int) -> int:
    """Encode an rjmp/rcall at byte address at that reaches target."""
    return opcode | (((target - at - 2) // 2) & OFFSET_MASK)


def read_word(buf: bytes, address: int) -> int:
    return buf[address] | buf[address + 1] << 8


def write_word(buf: bytearray, address: int, word: int) -> None:
    buf[address] = word & 0xFF
    buf[address + 1] = (word >> 8) & 0xFF


@dataclass(frozen=True)
class VectorPatch:
    """Result of relocating the reset vector."""
    app_entry: int
    return_call: int
    boot_jump: int
    slot: int


def patch_vectors(image: bytearray, device: DeviceModel) -> VectorPatch:
    """
    Relocate the application's reset vector and hook the bootloader.

    Args:
        image: Image padded to device.bootloader_start bytes, patched in place
        device: Target device layout

    Raises:
        ValueError: If the image does not start with an rjmp
    """
    first = read_word(image, 0)
    if first & OPCODE_MASK != RJMP_OPCODE:
        raise ValueError(
            f"Image does not start with a relative jump (first word 0x{first:04X})"
        )

    app_entry = relative_target(first, 0) % device.flash_size
    slot = device.return_vector_slot
    return_call = encode_relative(RCALL_OPCODE, slot, app_entry)
    boot_jump = encode_relative(RJMP_OPCODE, 0, device.bootloader_start)

    write_word(image, slot, return_call)
    write_word(image, 0, boot_jump)

    logger.info(f"App starts at 0x{app_entry:04X}")
    logger.info(
        f"Return vector at 0x{slot:04X}: "
        f"{return_call & 0xFF:02x} {return_call >> 8:02x} (rcall)"
    )
    return VectorPatch(app_entry=app_entry, return_call=return_call, boot_jump=boot_jump, slot=slot)


class PageAction(Enum):
    LOAD = "load"
    ERASE = "erase"
    COMMIT = "commit"


@dataclass(frozen=True)
class PageOperation:
    """One step of the upload plan."""
    action: PageAction
    address: int
    data: bytes = b""

    def __str__(self) -> str:
        return f"{self.action.value:<6} 0x{self.address:04X}"


@dataclass
class UploadReport:
    """Outcome of a completed upload."""
    pages_total: int = 0
    pages_written: int = 0
    pages_blank: int = 0
    operations: int = 0
    mismatches: List[ValueMismatch] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return not self.mismatches


class UploadPlanner:
    """
    Turns a raw application image into page operations and runs them.

    Example:
        planner = UploadPlanner.from_file("app.bin")
        report = planner.execute(memory)
        report.mismatches = planner.verify(memory)
    """

    def __init__(self, image: bytes, device: Optional[DeviceModel] = None):
        self.device = device or get_device(DEFAULT_DEVICE)
        self.warnings: List[str] = []

        limit = self.device.bootloader_start
        if not image:
            raise ValueError("Image is empty")
        if len(image) > limit:
            raise ValueError(
                f"Image too large: {len(image)} bytes "
                f"(application area is {limit} bytes)"
            )

        self.length = len(image)
        slot = self.device.return_vector_slot
        if any(b != self.device.pad_byte for b in image[slot:slot + 2]):
            self.warnings.append(
                f"Image data at 0x{slot:04X} is overwritten by the return vector"
            )

        self.image = bytearray(image) + bytearray(
            [self.device.pad_byte] * (limit - len(image))
        )
        self.patch = patch_vectors(self.image, self.device)

    @classmethod
    def from_file(cls, path: str, device: Optional[DeviceModel] = None) -> "UploadPlanner":
        """Build a planner from a raw binary file."""
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Firmware image not found: {path}")
        return cls(file_path.read_bytes(), device)

    def is_blank(self, page: bytes) -> bool:
        return all(b == self.device.pad_byte for b in page)

    def page_addresses(self) -> List[int]:
        """Pages to program, in order."""
        page_size = self.device.page_size
        addresses = list(range(0, self.length, page_size))
        end = addresses[-1] + page_size
        # The return vector page must be written even if the image stops short
        if end < self.device.bootloader_start:
            addresses.append(self.device.return_vector_page)
        return addresses

    def page_data(self, address: int) -> bytes:
        return bytes(self.image[address:address + self.device.page_size])

    def page_operations(self, address: int) -> List[PageOperation]:
        data = self.page_data(address)
        if self.is_blank(data):
            return [PageOperation(PageAction.ERASE, address)]
        return [
            PageOperation(PageAction.LOAD, address, data),
            PageOperation(PageAction.ERASE, address),
            PageOperation(PageAction.COMMIT, address),
        ]

    def plan(self) -> List[PageOperation]:
        """Ordered page operations; the device is not touched."""
        operations: List[PageOperation] = []
        for address in self.page_addresses():
            operations.extend(self.page_operations(address))
        return operations

    def _apply(self, memory: MemoryOps, op: PageOperation) -> None:
        if op.action is PageAction.LOAD:
            memory.load_page_buffer(op.data)
        elif op.action is PageAction.ERASE:
            memory.erase_page(op.address)
        else:
            memory.commit_page(op.address)

    def execute(
        self,
        memory: MemoryOps,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> UploadReport:
        """
        Program every planned page.

        Args:
            memory: Memory operations bound to a live engine
            progress_cb: Optional callback(pages_done, pages_total)

        Raises:
            UploadAborted: On the first failed page operation
        """
        addresses = self.page_addresses()
        report = UploadReport(pages_total=len(addresses))

        logger.info(f"Uploading {self.length} bytes in {len(addresses)} pages")
        for done, address in enumerate(addresses):
            operations = self.page_operations(address)
            try:
                for op in operations:
                    self._apply(memory, op)
                    report.operations += 1
            except (ProtocolError, TransportError) as e:
                logger.error(f"Page 0x{address:04X} failed: {e}")
                raise UploadAborted(address, done, e) from e

            if len(operations) == 1:
                report.pages_blank += 1
            else:
                report.pages_written += 1

            if progress_cb:
                progress_cb(done + 1, len(addresses))

        logger.info(
            f"Upload complete: {report.pages_written} written, "
            f"{report.pages_blank} blank"
        )
        return report

    def verify(
        self,
        memory: MemoryOps,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> List[ValueMismatch]:
        """
        Read back every programmed page and compare with the patched image.

        Mismatches are reported, never rewritten.
        """
        mismatches: List[ValueMismatch] = []
        addresses = self.page_addresses()
        for done, address in enumerate(addresses):
            expected = self.page_data(address)
            actual = memory.read_flash(address, len(expected))
            for offset, (want, got) in enumerate(zip(expected, actual)):
                if want != got:
                    mismatches.append(ValueMismatch(address + offset, want, got))
            if progress_cb:
                progress_cb(done + 1, len(addresses))

        if mismatches:
            logger.warning(f"Verification found {len(mismatches)} mismatching bytes")
        else:
            logger.info("Verification passed")
        return mismatches

    def summary(self) -> List[Tuple[str, str]]:
        """Key facts for display."""
        operations = self.plan()
        written = sum(1 for op in operations if op.action is PageAction.COMMIT)
        return [
            ("Image size", f"{self.length} bytes"),
            ("App entry", f"0x{self.patch.app_entry:04X}"),
            ("Return vector", f"0x{self.patch.slot:04X} = 0x{self.patch.return_call:04X}"),
            ("Boot jump", f"0x{self.patch.boot_jump:04X}"),
            ("Pages", f"{len(self.page_addresses())} ({written} written)"),
        ]
