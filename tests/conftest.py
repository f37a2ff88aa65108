"""Shared fakes: a scripted transport and a simulated bootloader."""

from collections import deque
from typing import Callable, Iterable, List, Optional, Tuple

import pytest

from femto_flasher.models import get_device, get_profile
from femto_flasher.protocol.frame import (
    FRAME_SIZE,
    checksum,
    CMD_WRITE_DATA,
    CMD_LOAD_BUFFER,
    CMD_ERASE_PAGE,
    CMD_WRITE_PAGE,
    CMD_READ_FLASH,
    CMD_READ_FUSES,
    CMD_READ_DATA,
)

ACK = ord("@")
NAK = ord("W")
READY = ord("W")


class FakeTransport:
    """
    Replays scripted reply bytes and records every write.

    A None entry in the script is one poll window with no data.
    """

    def __init__(self, replies: Iterable[Optional[int]] = ()):
        self.replies = deque(replies)
        self.writes: List[bytes] = []
        self.closed = False

    def queue(self, *items: Optional[int]) -> None:
        self.replies.extend(items)

    def write(self, data: bytes) -> int:
        self.writes.append(bytes(data))
        return len(data)

    def read_ready(self, timeout: float) -> bool:
        if not self.replies:
            return False
        if self.replies[0] is None:
            self.replies.popleft()
            return False
        return True

    def read_byte(self) -> int:
        return self.replies.popleft()

    def drain(self, timeout: float) -> bytes:
        """Consume bytes up to and including the next silent window."""
        junk = bytearray()
        while self.replies:
            item = self.replies.popleft()
            if item is None:
                break
            junk.append(item)
        return bytes(junk)

    def close(self) -> None:
        self.closed = True

    @property
    def frames(self) -> List[bytes]:
        return [w for w in self.writes if len(w) == FRAME_SIZE]

    @property
    def fillers(self) -> List[bytes]:
        return [w for w in self.writes if w == b"\x00"]


class FakeBootloader:
    """
    Simulated bootloader on the other end of the link.

    Validates checksums with the profile seed, keeps flash / page buffer /
    data space state and answers every valid frame with ack + result.
    drop_result(cmd, z) returning True swallows that command's result.
    """

    FUSES = bytes([0x64, 0xFF, 0xFF, 0xDF])  # low, lock, extended, high

    def __init__(self, profile=None, device=None, reset_reason: Optional[int] = 0x02):
        self.profile = profile or get_profile("femto")
        self.device = device or get_device("attiny2313")
        self.flash = bytearray([0xFF] * self.device.flash_size)
        self.page_buffer = bytearray([0xFF] * self.device.page_size)
        self.data_space = bytearray(range(256))
        self.commands: List[Tuple[int, int]] = []
        self.writes: List[bytes] = []
        self.drop_result: Optional[Callable[[int, int], bool]] = None
        self.closed = False
        self._rx = bytearray()
        self._tx: deque = deque()
        if reset_reason is not None:
            self._tx.extend([reset_reason, self.profile.ready_byte])

    def write(self, data: bytes) -> int:
        self.writes.append(bytes(data))
        self._rx.extend(data)
        while len(self._rx) >= FRAME_SIZE:
            frame = bytes(self._rx[:FRAME_SIZE])
            del self._rx[:FRAME_SIZE]
            self._handle(frame)
        return len(data)

    def read_ready(self, timeout: float) -> bool:
        return bool(self._tx)

    def read_byte(self) -> int:
        return self._tx.popleft()

    def drain(self, timeout: float) -> bytes:
        junk = bytes(self._tx)
        self._tx.clear()
        return junk

    def close(self) -> None:
        self.closed = True

    def _handle(self, frame: bytes) -> None:
        if checksum(frame[:5], self.profile.seed) != frame[5]:
            self._tx.append(self.profile.checksum_error_byte)
            return

        r0, r1, z_low, z_high, cmd = frame[:5]
        z = z_high << 8 | z_low
        self._tx.append(self.profile.ack_byte)
        self.commands.append((cmd, z))
        result = self._execute(cmd, z, r0, r1)
        if self.drop_result and self.drop_result(cmd, z):
            return
        self._tx.append(result)

    def _execute(self, cmd: int, z: int, r0: int, r1: int) -> int:
        page_size = self.device.page_size
        if cmd == CMD_READ_FLASH:
            return self.flash[z]
        if cmd == CMD_READ_FUSES:
            return self.FUSES[z]
        if cmd == CMD_READ_DATA:
            return self.data_space[z]
        if cmd == CMD_WRITE_DATA:
            self.data_space[z] = r0
            return self.data_space[z]
        if cmd == CMD_LOAD_BUFFER:
            offset = z & (page_size - 1)
            self.page_buffer[offset] = r0
            self.page_buffer[offset + 1] = r1
            return 1
        if cmd == CMD_ERASE_PAGE:
            page = z & ~(page_size - 1)
            self.flash[page:page + page_size] = bytes([0xFF] * page_size)
            return 1
        if cmd == CMD_WRITE_PAGE:
            page = z & ~(page_size - 1)
            for i, b in enumerate(self.page_buffer):
                self.flash[page + i] &= b
            self.page_buffer[:] = bytes([0xFF] * page_size)
            return 1
        return 0


@pytest.fixture
def profile():
    return get_profile("femto")


@pytest.fixture
def device():
    return get_device("attiny2313")


@pytest.fixture
def bootloader(profile, device):
    return FakeBootloader(profile, device)
