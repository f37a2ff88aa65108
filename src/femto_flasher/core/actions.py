"""
Core workflow actions.

Each action runs one top-level operation against a connected bootloader
session and reports the outcome as an OperationResult. Exceptions never
escape an action; they are recorded as errors naming the failure kind.
"""

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

from .results import OperationResult
from .safety import SafetyContext, require_write_permission, WritePermissionError
from .upload import UploadPlanner, UploadAborted
from ..models.registry import (
    DeviceModel,
    ProtocolProfile,
    get_device,
    get_profile,
    DEFAULT_DEVICE,
    DEFAULT_PROFILE,
)
from ..protocol.engine import ProtocolEngine, ProtocolError, ResetEvent
from ..protocol.memory import MemoryOps, ReadAborted
from ..protocol.transport import Transport, TransportError, open_serial

logger = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[int, int], None]]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records: List[str] = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "femto_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


@dataclass
class BootloaderSession:
    """An open connection: transport, engine and memory ops for one device."""
    transport: Transport
    engine: ProtocolEngine
    memory: MemoryOps
    device: DeviceModel
    profile: ProtocolProfile
    reset: Optional[ResetEvent] = None
    notes: List[str] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        transport: Transport,
        profile: Optional[ProtocolProfile] = None,
        device: Optional[DeviceModel] = None,
    ) -> "BootloaderSession":
        profile = profile or get_profile(DEFAULT_PROFILE)
        device = device or get_device(DEFAULT_DEVICE)
        engine = ProtocolEngine(transport, profile)
        return cls(
            transport=transport,
            engine=engine,
            memory=MemoryOps(engine, device),
            device=device,
            profile=profile,
        )

    def wait_for_reset(self, on_idle: Optional[Callable[[], None]] = None) -> ResetEvent:
        """Block until the device enters the bootloader."""
        self.reset = self.engine.wait_for_reset(on_idle=on_idle)
        return self.reset

    def close(self) -> None:
        self.engine.close()


@contextmanager
def open_session(
    port: str,
    profile: Optional[ProtocolProfile] = None,
    device: Optional[DeviceModel] = None,
) -> Iterator[BootloaderSession]:
    """
    Open the serial port and yield a session; the port is always closed.

    Raises:
        TransportError: If the port cannot be opened
    """
    profile = profile or get_profile(DEFAULT_PROFILE)
    transport = open_serial(port, baudrate=profile.baudrate)
    session = BootloaderSession.create(transport, profile, device)
    try:
        yield session
    finally:
        session.close()


def _base_result(operation: str, session: BootloaderSession, region: str = "") -> OperationResult:
    result = OperationResult.success(operation=operation, device=session.device.name, region=region)
    result.metadata["profile"] = session.profile.name
    return result


def _finish(result: OperationResult, session: BootloaderSession, logs: List[str]) -> OperationResult:
    result.metadata["stats"] = session.engine.stats.to_dict()
    result.logs.extend(logs)
    return result


def read_flash(
    session: BootloaderSession,
    start: int = 0,
    length: Optional[int] = None,
    progress_cb: ProgressCallback = None,
) -> OperationResult:
    """
    Read program memory.

    Returns:
        OperationResult with metadata["data"] holding the bytes on success.
        A failed read carries no data.
    """
    if length is None:
        length = session.device.flash_size - start
    region = f"0x{start:04X}-0x{start + length:04X}"
    result = _base_result("read_flash", session, region)

    with _capture_logs() as logs:
        try:
            data = session.memory.read_flash(start, length, progress_cb=progress_cb)
            result.bytes_len = len(data)
            result.metadata["data"] = data
            result.metadata["start"] = start
            result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        except ReadAborted as e:
            result.add_error(f"Read aborted at 0x{e.address:04X}: {_describe(e.cause)}")
        except (ProtocolError, TransportError) as e:
            result.add_error(_describe(e))

    return _finish(result, session, logs)


def _read_data_space(
    operation: str,
    session: BootloaderSession,
    start: int,
    reader: Callable[[], bytes],
) -> OperationResult:
    result = _base_result(operation, session)
    with _capture_logs() as logs:
        try:
            data = reader()
            result.region = f"0x{start:04X}-0x{start + len(data):04X}"
            result.bytes_len = len(data)
            result.metadata["data"] = data
            result.metadata["start"] = start
        except ReadAborted as e:
            result.add_error(f"Read aborted at 0x{e.address:04X}: {_describe(e.cause)}")
        except (ProtocolError, TransportError) as e:
            result.add_error(_describe(e))
    return _finish(result, session, logs)


def read_registers(session: BootloaderSession) -> OperationResult:
    """Read the register file through the data address space."""
    return _read_data_space("read_registers", session, 0, session.memory.read_registers)


def read_ram(session: BootloaderSession) -> OperationResult:
    """Read SRAM through the data address space."""
    return _read_data_space(
        "read_ram", session, session.device.ram_start, session.memory.read_ram
    )


def read_fuses(session: BootloaderSession) -> OperationResult:
    """
    Read fuse and lock bytes.

    Returns:
        OperationResult with metadata["fuses"] (FuseBytes) on success
    """
    result = _base_result("read_fuses", session)
    with _capture_logs() as logs:
        try:
            fuses = session.memory.read_fuses()
            result.metadata["fuses"] = fuses
            result.bytes_len = session.device.fuse_count
        except ReadAborted as e:
            result.add_error(f"Read aborted at fuse {e.address}: {_describe(e.cause)}")
        except (ProtocolError, TransportError) as e:
            result.add_error(_describe(e))
    return _finish(result, session, logs)


def _check_permission(
    result: OperationResult,
    safety: Optional[SafetyContext],
    target_region: str,
    bytes_length: int,
) -> bool:
    if safety is None:
        return True
    try:
        require_write_permission(safety, target_region=target_region, bytes_length=bytes_length)
        return True
    except WritePermissionError as e:
        result.add_error(f"Write not permitted: {e.reason}")
        return False


def preview_upload(image_path: str, device: Optional[DeviceModel] = None) -> OperationResult:
    """
    Plan an upload without touching a device.

    Returns:
        OperationResult with metadata["planner"] and metadata["plan"]
    """
    device = device or get_device(DEFAULT_DEVICE)
    result = OperationResult.success(
        operation="upload_preview",
        device=device.name,
        region=f"0x0000-0x{device.bootloader_start:04X}",
    )
    with _capture_logs() as logs:
        try:
            planner = UploadPlanner.from_file(image_path, device)
        except (OSError, ValueError) as e:
            result.add_error(_describe(e))
        else:
            result.bytes_len = planner.length
            result.hashes["sha256"] = hashlib.sha256(bytes(planner.image)).hexdigest()
            result.metadata["planner"] = planner
            result.metadata["plan"] = [str(op) for op in planner.plan()]
            for warning in planner.warnings:
                result.add_warning(warning)
            result.add_warning("Dry run: nothing was written")
    result.logs.extend(logs)
    return result


def upload_firmware(
    session: BootloaderSession,
    image_path: str,
    verify: bool = True,
    safety: Optional[SafetyContext] = None,
    progress_cb: ProgressCallback = None,
    verify_progress_cb: ProgressCallback = None,
) -> OperationResult:
    """
    Patch and upload a raw application image, then optionally verify it.

    Any failed page operation aborts the upload; the result then warns that
    the device may hold an inconsistent application.
    """
    region = f"0x0000-0x{session.device.bootloader_start:04X}"
    result = _base_result("upload", session, region)

    with _capture_logs() as logs:
        try:
            planner = UploadPlanner.from_file(image_path, session.device)
        except (OSError, ValueError) as e:
            result.add_error(_describe(e))
            return _finish(result, session, logs)

        result.bytes_len = planner.length
        result.hashes["sha256"] = hashlib.sha256(bytes(planner.image)).hexdigest()
        for warning in planner.warnings:
            result.add_warning(warning)

        if not _check_permission(result, safety, region, planner.length):
            return _finish(result, session, logs)

        try:
            report = planner.execute(session.memory, progress_cb=progress_cb)
        except UploadAborted as e:
            result.add_error(f"Upload aborted at page 0x{e.address:04X}: {_describe(e.cause)}")
            result.add_error("Device may be left inconsistent")
            result.metadata["pages_done"] = e.pages_done
            return _finish(result, session, logs)

        result.metadata["report"] = report
        result.metadata["pages_written"] = report.pages_written
        result.metadata["pages_blank"] = report.pages_blank

        if verify:
            try:
                report.mismatches = planner.verify(session.memory, progress_cb=verify_progress_cb)
            except (ProtocolError, TransportError) as e:
                result.add_error(f"Verification failed: {_describe(e)}")
                return _finish(result, session, logs)

            for mismatch in report.mismatches[:8]:
                result.add_warning(str(mismatch))
            if report.mismatches:
                result.add_error(f"Verify mismatch in {len(report.mismatches)} bytes")

    return _finish(result, session, logs)


def kill_app(session: BootloaderSession, safety: Optional[SafetyContext] = None) -> OperationResult:
    """
    Erase the page holding the return vector so the bootloader no longer
    starts the application.
    """
    address = session.device.return_vector_page
    region = f"0x{address:04X}-0x{address + session.device.page_size:04X}"
    result = _base_result("kill_app", session, region)

    with _capture_logs() as logs:
        if not _check_permission(result, safety, region, session.device.page_size):
            return _finish(result, session, logs)
        try:
            logger.info(f"Erasing page 0x{address:04X}")
            session.memory.erase_page(address)
        except (ProtocolError, TransportError) as e:
            result.add_error(_describe(e))
    return _finish(result, session, logs)


def read_eeprom(session: BootloaderSession) -> OperationResult:
    """EEPROM read; reported as not implemented."""
    result = _base_result("read_eeprom", session)
    try:
        session.memory.read_eeprom(0, session.device.eeprom_size)
    except NotImplementedError as e:
        result.add_error(f"Not implemented: {e}")
    return result


# Address/value pairs poked by the EEPROM write test
EEPROM_TEST_POKES: Tuple[Tuple[int, int], ...] = ((0x04, 0x55), (0x09, 0xAA), (0x52, ord("X")))


def write_eeprom_bytes(
    session: BootloaderSession,
    pokes: Tuple[Tuple[int, int], ...] = EEPROM_TEST_POKES,
) -> OperationResult:
    """EEPROM byte pokes; reported as not implemented."""
    result = _base_result("write_eeprom", session)
    try:
        for address, value in pokes:
            session.memory.write_eeprom(address, bytes([value]))
    except NotImplementedError as e:
        result.add_error(f"Not implemented: {e}")
    return result
