"""Bootloader protocol layer - transport, framing, command engine, memory ops."""

from .transport import (
    Transport,
    SerialTransport,
    TransportError,
    open_serial,
)
from .frame import (
    Frame,
    checksum,
    FRAME_SIZE,
    CMD_WRITE_DATA,
    CMD_LOAD_BUFFER,
    CMD_ERASE_PAGE,
    CMD_WRITE_PAGE,
    CMD_READ_FLASH,
    CMD_READ_FUSES,
    CMD_READ_DATA,
)
from .engine import (
    ProtocolEngine,
    RetryPolicy,
    Timing,
    EngineStats,
    FailureKind,
    ResetCause,
    ResetEvent,
    retry_bounded,
    classify_failure,
    ProtocolError,
    ChecksumRejected,
    AckTimeout,
    UnexpectedReply,
    RetriesExhausted,
    ResultTimeout,
    ConnectionPoisoned,
    MalformedReset,
    OperationCancelled,
)
from .memory import MemoryOps, FuseBytes, ReadAborted, ValueMismatch

__all__ = [
    # Transport
    "Transport",
    "SerialTransport",
    "TransportError",
    "open_serial",
    # Framing
    "Frame",
    "checksum",
    "FRAME_SIZE",
    "CMD_WRITE_DATA",
    "CMD_LOAD_BUFFER",
    "CMD_ERASE_PAGE",
    "CMD_WRITE_PAGE",
    "CMD_READ_FLASH",
    "CMD_READ_FUSES",
    "CMD_READ_DATA",
    # Engine
    "ProtocolEngine",
    "RetryPolicy",
    "Timing",
    "EngineStats",
    "FailureKind",
    "ResetCause",
    "ResetEvent",
    "retry_bounded",
    "classify_failure",
    "ProtocolError",
    "ChecksumRejected",
    "AckTimeout",
    "UnexpectedReply",
    "RetriesExhausted",
    "ResultTimeout",
    "ConnectionPoisoned",
    "MalformedReset",
    "OperationCancelled",
    # Memory
    "MemoryOps",
    "FuseBytes",
    "ReadAborted",
    "ValueMismatch",
]
