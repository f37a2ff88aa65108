"""
Standardized warning and message system.

Provides structured warning items with stable codes so failures are
reported by kind, with a remediation hint.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Connection
    W_SERIAL_ERROR = "W_SERIAL_ERROR"
    W_ACK_TIMEOUT = "W_ACK_TIMEOUT"
    W_CHECKSUM_REJECTED = "W_CHECKSUM_REJECTED"
    W_RESULT_TIMEOUT = "W_RESULT_TIMEOUT"
    W_CONNECTION_LOST = "W_CONNECTION_LOST"

    # Data
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"
    W_READ_INCOMPLETE = "W_READ_INCOMPLETE"
    W_IMAGE_INVALID = "W_IMAGE_INVALID"
    W_VECTOR_OVERLAP = "W_VECTOR_OVERLAP"

    # Operation
    W_DEVICE_INCONSISTENT = "W_DEVICE_INCONSISTENT"
    W_NOT_IMPLEMENTED = "W_NOT_IMPLEMENTED"
    W_CANCELLED = "W_CANCELLED"
    W_DRY_RUN = "W_DRY_RUN"
    W_WRITE_DENIED = "W_WRITE_DENIED"

    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_SERIAL_ERROR:
        "Check the USB-serial adapter and that no other program holds the port.",
    WarningCode.W_ACK_TIMEOUT:
        "Check wiring and baud rate (38400). Try a different --profile.",
    WarningCode.W_CHECKSUM_REJECTED:
        "The device rejected frames. The --profile may not match the bootloader revision.",
    WarningCode.W_RESULT_TIMEOUT:
        "The device stopped answering mid-command. Reset it and retry.",
    WarningCode.W_CONNECTION_LOST:
        "Reset the device and start the operation again.",
    WarningCode.W_VERIFY_MISMATCH:
        "Flash read back differs from the image. Re-run the upload.",
    WarningCode.W_READ_INCOMPLETE:
        "The read stopped early; partial data was discarded.",
    WarningCode.W_IMAGE_INVALID:
        "Provide a raw binary whose first instruction is an rjmp.",
    WarningCode.W_VECTOR_OVERLAP:
        "The image is too close to the bootloader; its last word is replaced.",
    WarningCode.W_DEVICE_INCONSISTENT:
        "The device may hold a partial application. Reset it and upload again.",
    WarningCode.W_NOT_IMPLEMENTED:
        "This operation is not supported by the bootloader client.",
    WarningCode.W_CANCELLED:
        "Operation cancelled before completion.",
    WarningCode.W_DRY_RUN:
        "Nothing was written. Drop --dry-run to program the device.",
    WarningCode.W_WRITE_DENIED:
        "Re-run with --confirm WRITE or confirm at the prompt.",
    WarningCode.W_UNKNOWN:
        "Run with --verbose for more details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


# Substring patterns checked in order; first match wins
_PATTERNS = [
    ("not implemented", WarningCode.W_NOT_IMPLEMENTED),
    ("cancel", WarningCode.W_CANCELLED),
    ("dry run", WarningCode.W_DRY_RUN),
    ("confirm", WarningCode.W_WRITE_DENIED),
    ("inconsistent", WarningCode.W_DEVICE_INCONSISTENT),
    ("mismatch", WarningCode.W_VERIFY_MISMATCH),
    ("return vector", WarningCode.W_VECTOR_OVERLAP),
    ("communication timeout", WarningCode.W_RESULT_TIMEOUT),
    ("unusable", WarningCode.W_CONNECTION_LOST),
    ("checksum", WarningCode.W_CHECKSUM_REJECTED),
    ("no ack", WarningCode.W_ACK_TIMEOUT),
    ("acktimeout", WarningCode.W_ACK_TIMEOUT),
    ("read aborted", WarningCode.W_READ_INCOMPLETE),
    ("image", WarningCode.W_IMAGE_INVALID),
    ("port", WarningCode.W_SERIAL_ERROR),
    ("serial", WarningCode.W_SERIAL_ERROR),
]


def classify_message(message: str) -> WarningCode:
    """Pick the warning code for a plain message."""
    lowered = message.lower()
    for pattern, code in _PATTERNS:
        if pattern in lowered:
            return code
    return WarningCode.W_UNKNOWN


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert an OperationResult's warnings and errors to WarningItem list.
    """
    items = [WarningItem.warn(classify_message(w), w) for w in result.warnings]
    items.extend(WarningItem.error(classify_message(e), e) for e in result.errors)
    return items
