"""
Core module for femto-flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Address parsing (parsing.py)
- Result objects (results.py)
- Upload planning and execution (upload.py)
- Read/upload/erase workflows (actions.py)
- Standardized warnings/messages (messages.py)
"""

from .safety import (
    SafetyContext,
    require_write_permission,
    WritePermissionError,
    CONFIRMATION_TOKEN,
    create_cli_safety_context,
)
from .parsing import parse_address
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    classify_message,
    result_to_warnings,
)
from .upload import (
    UploadPlanner,
    UploadAborted,
    UploadReport,
    PageAction,
    PageOperation,
    VectorPatch,
    patch_vectors,
    relative_offset,
    relative_target,
    encode_relative,
)
from .actions import (
    BootloaderSession,
    open_session,
    read_flash,
    read_fuses,
    read_registers,
    read_ram,
    preview_upload,
    upload_firmware,
    kill_app,
    read_eeprom,
    write_eeprom_bytes,
)

__all__ = [
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    "CONFIRMATION_TOKEN",
    "create_cli_safety_context",
    # Parsing
    "parse_address",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "classify_message",
    "result_to_warnings",
    # Upload
    "UploadPlanner",
    "UploadAborted",
    "UploadReport",
    "PageAction",
    "PageOperation",
    "VectorPatch",
    "patch_vectors",
    "relative_offset",
    "relative_target",
    "encode_relative",
    # Actions
    "BootloaderSession",
    "open_session",
    "read_flash",
    "read_fuses",
    "read_registers",
    "read_ram",
    "preview_upload",
    "upload_firmware",
    "kill_app",
    "read_eeprom",
    "write_eeprom_bytes",
]
