"""
femto-flasher - host-side client for the femto serial bootloader

Reset detection, framed command exchange, memory reads and firmware upload.
"""

__version__ = "0.1.0"

from femto_flasher.protocol import SerialTransport, ProtocolEngine, MemoryOps
from femto_flasher.core.upload import UploadPlanner

__all__ = [
    "SerialTransport",
    "ProtocolEngine",
    "MemoryOps",
    "UploadPlanner",
    "__version__",
]
