"""
Profile and device registry for the femto bootloader.

Provides a unified layer for protocol revision and memory layout lookup.
"""

from .registry import (
    ProtocolProfile,
    DeviceModel,
    DEFAULT_PROFILE,
    DEFAULT_DEVICE,
    list_profiles,
    get_profile,
    list_devices,
    get_device,
)

__all__ = [
    "ProtocolProfile",
    "DeviceModel",
    "DEFAULT_PROFILE",
    "DEFAULT_DEVICE",
    "list_profiles",
    "get_profile",
    "list_devices",
    "get_device",
]
