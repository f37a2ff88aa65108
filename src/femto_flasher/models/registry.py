"""
Registry of bootloader protocol profiles and target devices.

Provides a single source of truth for:
- Protocol profiles (ack / checksum-error / ready bytes, checksum seed, baud rate)
- Device memory layouts (flash size, page size, bootloader region, data spaces)

Usage:
    from femto_flasher.models import get_profile, get_device

    profile = get_profile("femto")
    device = get_device("attiny2313")
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class ProtocolProfile:
    """
    Protocol constants for one bootloader firmware revision.

    Two incompatible revisions exist in the field; they differ in the
    acknowledge byte and in the value the checksum fold is seeded with.
    Both use 'W' for a rejected checksum and as the ready marker.
    """
    name: str
    ack_byte: int
    checksum_error_byte: int = ord("W")
    ready_byte: int = ord("W")
    checksum_seed: Optional[int] = None
    baudrate: int = 38400
    notes: str = ""

    @property
    def seed(self) -> int:
        """Checksum seed, defaulting to the ack byte."""
        if self.checksum_seed is None:
            return self.ack_byte
        return self.checksum_seed


@dataclass(frozen=True)
class DeviceModel:
    """Memory layout of a target microcontroller running the bootloader."""
    name: str
    flash_size: int
    page_size: int
    bootloader_start: int
    fuse_count: int = 4
    register_count: int = 32
    ram_start: int = 0x60
    ram_size: int = 128
    eeprom_size: int = 128
    pad_byte: int = 0xFF

    @property
    def app_size(self) -> int:
        """Bytes available to the application below the bootloader."""
        return self.bootloader_start

    @property
    def return_vector_page(self) -> int:
        """Page immediately preceding the bootloader region."""
        return self.bootloader_start - self.page_size

    @property
    def return_vector_slot(self) -> int:
        """Byte address of the patched relative call to the application."""
        return self.bootloader_start - 2


# ============================================================================
# PROFILE REGISTRY
# ============================================================================

_PROFILE_REGISTRY: Dict[str, ProtocolProfile] = {}
_DEVICE_REGISTRY: Dict[str, DeviceModel] = {}

DEFAULT_PROFILE = "femto"
DEFAULT_DEVICE = "attiny2313"


def _register_profile(profile: ProtocolProfile) -> None:
    _PROFILE_REGISTRY[profile.name] = profile


def _register_device(device: DeviceModel) -> None:
    _DEVICE_REGISTRY[device.name] = device


def _init_registry() -> None:
    """Initialize the registries with known revisions and devices."""

    _register_profile(ProtocolProfile(
        name="femto",
        ack_byte=ord("@"),
        checksum_seed=0x40,
        notes="6-byte frames, '@' acknowledge",
    ))

    _register_profile(ProtocolProfile(
        name="femto-a",
        ack_byte=ord("A"),
        checksum_seed=ord("A"),
        notes="6-byte frames, 'A' acknowledge",
    ))

    # 2 KiB flash, 16-word pages, bootloader in the top 128 bytes
    _register_device(DeviceModel(
        name="attiny2313",
        flash_size=0x800,
        page_size=0x20,
        bootloader_start=0x780,
    ))


_init_registry()


def list_profiles() -> List[str]:
    """Return names of all registered protocol profiles."""
    return sorted(_PROFILE_REGISTRY.keys())


def get_profile(name: str) -> Optional[ProtocolProfile]:
    """
    Get a protocol profile by name.

    Returns:
        ProtocolProfile if found, None otherwise
    """
    return _PROFILE_REGISTRY.get(name)


def list_devices() -> List[str]:
    """Return names of all registered devices."""
    return sorted(_DEVICE_REGISTRY.keys())


def get_device(name: str) -> Optional[DeviceModel]:
    """
    Get a device layout by name (case-insensitive).

    Returns:
        DeviceModel if found, None otherwise
    """
    return _DEVICE_REGISTRY.get(name.lower())
