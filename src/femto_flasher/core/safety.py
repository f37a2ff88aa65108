"""
Safety context and write gating for flash-modifying operations.

Uploading or erasing can leave the device without a working application,
so every such operation passes through require_write_permission().
"""

import sys
from dataclasses import dataclass, field
from typing import Optional, List, Callable

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (device, region, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Everything needed to decide whether a flash write may proceed.

    Attributes:
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the UI can prompt for confirmation
        device: Target device name
        warnings: Warnings accumulated while preparing the write
    """
    confirmation_token: Optional[str] = None
    interactive: bool = True
    device: str = ""
    warnings: List[str] = field(default_factory=list)

    # CLI sets these to prompt / display functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_details_dict(self, target_region: str = "", bytes_length: int = 0) -> dict:
        """Create a details dictionary for display."""
        details = {
            "device": self.device or "Unknown",
            "target_region": target_region,
            "bytes_length": bytes_length,
        }
        if self.warnings:
            details["warnings"] = self.warnings
        return details


def require_write_permission(
    ctx: SafetyContext,
    target_region: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. If confirmation token present: must match exactly
    2. If interactive: prompt user for confirmation
    3. Otherwise: denied

    Raises:
        WritePermissionError: If write is not permitted
    """
    details = ctx.to_details_dict(target_region, bytes_length)

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            f"Non-interactive mode requires --confirm {CONFIRMATION_TOKEN}.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if not ctx.prompt_confirmation:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set. "
            "Provide confirmation_token for non-interactive mode.",
            details=details,
        )

    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError(
            "Confirmation failed. Write aborted by user.",
            details=details,
        )


def create_cli_safety_context(
    device: str = "",
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    Interactive only when stdin is a TTY and no token was given.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None

    return SafetyContext(
        confirmation_token=confirmation_token,
        interactive=interactive,
        device=device,
    )
