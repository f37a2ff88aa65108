"""
Result objects for bootloader operations.

Every action in core.actions reports through OperationResult so the CLI
can print reads, uploads and failures the same way.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any

# Metadata values that survive to_dict(); bytes and planner objects do not
_PLAIN_TYPES = (str, int, float, bool, list, dict, type(None))


@dataclass
class OperationResult:
    """
    Outcome of one bootloader operation.

    Attributes:
        ok: False as soon as any error was added
        operation: Action name (e.g., "read_flash", "upload", "kill_app")
        device: Target device name
        region: Address range touched (e.g., "0x0000-0x0780")
        bytes_len: Bytes read, or image length for uploads
        hashes: sha256 of the data read or the patched image
        warnings: Non-blocking issues, including verify mismatches
        errors: Failures, each naming its exception type
        metadata: Action-specific values (data, fuses, report, engine stats)
        logs: femto_flasher log lines captured while the action ran
    """
    ok: bool
    operation: str
    device: str = ""
    region: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Record a failure; the result is no longer ok."""
        self.errors.append(message)
        self.ok = False

    def to_summary(self) -> str:
        """Multi-line summary shown by the CLI in verbose mode."""
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.device:
            profile = self.metadata.get("profile")
            lines.append(f"  Device: {self.device}" + (f" ({profile})" if profile else ""))
        if self.region:
            lines.append(f"  Region: {self.region}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")

        for name, value in self.hashes.items():
            lines.append(f"  {name}: {value[:16]}...")

        stats = self.metadata.get("stats")
        if stats:
            lines.append(
                f"  Frames: {stats['frames_sent']} sent, "
                f"{stats['commands_completed']} completed, "
                f"{stats['checksum_errors']} checksum errors, "
                f"{stats['ack_timeouts']} ack timeouts"
            )

        for title, entries in (("Warnings", self.warnings), ("Errors", self.errors)):
            if entries:
                lines.append(f"  {title}:")
                lines.extend(f"    - {entry}" for entry in entries)

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready view; raw data and planner objects are left out."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "device": self.device,
            "region": self.region,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": {
                k: v for k, v in self.metadata.items()
                if isinstance(v, _PLAIN_TYPES)
            },
            "logs": self.logs,
        }

    @classmethod
    def success(
        cls,
        operation: str,
        device: str = "",
        region: str = "",
        bytes_len: int = 0,
        **kwargs,
    ) -> "OperationResult":
        """Start a result that stays ok until an error is added."""
        return cls(
            ok=True,
            operation=operation,
            device=device,
            region=region,
            bytes_len=bytes_len,
            **kwargs,
        )
