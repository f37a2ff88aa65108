"""
femto-flasher CLI

Command-line interface for the femto serial bootloader.

    femto-flasher <command> <serial device> [filename]

Commands mirror the bootloader tool's single-letter options:
r (read flash), w (write a binary), f (read fuses), e (read EEPROM),
k (kill app), x (write some EEPROM bytes), plus y (registers), z (RAM)
and ports.
"""

import signal
import sys
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from femto_flasher.models import (
    DEFAULT_DEVICE,
    DEFAULT_PROFILE,
    get_device,
    get_profile,
    list_devices,
    list_profiles,
)
from femto_flasher.protocol import (
    OperationCancelled,
    ProtocolError,
    ResetEvent,
    TransportError,
)
from femto_flasher.core.parsing import parse_address as _parse_address_core
from femto_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    WritePermissionError,
    create_cli_safety_context,
    require_write_permission,
)
from femto_flasher.core.results import OperationResult
from femto_flasher.core.messages import MessageLevel, WarningItem, result_to_warnings
from femto_flasher.core.actions import (
    BootloaderSession,
    open_session,
    read_flash as core_read_flash,
    read_fuses as core_read_fuses,
    read_registers as core_read_registers,
    read_ram as core_read_ram,
    preview_upload as core_preview_upload,
    upload_firmware as core_upload_firmware,
    kill_app as core_kill_app,
    read_eeprom as core_read_eeprom,
    write_eeprom_bytes as core_write_eeprom_bytes,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
)
logger = logging.getLogger("femto_flasher")

console = Console()

app = typer.Typer(help="femto-flasher - read and program devices through the femto serial bootloader")


@dataclass
class CliSettings:
    profile: str = DEFAULT_PROFILE
    device: str = DEFAULT_DEVICE
    verbose: bool = False


def print_header(text: str) -> None:
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if warning.remediation and (verbose or warning.level == MessageLevel.ERROR):
        console.print(f"   → {warning.remediation}", style="cyan")


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    CLI wrapper around core.parsing.parse_address that converts
    ValueError to typer.BadParameter.
    """
    try:
        return _parse_address_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def format_hexdump(data: bytes, start: int = 0, width: int = 16) -> List[str]:
    """Format bytes as address-prefixed hex lines."""
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset:offset + width]
        lines.append(f"{start + offset:04x}: " + " ".join(f"{b:02x}" for b in chunk))
    return lines


def print_hexdump(data: bytes, start: int = 0) -> None:
    for line in format_hexdump(data, start):
        console.print(line, highlight=False)


def print_reset(event: ResetEvent) -> None:
    """Print the decoded reset reason."""
    print_success("Reset detected")
    for line in event.describe():
        console.print(f"  {line}")


def report_result(result: OperationResult, settings: CliSettings) -> None:
    """Print warnings/errors and exit non-zero on failure."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=settings.verbose)

    if settings.verbose:
        console.print(result.to_summary(), style="dim", highlight=False)

    if not result.ok:
        raise typer.Exit(1)


def _settings(ctx: typer.Context) -> CliSettings:
    if isinstance(ctx.obj, CliSettings):
        return ctx.obj
    return CliSettings()


def _resolve_device(settings: CliSettings):
    device = get_device(settings.device)
    if device is None:
        print_error(f"Unknown device '{settings.device}'. Known: {', '.join(list_devices())}")
        raise typer.Exit(1)
    return device


def _resolve_profile(settings: CliSettings):
    profile = get_profile(settings.profile)
    if profile is None:
        print_error(f"Unknown profile '{settings.profile}'. Known: {', '.join(list_profiles())}")
        raise typer.Exit(1)
    return profile


@contextmanager
def _interrupt_cancels(session: BootloaderSession) -> Iterator[None]:
    """Route Ctrl-C to engine cancellation so in-flight commands finish."""
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum, frame):
        console.print("\n[yellow]Cancelling after the current command...[/yellow]")
        session.engine.request_cancel()

    signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


@contextmanager
def connect(port: str, settings: CliSettings) -> Iterator[BootloaderSession]:
    """
    Open the port, wait for the reset handshake and yield the session.

    Exits with status 1 if the port cannot be opened or the wait is
    cancelled.
    """
    profile = _resolve_profile(settings)
    device = _resolve_device(settings)

    console.print(f"Port:    {port}")
    console.print(f"Profile: {profile.name}  Device: {device.name}")

    try:
        with open_session(port, profile, device) as session:
            with _interrupt_cancels(session):
                with console.status("Waiting for reset (power-cycle the device)..."):
                    event = session.wait_for_reset()
                print_reset(event)
                yield session
    except TransportError as e:
        print_error(f"Serial port error: {e}")
        raise typer.Exit(1)
    except OperationCancelled:
        print_warning("Operation cancelled by user")
        raise typer.Exit(1)


def _progress() -> Progress:
    return Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    )


def confirm_write(
    settings: CliSettings,
    target_region: str,
    bytes_length: int,
    confirm_token: Optional[str],
    warnings: Optional[List[str]] = None,
) -> None:
    """
    Require typed confirmation before any flash write.

    Non-interactive: --confirm WRITE. Interactive: prompt for WRITE.
    """
    ctx = create_cli_safety_context(
        device=settings.device,
        confirmation_token=confirm_token,
    )
    for warning in warnings or []:
        ctx.add_warning(warning)

    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Device:        {details.get('device', 'Unknown')}\n"
            f"Target:        {details.get('target_region', 'Unknown')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Flash Write Operation",
            expand=False,
        ))

    ctx.show_details = show_details
    ctx.prompt_confirmation = lambda prompt_text: typer.prompt("Confirm")

    try:
        require_write_permission(ctx, target_region=target_region, bytes_length=bytes_length)
    except WritePermissionError as e:
        print_error(e.reason)
        raise typer.Exit(1)
    print_success("Confirmation accepted. Proceeding with write...")


@app.callback()
def main_options(
    ctx: typer.Context,
    profile: str = typer.Option(DEFAULT_PROFILE, "--profile", "-P", help="Bootloader protocol revision"),
    device: str = typer.Option(DEFAULT_DEVICE, "--device", "-d", help="Target device layout"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show wire traffic and details"),
) -> None:
    """Read and program devices through the femto serial bootloader."""
    ctx.obj = CliSettings(profile=profile, device=device, verbose=verbose)
    if verbose:
        logging.getLogger("femto_flasher").setLevel(logging.DEBUG)


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    import serial.tools.list_ports

    ports_list = list(serial.tools.list_ports.comports())
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    for port in ports_list:
        table.add_row(port.device, port.description or "-")
    console.print(table)


@app.command("r")
def read_flash_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
    start: Optional[str] = typer.Option(None, "--start", "-s", help="Start address (default 0)"),
    length: Optional[str] = typer.Option(None, "--length", "-l", help="Bytes to read (default: whole flash)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save raw bytes to file"),
) -> None:
    """Read flash and dump it."""
    settings = _settings(ctx)
    start_addr = parse_address(start) or 0
    length_int = parse_address(length)

    print_header("Read Flash")
    with connect(port, settings) as session:
        if length_int is None:
            length_int = session.device.flash_size - start_addr
        with _progress() as progress:
            task = progress.add_task("Reading flash...", total=length_int)
            result = core_read_flash(
                session,
                start=start_addr,
                length=length_int,
                progress_cb=lambda done, total: progress.update(task, completed=done),
            )

    if result.ok:
        data = result.metadata["data"]
        print_hexdump(data, start_addr)
        if output:
            output.write_bytes(data)
            print_success(f"Flash saved to {output}")
    else:
        print_error("Read flash failed")
    report_result(result, settings)


@app.command("w")
def write_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
    filename: Path = typer.Argument(..., help="Raw application binary"),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Read flash back after upload"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the page plan without connecting"),
    confirm: Optional[str] = typer.Option(
        None, "--confirm", help=f"Non-interactive confirmation token ('{CONFIRMATION_TOKEN}')"
    ),
) -> None:
    """Write a binary: patch vectors and program every page."""
    settings = _settings(ctx)
    device = _resolve_device(settings)

    print_header("Upload Firmware")
    preview = core_preview_upload(str(filename), device)
    if not preview.ok:
        print_error("Cannot upload this image")
        report_result(preview, settings)

    planner = preview.metadata["planner"]
    table = Table(title="Upload Plan")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    for key, value in planner.summary():
        table.add_row(key, value)
    console.print(table)

    if dry_run:
        for line in preview.metadata["plan"]:
            console.print(f"  {line}", highlight=False)
        for warning in preview.warnings:
            print_warning(warning)
        return

    confirm_write(
        settings,
        target_region=preview.region,
        bytes_length=planner.length,
        confirm_token=confirm,
        warnings=planner.warnings,
    )

    with connect(port, settings) as session:
        with _progress() as progress:
            upload_task = progress.add_task("Uploading...", total=len(planner.page_addresses()))
            verify_task = progress.add_task("Verifying...", total=len(planner.page_addresses()), visible=verify)
            result = core_upload_firmware(
                session,
                str(filename),
                verify=verify,
                progress_cb=lambda done, total: progress.update(upload_task, completed=done),
                verify_progress_cb=lambda done, total: progress.update(verify_task, completed=done),
            )

    if result.ok:
        print_success(
            f"Upload complete: {result.metadata['pages_written']} pages written, "
            f"{result.metadata['pages_blank']} blank"
        )
    else:
        print_error("Upload failed")
    report_result(result, settings)


@app.command("f")
def fuses_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
) -> None:
    """Read fuses."""
    settings = _settings(ctx)
    print_header("Read Fuses")
    with connect(port, settings) as session:
        result = core_read_fuses(session)

    if result.ok:
        table = Table(title="Fuses")
        table.add_column("Fuse", style="cyan")
        table.add_column("Value", style="green")
        for name, value in result.metadata["fuses"].to_dict().items():
            table.add_row(name, f"{value:02x}")
        console.print(table)
    report_result(result, settings)


@app.command("e")
def eeprom_read_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
) -> None:
    """Read EEPROM (not implemented)."""
    settings = _settings(ctx)
    print_header("Read EEPROM")
    with connect(port, settings) as session:
        result = core_read_eeprom(session)
    report_result(result, settings)


@app.command("k")
def kill_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
    confirm: Optional[str] = typer.Option(
        None, "--confirm", help=f"Non-interactive confirmation token ('{CONFIRMATION_TOKEN}')"
    ),
) -> None:
    """Kill app: erase the page holding the return vector."""
    settings = _settings(ctx)
    device = _resolve_device(settings)
    address = device.return_vector_page

    print_header("Kill Application")
    confirm_write(
        settings,
        target_region=f"0x{address:04X}-0x{address + device.page_size:04X}",
        bytes_length=device.page_size,
        confirm_token=confirm,
    )
    with connect(port, settings) as session:
        result = core_kill_app(session)

    if result.ok:
        print_success(f"Erased page 0x{address:04X}")
    report_result(result, settings)


@app.command("x")
def eeprom_write_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
) -> None:
    """Write some EEPROM bytes (not implemented)."""
    settings = _settings(ctx)
    print_header("Write EEPROM")
    with connect(port, settings) as session:
        result = core_write_eeprom_bytes(session)
    report_result(result, settings)


@app.command("y")
def registers_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
) -> None:
    """Read registers."""
    settings = _settings(ctx)
    print_header("Read Registers")
    with connect(port, settings) as session:
        result = core_read_registers(session)
    if result.ok:
        print_hexdump(result.metadata["data"], result.metadata["start"])
    report_result(result, settings)


@app.command("z")
def ram_cmd(
    ctx: typer.Context,
    port: str = typer.Argument(..., help="Serial device (e.g., /dev/ttyUSB0)"),
) -> None:
    """Read RAM."""
    settings = _settings(ctx)
    print_header("Read RAM")
    with connect(port, settings) as session:
        result = core_read_ram(session)
    if result.ok:
        print_hexdump(result.metadata["data"], result.metadata["start"])
    report_result(result, settings)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)
    except ProtocolError as e:
        console.print(f"\n[red bold]Protocol error:[/red bold] {type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
