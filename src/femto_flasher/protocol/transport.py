"""
Serial Transport Layer

Handles low-level serial communication with the femto bootloader.

This module provides:
- The Transport contract consumed by the protocol engine
- Serial port initialization and configuration (raw 8N1, no flow control)
- Blocking writes and a read-with-timeout primitive
"""

import logging
from typing import Optional, Protocol

import serial

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 38400


class TransportError(Exception):
    """Serial port could not be opened, read or written"""
    pass


class Transport(Protocol):
    """
    Byte-stream contract the protocol engine talks to.

    write() returns the number of bytes written; read_ready() returns True
    iff at least one byte can be read before the timeout elapses; read_byte()
    does not block once read_ready() returned True; drain() discards
    everything that arrives within the timeout and returns it.
    """

    def write(self, data: bytes) -> int:
        ...

    def read_ready(self, timeout: float) -> bool:
        ...

    def read_byte(self) -> int:
        ...

    def drain(self, timeout: float) -> bytes:
        ...

    def close(self) -> None:
        ...


class SerialTransport:
    """
    pyserial-backed transport for the bootloader link.

    Example:
        transport = SerialTransport(port="/dev/ttyUSB0")
        transport.open()
        transport.write(frame)
        if transport.read_ready(0.02):
            ack = transport.read_byte()
        transport.close()
    """

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        write_timeout: float = 1.0,
    ):
        """
        Initialize transport layer.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            baudrate: Serial baud rate (default 38400)
            write_timeout: Write timeout in seconds (default 1.0)
        """
        self.port = port
        self.baudrate = baudrate
        self.write_timeout = write_timeout
        self.ser: Optional[serial.Serial] = None
        self._pending: Optional[int] = None
        self._timeout: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open)

    def open(self) -> None:
        """
        Open serial port in raw mode.

        Raises:
            TransportError: If port cannot be opened
        """
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0,
                write_timeout=self.write_timeout,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
            self._pending = None
            self._timeout = 0

            logger.debug(f"Opened {self.port} at {self.baudrate} bps")
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")

    def close(self) -> None:
        """Close serial port. Safe to call more than once."""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")
        self._pending = None

    def __enter__(self) -> "SerialTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> serial.Serial:
        if not self.ser or not self.ser.is_open:
            raise TransportError("Serial port not open")
        return self.ser

    def write(self, data: bytes) -> int:
        """
        Send raw bytes to the device.

        Raises:
            TransportError: If the write fails or is incomplete
        """
        ser = self._require_open()
        try:
            written = ser.write(data)
            ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write error: {e}")

        if written != len(data):
            raise TransportError(
                f"Incomplete write: sent {written}/{len(data)} bytes"
            )
        logger.debug(f">>> {data.hex().upper()}")
        return written

    def _set_timeout(self, ser: serial.Serial, timeout: float) -> None:
        # pyserial reconfigures the port on every assignment
        if self._timeout != timeout:
            ser.timeout = timeout
            self._timeout = timeout

    def read_ready(self, timeout: float) -> bool:
        """
        Wait up to timeout seconds for one byte to become readable.

        The byte is held back until read_byte() is called.
        """
        if self._pending is not None:
            return True

        ser = self._require_open()
        try:
            self._set_timeout(ser, timeout)
            data = ser.read(1)
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")

        if not data:
            return False
        self._pending = data[0]
        return True

    def read_byte(self) -> int:
        """
        Return the byte announced by read_ready().

        Raises:
            TransportError: If no byte is available
        """
        if self._pending is None and not self.read_ready(0):
            raise TransportError("No byte available")

        byte = self._pending
        self._pending = None
        logger.debug(f"<<< {byte:02X}")
        return byte

    def drain(self, timeout: float) -> bytes:
        """
        Clear pending data in the receive buffer.

        Waits the full timeout so late replies are caught too.

        Returns:
            Bytes that were drained (for logging)
        """
        ser = self._require_open()
        junk = b"" if self._pending is None else bytes([self._pending])
        self._pending = None
        try:
            self._set_timeout(ser, timeout)
            junk += ser.read(256)
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")

        if junk:
            logger.debug(f"Drained {len(junk)} bytes of junk: {junk.hex().upper()}")
        return junk


def open_serial(port: str, baudrate: int = DEFAULT_BAUDRATE) -> SerialTransport:
    """
    Open a bootloader transport connection.

    Args:
        port: Serial port name
        baudrate: Baud rate (default 38400)

    Returns:
        SerialTransport instance (already open)
    """
    transport = SerialTransport(port, baudrate)
    transport.open()
    return transport
