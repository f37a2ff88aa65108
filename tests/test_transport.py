"""Tests for the pyserial transport with a mocked port."""

from unittest.mock import MagicMock, PropertyMock, call, patch

import pytest
import serial

from femto_flasher.protocol.transport import SerialTransport, TransportError, open_serial


@pytest.fixture
def mock_serial():
    with patch("femto_flasher.protocol.transport.serial.Serial") as factory:
        port = MagicMock()
        port.is_open = True
        factory.return_value = port
        yield factory, port


def test_open_configures_raw_8n1(mock_serial):
    factory, port = mock_serial
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()

    kwargs = factory.call_args.kwargs
    assert kwargs["baudrate"] == 38400
    assert kwargs["bytesize"] == serial.EIGHTBITS
    assert kwargs["parity"] == serial.PARITY_NONE
    assert kwargs["stopbits"] == serial.STOPBITS_ONE
    assert not (kwargs["xonxoff"] or kwargs["rtscts"] or kwargs["dsrdtr"])
    port.reset_input_buffer.assert_called_once()


def test_open_failure_is_transport_error(mock_serial):
    factory, _ = mock_serial
    factory.side_effect = serial.SerialException("no such device")
    with pytest.raises(TransportError, match="Cannot open port"):
        SerialTransport("/dev/missing").open()


def test_read_ready_holds_byte_for_read_byte(mock_serial):
    _, port = mock_serial
    port.read.return_value = b"\x40"
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()

    assert transport.read_ready(0.02)
    # A second poll does not consume another byte
    assert transport.read_ready(0.02)
    assert port.read.call_count == 1
    assert transport.read_byte() == 0x40


def test_read_ready_timeout(mock_serial):
    _, port = mock_serial
    port.read.return_value = b""
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()
    assert not transport.read_ready(0.01)


def test_short_write_raises(mock_serial):
    _, port = mock_serial
    port.write.return_value = 3
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()
    with pytest.raises(TransportError, match="Incomplete write"):
        transport.write(b"\x00" * 6)


def test_write_before_open():
    with pytest.raises(TransportError, match="not open"):
        SerialTransport("/dev/ttyUSB0").write(b"\x00")


def test_poll_timeout_is_set_only_when_it_changes(mock_serial):
    _, port = mock_serial
    timeout = PropertyMock()
    type(port).timeout = timeout
    port.read.return_value = b"\x40"
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()

    for _ in range(3):
        assert transport.read_ready(0.02)
        transport.read_byte()
    timeout.assert_called_once_with(0.02)

    transport.read_ready(0.2)
    assert timeout.call_args_list[-1] == call(0.2)


def test_drain_returns_held_byte_and_buffered_data(mock_serial):
    _, port = mock_serial
    port.read.side_effect = [b"\x40", b"\x00\x57", b""]
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()

    assert transport.read_ready(0.02)
    assert transport.drain(0.05) == b"\x40\x00\x57"
    port.read.assert_called_with(256)
    # Nothing is held back for the next read
    assert transport.drain(0.05) == b""


def test_drain_error_is_transport_error(mock_serial):
    _, port = mock_serial
    port.read.side_effect = serial.SerialException("device reports readiness to read but returned no data")
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()
    with pytest.raises(TransportError, match="Read error"):
        transport.drain(0.05)


def test_open_serial_returns_open_transport(mock_serial):
    factory, _ = mock_serial
    transport = open_serial("/dev/ttyUSB1", baudrate=19200)
    assert transport.is_open
    assert factory.call_args.kwargs["baudrate"] == 19200
