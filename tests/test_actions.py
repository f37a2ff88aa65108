"""Tests for core workflow actions and the structured message layer."""

import hashlib
from unittest.mock import MagicMock

import pytest

from conftest import FakeTransport

from femto_flasher.core.actions import (
    BootloaderSession,
    kill_app,
    preview_upload,
    read_eeprom,
    read_flash,
    read_fuses,
    read_ram,
    read_registers,
    upload_firmware,
    write_eeprom_bytes,
)
from femto_flasher.core.messages import (
    MessageLevel,
    WarningCode,
    classify_message,
    result_to_warnings,
)
from femto_flasher.core.results import OperationResult
from femto_flasher.core.safety import (
    SafetyContext,
    WritePermissionError,
    create_cli_safety_context,
    require_write_permission,
)
from femto_flasher.core.upload import encode_relative, RJMP_OPCODE
from femto_flasher.protocol.frame import CMD_ERASE_PAGE, CMD_WRITE_PAGE
from femto_flasher.protocol.engine import ResetCause


@pytest.fixture
def session(bootloader, profile, device):
    session = BootloaderSession.create(bootloader, profile, device)
    session.wait_for_reset()
    return session


@pytest.fixture
def image_file(tmp_path):
    image = bytearray([0xFF] * 0x40)
    word = encode_relative(RJMP_OPCODE, 0, 0x10)
    image[0:2] = bytes([word & 0xFF, word >> 8])
    image[0x10:0x20] = bytes([0x22] * 0x10)
    path = tmp_path / "app.bin"
    path.write_bytes(bytes(image))
    return path


def confirmed() -> SafetyContext:
    return SafetyContext(confirmation_token="WRITE", interactive=False)


class TestSession:
    def test_reset_is_recorded(self, session):
        assert session.reset.causes == ResetCause.EXTERNAL

    def test_close_closes_transport(self, session, bootloader):
        session.close()
        assert bootloader.closed
        assert not session.engine.healthy


class TestReadActions:
    def test_read_flash_result(self, session, bootloader):
        bootloader.flash[0:4] = b"\x01\x02\x03\x04"
        result = read_flash(session, 0, 4)

        assert result.ok
        assert result.metadata["data"] == b"\x01\x02\x03\x04"
        assert result.hashes["sha256"] == hashlib.sha256(b"\x01\x02\x03\x04").hexdigest()
        assert result.region == "0x0000-0x0004"
        assert result.metadata["stats"]["commands_completed"] == 4

    def test_read_flash_failure_carries_no_data(self, session, bootloader):
        bootloader.drop_result = lambda cmd, z: z == 2
        result = read_flash(session, 0, 4)

        assert not result.ok
        assert "data" not in result.metadata
        assert result.errors[0].startswith("Read aborted at 0x0002: ResultTimeout")

    def test_read_registers_and_ram(self, session, device):
        registers = read_registers(session)
        assert registers.ok
        assert registers.metadata["data"] == bytes(range(32))

        ram = read_ram(session)
        assert ram.ok
        assert ram.metadata["start"] == device.ram_start
        assert ram.region == "0x0060-0x00E0"

    def test_read_fuses(self, session):
        result = read_fuses(session)
        assert result.ok
        assert result.metadata["fuses"].to_dict()["HFuse"] == 0xDF

    def test_silent_device_is_reported_by_kind(self):
        session = BootloaderSession.create(FakeTransport())
        result = read_fuses(session)

        assert not result.ok
        assert "RetriesExhausted" in result.errors[0]
        assert classify_message(result.errors[0]) == WarningCode.W_ACK_TIMEOUT

    def test_eeprom_not_implemented(self, session):
        for result in (read_eeprom(session), write_eeprom_bytes(session)):
            assert not result.ok
            assert result.errors[0].startswith("Not implemented")
            assert classify_message(result.errors[0]) == WarningCode.W_NOT_IMPLEMENTED


class TestUploadActions:
    def test_preview_touches_nothing(self, image_file, device):
        result = preview_upload(str(image_file), device)

        assert result.ok
        assert result.bytes_len == 0x40
        assert result.metadata["plan"][0].startswith("load")
        assert "Dry run: nothing was written" in result.warnings

    def test_preview_rejects_bad_image(self, tmp_path, device):
        path = tmp_path / "bad.bin"
        path.write_bytes(b"\x00\x00\x00\x00")
        result = preview_upload(str(path), device)
        assert not result.ok
        assert classify_message(result.errors[0]) == WarningCode.W_IMAGE_INVALID

    def test_upload_with_verify(self, session, bootloader, image_file):
        result = upload_firmware(session, str(image_file), verify=True, safety=confirmed())

        assert result.ok, result.errors
        assert result.metadata["pages_written"] == 2
        assert result.metadata["report"].verified
        assert bootloader.flash[0:2] == b"\xBF\xC3"
        assert bytes(bootloader.flash[0x10:0x20]) == bytes([0x22] * 0x10)

    def test_upload_denied_without_confirmation(self, session, bootloader, image_file):
        safety = SafetyContext(confirmation_token="nope", interactive=False)
        result = upload_firmware(session, str(image_file), safety=safety)

        assert not result.ok
        assert result.errors[0].startswith("Write not permitted")
        assert bootloader.commands == []

    def test_upload_abort_marks_device_inconsistent(self, session, bootloader, image_file):
        bootloader.drop_result = lambda cmd, z: cmd == CMD_ERASE_PAGE and z == 0x20
        result = upload_firmware(session, str(image_file), safety=confirmed())

        assert not result.ok
        assert "Device may be left inconsistent" in result.errors
        assert result.metadata["pages_done"] == 1
        codes = [item.code for item in result_to_warnings(result)]
        assert WarningCode.W_DEVICE_INCONSISTENT in codes

    def test_verify_mismatch_is_an_error(self, session, bootloader, image_file):
        # Stuck bits in the first page after commit
        original = bootloader._execute

        def stuck(cmd, z, r0, r1):
            value = original(cmd, z, r0, r1)
            if cmd == CMD_WRITE_PAGE and z == 0x00:
                bootloader.flash[0x12] &= 0x0F
            return value

        bootloader._execute = stuck
        result = upload_firmware(session, str(image_file), safety=confirmed())

        assert not result.ok
        assert result.errors == ["Verify mismatch in 1 bytes"]
        assert result.warnings[0].startswith("Mismatch at 0x0012")

    def test_kill_app_erases_return_vector_page(self, session, bootloader, device):
        result = kill_app(session, safety=confirmed())

        assert result.ok
        assert bootloader.commands == [(CMD_ERASE_PAGE, device.return_vector_page)]
        assert result.region == "0x0760-0x0780"


class TestMessages:
    def test_result_to_warnings_levels(self):
        result = OperationResult.success("upload")
        result.add_warning("Image data at 0x077E is overwritten by the return vector")
        result.add_error("Upload aborted at page 0x0040: ResultTimeout: Communication timeout")

        items = result_to_warnings(result)
        assert [item.level for item in items] == [MessageLevel.WARN, MessageLevel.ERROR]
        assert items[0].code == WarningCode.W_VECTOR_OVERLAP
        assert items[1].code == WarningCode.W_RESULT_TIMEOUT
        assert items[1].remediation

    def test_unknown_message(self):
        assert classify_message("something odd") == WarningCode.W_UNKNOWN

    def test_to_dict_omits_binary_metadata(self):
        result = OperationResult.success("read_flash")
        result.metadata["data"] = b"\x00"
        result.metadata["start"] = 0
        assert result.to_dict()["metadata"] == {"start": 0}

    def test_summary_lists_profile_and_frame_counts(self, session):
        result = read_flash(session, 0, 4)
        summary = result.to_summary()
        assert f"Device: {session.device.name} (femto)" in summary
        assert "Frames: 4 sent, 4 completed, 0 checksum errors, 0 ack timeouts" in summary
        assert "data" not in result.to_dict()["metadata"]


class TestSafety:
    def test_matching_token_is_accepted(self):
        require_write_permission(SafetyContext(confirmation_token=" write ", interactive=False))

    def test_non_interactive_without_token_is_denied(self):
        with pytest.raises(WritePermissionError, match="--confirm WRITE"):
            require_write_permission(SafetyContext(interactive=False), "0x0000-0x0780", 64)

    def test_prompt_answer_is_checked(self):
        shown = []
        ctx = SafetyContext(
            device="attiny2313",
            prompt_confirmation=lambda text: "no",
            show_details=shown.append,
        )
        with pytest.raises(WritePermissionError, match="aborted by user"):
            require_write_permission(ctx, "0x0000-0x0040", 64)
        assert shown[0]["target_region"] == "0x0000-0x0040"

    def test_cli_context_with_token_never_prompts(self, monkeypatch):
        monkeypatch.setattr("sys.stdin", MagicMock(**{"isatty.return_value": True}))
        ctx = create_cli_safety_context(device="attiny2313", confirmation_token="WRITE")
        assert not ctx.interactive
        assert create_cli_safety_context().interactive
