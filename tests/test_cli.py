"""
Tests for the kdload Command-Line Interface
===========================================

Runs the click commands with CliRunner and a FakeDevice in place of the
real USB lookup.
"""

import io
from unittest.mock import patch

import pytest
import usb.core
from click.testing import CliRunner

from kendryte_loader.cli.errors import ExitCode
from kendryte_loader.cli.kdload import main, resolve_address
from kendryte_loader.comms.protocol import (
    DRAM_RUN_BASE,
    MASK_ROM_BASE,
    SRAM_RUN_BASE,
    Command,
    MemoryTarget,
)
from kendryte_loader.comms.usb import DeviceInfo
from kendryte_loader.errors import DeviceNotFoundError

from conftest import FakeDevice, FakeInterface

FIND = "kendryte_loader.cli.kdload.UsbDevice.find"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("KDLOAD_VID", "KDLOAD_PID", "KDLOAD_STRICT"):
        monkeypatch.delenv(name, raising=False)


def invoke(args, device=None):
    runner = CliRunner()
    with patch(FIND, return_value=device or FakeDevice()):
        return runner.invoke(main, args)


# =============================================================================
# Address Selection Tests
# =============================================================================

class TestResolveAddress:
    """Tests for --space/--address handling."""

    def test_default_is_sram(self):
        assert resolve_address(None, None) == SRAM_RUN_BASE

    def test_space(self):
        assert resolve_address("dram", None) == DRAM_RUN_BASE

    def test_address(self):
        assert resolve_address(None, 0x1000) == 0x1000


# =============================================================================
# Command Tests
# =============================================================================

class TestCpuInfo:
    """Tests for `kdload cpu-info`."""

    def test_prints_identity(self):
        device = FakeDevice()
        result = invoke(["cpu-info"], device)
        assert result.exit_code == 0, result.output
        assert "Found Canaan Inc. Kendryte Usb Boot" in result.output
        assert "speed HIGH - max packet size: 512" in result.output
        assert "Device says: K230D" in result.output
        assert device.interface.commands() == [(Command.GET_CPU_INFO, 0)]
        assert device.closed

    def test_unknown_speed_reported(self):
        info = DeviceInfo(1, 2, 0x29F1, 0x0230, product="Kendryte Usb Boot")
        result = invoke(["cpu-info"], FakeDevice(info=info))
        assert result.exit_code == 0, result.output
        assert "speed UNKNOWN - max packet size: unknown" in result.output

    def test_device_not_found(self):
        runner = CliRunner()
        with patch(FIND, side_effect=DeviceNotFoundError(0x29F1, 0x0230)):
            result = runner.invoke(main, ["cpu-info"])
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert "not found" in result.output

    def test_permission_denied_hint(self):
        runner = CliRunner()
        with patch(FIND, side_effect=usb.core.USBError("Access denied", errno=13)):
            result = runner.invoke(main, ["cpu-info"])
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert "udev" in result.output

    def test_vendor_override_from_env(self, monkeypatch):
        monkeypatch.setenv("KDLOAD_VID", "0x1234")
        runner = CliRunner()
        with patch(FIND, return_value=FakeDevice()) as find:
            runner.invoke(main, ["cpu-info"])
        assert find.call_args[0][0] == 0x1234

    def test_bad_env_is_usage_error(self, monkeypatch):
        monkeypatch.setenv("KDLOAD_STRICT", "maybe")
        result = invoke(["cpu-info"])
        assert result.exit_code == ExitCode.INVALID_ARGS


class TestRom:
    """Tests for `kdload rom`."""

    def test_jumps_to_mask_rom(self):
        device = FakeDevice()
        result = invoke(["rom"], device)
        assert result.exit_code == 0, result.output
        assert "Jumped to mask ROM." in result.output
        assert device.interface.commands() == [
            (Command.GET_CPU_INFO, 0),
            (Command.PROG_START, MASK_ROM_BASE),
        ]

    def test_start_failure_is_fatal(self):
        device = FakeDevice(FakeInterface(fail_on={Command.PROG_START}))
        result = invoke(["rom"], device)
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert "ProgStart failed" in result.output


class TestRun:
    """Tests for `kdload run` and `kdload load`."""

    @pytest.fixture(autouse=True)
    def _workdir(self, tmp_path):
        self.tmp_path = tmp_path

    def _invoke_with_image(self, args, device, size=1536):
        image = self.tmp_path / "spl.bin"
        image.write_bytes(b"\xAA" * size)
        with patch(FIND, return_value=device):
            return CliRunner().invoke(main, args + [str(image)])

    def test_run_default_sram(self):
        device = FakeDevice()
        result = self._invoke_with_image(["run"], device)
        assert result.exit_code == 0, result.output
        assert "Started 1536 bytes at 0x80360000." in result.output
        assert device.interface.commands() == [
            (Command.GET_CPU_INFO, 0),
            (Command.SET_DATA_ADDRESS, SRAM_RUN_BASE),
            ("bulk", 512),
            ("bulk", 512),
            ("bulk", 512),
            (Command.PROG_START, SRAM_RUN_BASE),
        ]

    def test_run_dram(self):
        device = FakeDevice()
        result = self._invoke_with_image(["run", "--space", "dram"], device, size=10)
        assert result.exit_code == 0, result.output
        assert device.interface.commands()[-1] == (Command.PROG_START, DRAM_RUN_BASE)

    def test_run_at_address(self):
        device = FakeDevice()
        result = self._invoke_with_image(["run", "-a", "0x80380000"], device, size=10)
        assert result.exit_code == 0, result.output
        assert device.interface.commands()[-1] == (Command.PROG_START, 0x80380000)

    def test_space_and_address_exclusive(self):
        device = FakeDevice()
        result = self._invoke_with_image(
            ["run", "--space", "sram", "--address", "0x0"], device
        )
        assert result.exit_code == ExitCode.INVALID_ARGS
        assert device.interface.trace == []

    def test_invalid_address(self):
        result = self._invoke_with_image(["run", "-a", "0x1_0000_0000"], FakeDevice())
        assert result.exit_code == ExitCode.INVALID_ARGS

    def test_missing_file(self):
        result = invoke(["run", str(self.tmp_path / "nope.bin")])
        assert result.exit_code == ExitCode.INVALID_ARGS

    def test_load_does_not_start(self):
        device = FakeDevice()
        result = self._invoke_with_image(["load"], device, size=600)
        assert result.exit_code == 0, result.output
        assert "Loaded 600 bytes at 0x80360000." in result.output
        assert Command.PROG_START not in [c[0] for c in device.interface.commands()]

    def test_strict_chunk_failure(self):
        device = FakeDevice(FakeInterface(fail_on={"bulk"}))
        result = self._invoke_with_image(["run"], device)
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert device.interface.bulk_sizes() == [512]

    def test_best_effort_continues(self):
        device = FakeDevice(FakeInterface(fail_on={Command.PROG_START}))
        result = self._invoke_with_image(["--best-effort", "run"], device)
        assert result.exit_code == 0, result.output
        assert "Warning: ProgStart failed" in result.output

    def test_image_read_error(self):
        class FailingImage(io.RawIOBase):
            def readable(self):
                return True

            def readinto(self, buffer):
                raise OSError(5, "Input/output error")

        device = FakeDevice()
        with patch("kendryte_loader.comms.session.open_image", return_value=FailingImage()):
            result = self._invoke_with_image(["run"], device)
        assert result.exit_code == ExitCode.INVALID_ARGS
        assert "cannot read image" in result.output
        assert device.closed

    def test_unexpected_error_is_internal(self):
        device = FakeDevice()
        with patch.object(device, "resolve_endpoints", side_effect=RuntimeError("boom")):
            result = self._invoke_with_image(["run"], device)
        assert result.exit_code == ExitCode.INTERNAL_ERROR
        assert "Internal error: boom" in result.output
        assert device.closed

    def test_space_resolved_through_target_table(self):
        device = FakeDevice()
        with patch("kendryte_loader.cli.kdload.resolve_target", return_value=0x1000) as resolve:
            result = self._invoke_with_image(["run", "--space", "dram"], device, size=10)
        assert result.exit_code == 0, result.output
        resolve.assert_called_once_with(MemoryTarget.DRAM)
        assert device.interface.commands()[-1] == (Command.PROG_START, 0x1000)


class TestDevices:
    """Tests for `kdload devices`."""

    def test_lists_devices(self):
        info = DeviceInfo(1, 7, 0x29F1, 0x0230, product="Kendryte Usb Boot", speed=3)
        runner = CliRunner()
        with patch("kendryte_loader.cli.kdload.list_devices", return_value=[info]):
            result = runner.invoke(main, ["devices", "--detailed"])
        assert result.exit_code == 0, result.output
        assert "29f1:0230 bus 1 addr 7" in result.output
        assert "Speed: HIGH" in result.output

    def test_no_devices(self):
        runner = CliRunner()
        with patch("kendryte_loader.cli.kdload.list_devices", return_value=[]):
            result = runner.invoke(main, ["devices"])
        assert result.exit_code == 0
        assert "No devices found." in result.output

    def test_no_backend(self):
        runner = CliRunner()
        with patch("kendryte_loader.cli.kdload.list_devices",
                   side_effect=usb.core.NoBackendError("No backend available")):
            result = runner.invoke(main, ["devices"])
        assert result.exit_code == ExitCode.DEVICE_ERROR
        assert "libusb" in result.output

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "kdload" in result.output
