"""Tests for upload arbitration."""

import asyncio

import pytest

from eblocks_companion.companion import Companion
from eblocks_companion.errors import CompileFailed, NoPortResolved, ToolchainNotFound, UploadFailed
from eblocks_companion.serial.port import ToolchainPort
from eblocks_companion.upload import UploadRequest, select_upload_port

from conftest import FakeToolchain, failed

BLINK = "void setup() { pinMode(13, OUTPUT); }\nvoid loop() {}\n"


def _run(companion, request):
    async def scenario():
        try:
            return await companion.upload(request)
        finally:
            await companion.shutdown()

    return asyncio.run(scenario())


class TestUploadWithLiveMonitor:
    def test_upload_takes_port_from_monitor(self, config, opener, toolchain):
        companion = Companion(config, toolchain=toolchain, opener=opener)

        async def scenario():
            await companion.connect("COM5")
            result = await companion.upload(UploadRequest(BLINK, "arduino-mega", "COM5"))
            return result

        result = asyncio.run(scenario())
        assert result.port == "COM5"
        assert result.fqbn == "arduino:avr:mega"
        assert not companion.registry.is_held("COM5")
        assert not opener.handles("COM5")[0].is_open
        assert toolchain.calls == ["update-index", "install arduino:avr", "compile arduino:avr:mega", "upload COM5"]

    def test_other_ports_untouched(self, config, opener, toolchain):
        companion = Companion(config, toolchain=toolchain, opener=opener)

        async def scenario():
            await companion.connect("COM3")
            await companion.upload(UploadRequest(BLINK, "arduino-mega", "COM5"))
            held = companion.registry.is_held("COM3")
            await companion.shutdown()
            return held

        assert asyncio.run(scenario())

    def test_monitor_reconnecting_during_compile_is_released(self, config, opener, toolchain):
        companion = Companion(config, toolchain=toolchain, opener=opener)

        async def reconnect():
            await companion.connect("COM5")

        toolchain.on_compile = reconnect
        result = _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        assert result.port == "COM5"
        assert len(opener.handles("COM5")) == 1
        assert not opener.handles("COM5")[0].is_open
        assert toolchain.calls[-1] == "upload COM5"

    def test_connect_waits_for_flash(self, config, opener, toolchain):
        companion = Companion(config, toolchain=toolchain, opener=opener)
        order = []
        original_upload = toolchain.upload

        async def slow_upload(port, fqbn, sketch_dir):
            order.append("flash start")
            await asyncio.sleep(0.1)
            order.append("flash end")
            return await original_upload(port, fqbn, sketch_dir)

        toolchain.upload = slow_upload

        async def scenario():
            upload = asyncio.create_task(companion.upload(UploadRequest(BLINK, "arduino-mega", "COM5")))
            while "flash start" not in order:
                await asyncio.sleep(0.01)
            await companion.connect("COM5")
            order.append("connected")
            await upload
            await companion.shutdown()

        asyncio.run(scenario())
        assert order == ["flash start", "flash end", "connected"]


class TestUploadFailures:
    def test_compile_failure_carries_diagnostics(self, config, opener, toolchain):
        toolchain.compile_result = failed("sketch.ino:3:1: error: expected ';' before '}' token")
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(CompileFailed) as exc_info:
            _run(companion, UploadRequest("void setup() {", "arduino-mega", "COM5"))
        assert "expected ';'" in exc_info.value.stderr
        assert "expected ';'" in exc_info.value.output
        assert not any(c.startswith("upload") for c in toolchain.calls)

    def test_upload_failure_is_distinct(self, config, opener, toolchain):
        toolchain.upload_result = failed("avrdude: ser_open(): can't open device \"COM5\"")
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(UploadFailed) as exc_info:
            _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        assert not isinstance(exc_info.value, CompileFailed)
        assert "avrdude" in exc_info.value.stderr

    def test_upload_timeout_is_failure(self, config, opener, toolchain):
        toolchain.upload_result.timed_out = True
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(UploadFailed, match="timed out"):
            _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))

    def test_missing_toolchain_fails_before_touching_port(self, config, opener):
        toolchain = FakeToolchain(resolvable=False)
        companion = Companion(config, toolchain=toolchain, opener=opener)

        async def scenario():
            await companion.connect("COM5")
            with pytest.raises(ToolchainNotFound):
                await companion.upload(UploadRequest(BLINK, "arduino-mega", "COM5"))
            held = companion.registry.is_held("COM5")
            await companion.shutdown()
            return held

        assert asyncio.run(scenario())
        assert toolchain.calls == []

    def test_core_setup_failures_are_best_effort(self, config, opener, toolchain):
        toolchain.index_result = failed("network unreachable")
        toolchain.install_result = failed("platform already installed")
        companion = Companion(config, toolchain=toolchain, opener=opener)
        result = _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        assert result.port == "COM5"

    def test_empty_code_rejected(self, config, opener, toolchain):
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(ValueError, match="No code"):
            _run(companion, UploadRequest("", "arduino-mega", "COM5"))
        assert toolchain.calls == []

    def test_unprogrammable_family_rejected(self, config, opener, toolchain):
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(ValueError):
            _run(companion, UploadRequest(BLINK, "pic", "COM5"))
        assert toolchain.calls == []


class TestSketchDirectory:
    def test_removed_after_success(self, config, opener, toolchain, tmp_path):
        companion = Companion(config, toolchain=toolchain, opener=opener)
        _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        sketch_dir = toolchain.sketch_dirs[0]
        assert sketch_dir.name.startswith("sketch_")
        assert not sketch_dir.exists()
        assert list((tmp_path / "work").iterdir()) == []

    def test_removed_after_compile_failure(self, config, opener, toolchain, tmp_path):
        toolchain.compile_result = failed("error")
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(CompileFailed):
            _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        assert list((tmp_path / "work").iterdir()) == []

    def test_removed_after_upload_failure(self, config, opener, toolchain, tmp_path):
        toolchain.upload_result = failed("avrdude: programmer is not responding")
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(UploadFailed):
            _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        assert toolchain.sketch_dirs
        assert list((tmp_path / "work").iterdir()) == []

    def test_removed_after_upload_timeout(self, config, opener, toolchain, tmp_path):
        toolchain.upload_result.timed_out = True
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(UploadFailed, match="timed out"):
            _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        assert list((tmp_path / "work").iterdir()) == []

    def test_removed_when_no_port_found(self, config, opener, tmp_path):
        toolchain = FakeToolchain(ports=[])
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(NoPortResolved):
            _run(companion, UploadRequest(BLINK, "arduino-mega"))
        assert toolchain.sketch_dirs
        assert list((tmp_path / "work").iterdir()) == []

    def test_main_file_named_after_folder(self, config, opener, toolchain):
        seen = {}

        async def inspect():
            sketch_dir = toolchain.sketch_dirs[-1]
            seen["ino"] = (sketch_dir / f"{sketch_dir.name}.ino").read_text(encoding="utf-8")

        toolchain.on_compile = inspect
        companion = Companion(config, toolchain=toolchain, opener=opener)
        _run(companion, UploadRequest(BLINK, "arduino-mega", "COM5"))
        assert seen["ino"] == BLINK


class TestAutoPort:
    def test_auto_prefers_known_board(self, config, opener):
        toolchain = FakeToolchain(ports=[
            ToolchainPort(address="/dev/ttyUSB0", label="/dev/ttyUSB0", protocol="serial", vendor_id="10C4", product_id="EA60"),
            ToolchainPort(address="/dev/ttyACM0", label="/dev/ttyACM0", protocol="serial", board_name="Arduino Mega or Mega 2560",
                          fqbn="arduino:avr:mega", vendor_id="2341", product_id="0042"),
        ])
        companion = Companion(config, toolchain=toolchain, opener=opener)
        result = _run(companion, UploadRequest(BLINK, "arduino-mega"))
        assert result.port == "/dev/ttyACM0"
        assert "board list" in toolchain.calls

    def test_no_port_found(self, config, opener):
        toolchain = FakeToolchain(ports=[ToolchainPort(address="COM1", label="COM1", protocol="serial")])
        companion = Companion(config, toolchain=toolchain, opener=opener)
        with pytest.raises(NoPortResolved):
            _run(companion, UploadRequest(BLINK, "arduino-mega"))
        assert not any(c.startswith("upload") for c in toolchain.calls)


class TestSelectUploadPort:
    def test_marker_in_board_name(self):
        ports = [
            ToolchainPort(address="COM3", protocol="serial", vendor_id="10C4", product_id="EA60"),
            ToolchainPort(address="COM5", protocol="serial", board_name="EBlocks Mega"),
        ]
        assert select_upload_port(ports) == "COM5"

    def test_known_usb_ids(self):
        ports = [
            ToolchainPort(address="COM3", protocol="serial", vendor_id="10C4", product_id="EA60"),
            ToolchainPort(address="COM5", protocol="serial", vendor_id="12BF", product_id="0030"),
        ]
        assert select_upload_port(ports) == "COM5"

    def test_first_usb_port_fallback(self):
        ports = [
            ToolchainPort(address="COM1", protocol="serial"),
            ToolchainPort(address="COM3", protocol="serial", vendor_id="10C4", product_id="EA60"),
        ]
        assert select_upload_port(ports) == "COM3"

    def test_non_serial_protocols_skipped(self):
        ports = [ToolchainPort(address="192.168.1.20", protocol="network", board_name="Arduino Uno WiFi")]
        assert select_upload_port(ports) is None

    def test_empty(self):
        assert select_upload_port([]) is None
