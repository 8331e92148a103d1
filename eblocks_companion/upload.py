"""Compile-and-flash sequencing around live serial connections."""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from eblocks_companion.boards import UsbDescriptor, core_for_fqbn, family_for_fqbn, identify_family, resolve_fqbn
from eblocks_companion.errors import CompileFailed, NoPortResolved, UploadFailed
from eblocks_companion.serial.connection import ConnectionManager
from eblocks_companion.serial.port import ToolchainPort
from eblocks_companion.toolchain import ArduinoCli, CommandResult

logger = logging.getLogger(__name__)

AUTO = "auto"

# Substrings of a board-list row that mark a programmable board rather than
# some unrelated serial device (a built-in modem, a Bluetooth SPP port).
BOARD_MARKERS = ("EBLOCKS", "MEGA", "ARDUINO", "ESP32")


@dataclass
class UploadRequest:
    source_code: str
    target_family: str
    port: str = AUTO


@dataclass
class UploadResult:
    port: str
    fqbn: str
    compile_output: str = ""
    upload_output: str = ""
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _looks_like_board(port: ToolchainPort) -> bool:
    text = port.search_text.upper()
    if any(marker in text for marker in BOARD_MARKERS):
        return True
    usb = UsbDescriptor(
        vendor_id=port.vendor_id,
        product_id=port.product_id,
        serial_number=port.serial_number,
        friendly_name=port.label,
    )
    return identify_family(usb) is not None


def select_upload_port(ports: list[ToolchainPort]) -> str | None:
    """Pick the port to flash when the caller asked for "auto".

    Known boards win over the first entry; failing that, the first
    USB-backed serial port. Ports without USB ids (COM1, ttyS0) are never
    chosen.
    """
    serial_ports = [p for p in ports if p.protocol in ("", "serial")]
    for p in serial_ports:
        if _looks_like_board(p):
            return p.address
    for p in serial_ports:
        if p.is_usb:
            return p.address
    return None


class UploadArbitrator:
    """Runs one upload, taking the target port away from the monitor if needed."""

    def __init__(self, connections: ConnectionManager, toolchain: ArduinoCli, work_dir: Path | str):
        self.connections = connections
        self.toolchain = toolchain
        self.work_dir = Path(work_dir)

    async def upload(self, request: UploadRequest) -> UploadResult:
        if not request.source_code:
            raise ValueError("No code provided")
        fqbn = resolve_fqbn(request.target_family)
        start = time.monotonic()

        self.toolchain.resolve()

        requested = request.port or AUTO
        if requested != AUTO and self.connections.is_connected(requested):
            logger.info("Port %s is in use by the monitor, releasing it", requested)
            await self.connections.disconnect(requested)

        sketch_dir: Path | None = None
        try:
            sketch_dir = self._sketch_dir()
            self._write_sketch(sketch_dir, request.source_code)

            await self._ensure_core(fqbn)
            compiled = await self._compile(fqbn, sketch_dir)

            port = await self._resolve_port(requested)
            async with self.connections.exclusive(port):
                # A monitor may have reconnected while we were compiling.
                if self.connections.is_connected(port):
                    logger.warning("Port %s was reopened during compile, releasing it again", port)
                    await self.connections.disconnect_unlocked(port)
                flashed = await self._flash(port, fqbn, sketch_dir)
        finally:
            if sketch_dir is not None:
                self._cleanup(sketch_dir)

        logger.info("Uploaded %s to %s", fqbn, port)
        return UploadResult(
            port=port,
            fqbn=fqbn,
            compile_output=compiled.stdout,
            upload_output=flashed.stdout,
            duration_seconds=time.monotonic() - start,
        )

    def _sketch_dir(self) -> Path:
        return self.work_dir / f"sketch_{time.time_ns()}"

    @staticmethod
    def _write_sketch(sketch_dir: Path, source_code: str) -> None:
        # arduino-cli requires the main file to share the folder's name.
        sketch_dir.mkdir(parents=True)
        (sketch_dir / f"{sketch_dir.name}.ino").write_text(source_code, encoding="utf-8")

    @staticmethod
    def _cleanup(sketch_dir: Path) -> None:
        try:
            shutil.rmtree(sketch_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s: %s", sketch_dir, e)

    async def _ensure_core(self, fqbn: str) -> None:
        """Best effort: a core installed earlier is the common case."""
        family = family_for_fqbn(fqbn)
        core = family.core if family and family.core else core_for_fqbn(fqbn)
        core_url = family.core_url if family else ""

        result = await self.toolchain.update_index(core_url)
        if not result.ok:
            logger.warning("Core index update %s, continuing: %s", result.describe(), result.stderr.strip())

        logger.info("Installing core %s", core)
        result = await self.toolchain.install_core(core, core_url)
        if not result.ok:
            logger.warning("Core install %s, may already be installed: %s", result.describe(), result.stderr.strip())

    async def _compile(self, fqbn: str, sketch_dir: Path) -> CommandResult:
        logger.info("Compiling for %s", fqbn)
        result = await self.toolchain.compile(fqbn, sketch_dir)
        if not result.ok:
            raise CompileFailed(
                f"Compilation {result.describe()}", stdout=result.stdout, stderr=result.stderr
            )
        if result.stderr.strip() and "Sketch uses" not in result.stderr:
            logger.warning("Compile warnings: %s", result.stderr.strip())
        return result

    async def _resolve_port(self, requested: str) -> str:
        if requested != AUTO:
            logger.info("Using specified port %s", requested)
            return requested
        port = select_upload_port(await self.toolchain.board_list())
        if port is None:
            raise NoPortResolved()
        logger.info("Auto-detected port %s", port)
        return port

    async def _flash(self, port: str, fqbn: str, sketch_dir: Path) -> CommandResult:
        logger.info("Uploading to %s", port)
        result = await self.toolchain.upload(port, fqbn, sketch_dir)
        if not result.ok:
            raise UploadFailed(
                f"Upload to {port} {result.describe()}", stdout=result.stdout, stderr=result.stderr
            )
        return result
