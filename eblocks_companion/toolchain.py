"""arduino-cli wrapper: locating the executable and running its commands."""

from __future__ import annotations

import asyncio
import json
import logging
import platform
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path

from eblocks_companion.boards import normalize_usb_id
from eblocks_companion.config import ToolchainConfig
from eblocks_companion.errors import ToolchainNotFound
from eblocks_companion.serial.port import ToolchainPort

logger = logging.getLogger(__name__)

EXECUTABLE = "arduino-cli.exe" if sys.platform == "win32" else "arduino-cli"


@dataclass
class CommandResult:
    args: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe(self) -> str:
        """One-line account of how the command ended."""
        if self.timed_out:
            return "timed out"
        return f"exited with code {self.returncode}"


def bundled_executable(resources_dir: Path | str) -> Path:
    """Where an installer drops a bundled arduino-cli for this platform."""
    arch = "arm64" if platform.machine().lower() in ("arm64", "aarch64") else "x64"
    return Path(resources_dir) / "arduino-cli" / sys.platform / arch / EXECUTABLE


def parse_board_list(stdout: str) -> list[ToolchainPort]:
    """Parse ``arduino-cli board list --format json``.

    Newer releases wrap the entries in ``{"detected_ports": [...]}``; older
    ones print the list directly.
    """
    data = json.loads(stdout) if stdout.strip() else []
    entries = data.get("detected_ports", []) if isinstance(data, dict) else data

    ports: list[ToolchainPort] = []
    for entry in entries or []:
        port_info = entry.get("port", entry)
        address = port_info.get("address", "")
        if not address:
            continue
        props = port_info.get("properties", {}) or {}
        boards = entry.get("matching_boards") or entry.get("boards") or []
        board = boards[0] if boards else {}
        ports.append(ToolchainPort(
            address=address,
            label=port_info.get("label", "") or port_info.get("protocol_label", ""),
            protocol=port_info.get("protocol", ""),
            board_name=board.get("name", ""),
            fqbn=board.get("fqbn") or None,
            vendor_id=normalize_usb_id(props.get("vid")),
            product_id=normalize_usb_id(props.get("pid")),
            serial_number=props.get("serialNumber") or None,
        ))
    return ports


class ArduinoCli:
    """The external compiler/flasher, invoked by path.

    Every command runs with a finite timeout; a hung process is killed and
    reported as a failed CommandResult rather than blocking the event loop
    forever.
    """

    def __init__(self, config: ToolchainConfig | None = None):
        self.config = config or ToolchainConfig()
        self._executable: str | None = None

    def resolve(self) -> str:
        """Locate arduino-cli: configured path, then bundled copy, then PATH."""
        if self._executable is not None:
            return self._executable

        candidates: list[Path] = []
        if self.config.path:
            candidates.append(Path(self.config.path))
        if self.config.resources_dir:
            candidates.append(bundled_executable(self.config.resources_dir))
        for candidate in candidates:
            if candidate.is_file():
                self._executable = str(candidate)
                logger.info("Using arduino-cli at %s", self._executable)
                return self._executable
            logger.debug("No arduino-cli at %s", candidate)

        found = shutil.which("arduino-cli")
        if found:
            self._executable = found
            logger.info("Using system arduino-cli at %s", found)
            return found
        raise ToolchainNotFound()

    async def run(self, args: list[str], timeout: float) -> CommandResult:
        cmd = [self.resolve(), *args]
        logger.debug("Running %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._executable = None
            raise ToolchainNotFound(f"Could not run {cmd[0]}: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            stdout, stderr = await proc.communicate()
            logger.warning("%s timed out after %ss", " ".join(args[:2]), timeout)
            return CommandResult(
                args=cmd,
                returncode=proc.returncode,
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace"),
                timed_out=True,
            )
        result = CommandResult(
            args=cmd,
            returncode=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        logger.debug("%s %s", " ".join(args[:2]), result.describe())
        return result

    async def version(self) -> CommandResult:
        return await self.run(["version"], timeout=self.config.board_list_timeout)

    async def board_list(self) -> list[ToolchainPort]:
        """Ports the toolchain can see. Returns an empty list on failure."""
        result = await self.run(["board", "list", "--format", "json"], timeout=self.config.board_list_timeout)
        if not result.ok:
            logger.warning("board list %s: %s", result.describe(), result.stderr.strip())
            return []
        try:
            return parse_board_list(result.stdout)
        except (json.JSONDecodeError, AttributeError) as e:
            logger.warning("Could not parse board list output: %s", e)
            return []

    async def update_index(self, core_url: str = "") -> CommandResult:
        args = ["core", "update-index"]
        if core_url:
            args += ["--additional-urls", core_url]
        return await self.run(args, timeout=self.config.index_timeout)

    async def install_core(self, core: str, core_url: str = "") -> CommandResult:
        args = ["core", "install", core]
        if core_url:
            args += ["--additional-urls", core_url]
        return await self.run(args, timeout=self.config.install_timeout)

    async def compile(self, fqbn: str, sketch_dir: Path) -> CommandResult:
        return await self.run(["compile", "--fqbn", fqbn, str(sketch_dir)], timeout=self.config.compile_timeout)

    async def upload(self, port: str, fqbn: str, sketch_dir: Path) -> CommandResult:
        return await self.run(
            ["upload", "-p", port, "--fqbn", fqbn, str(sketch_dir)],
            timeout=self.config.upload_timeout,
        )

    async def doctor(self) -> dict:
        """Check arduino-cli is installed and runs. Returns {"ok", "message", ...}."""
        try:
            path = self.resolve()
        except ToolchainNotFound as e:
            return {"ok": False, "message": e.message}
        result = await self.version()
        if not result.ok:
            return {"ok": False, "path": path, "message": f"arduino-cli at {path} {result.describe()}"}
        return {"ok": True, "path": path, "version": result.stdout.strip(), "message": f"arduino-cli found at {path}"}
