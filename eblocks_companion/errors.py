"""Error taxonomy for eblocks-companion.

Every failure the companion reports belongs to exactly one class here so that
callers (CLI, HTTP API) can tell "your code didn't compile" apart from "the
board could not be reached" and "the toolchain itself is missing".
"""

from __future__ import annotations


class CompanionError(Exception):
    """Structured error with exit code."""

    kind = "error"

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "exit_code": self.exit_code}


class PortUnavailable(CompanionError):
    """The OS refused to open (or write to) a serial port.

    Exit codes:
        2: port not found / device disconnected
        3: port busy (held by a foreign process)
        4: permission denied
    """

    kind = "port_unavailable"

    def __init__(self, port: str, message: str, exit_code: int = 2):
        super().__init__(f"{port}: {message}", exit_code=exit_code)
        self.port = port


class NotConnected(CompanionError):
    kind = "not_connected"

    def __init__(self, port: str):
        super().__init__(f"Not connected to {port}", exit_code=5)
        self.port = port


class PortAlreadyHeld(CompanionError):
    """Raised by the port registry when a second acquire hits a held port."""

    kind = "port_already_held"

    def __init__(self, port: str):
        super().__init__(f"{port} is already held by another connection", exit_code=3)
        self.port = port


class ToolchainNotFound(CompanionError):
    kind = "toolchain_not_found"

    def __init__(self, message: str = "arduino-cli not found. Install from https://arduino.github.io/arduino-cli/"):
        super().__init__(message, exit_code=6)


class _ToolchainFailure(CompanionError):
    """A toolchain step that ran and failed; carries its output for diagnosis."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "", exit_code: int = 1):
        super().__init__(message, exit_code=exit_code)
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        """The toolchain's diagnostics, stderr first."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["stdout"] = self.stdout
        d["stderr"] = self.stderr
        return d


class CompileFailed(_ToolchainFailure):
    kind = "compile_failed"

    def __init__(self, message: str = "Compilation failed", stdout: str = "", stderr: str = ""):
        super().__init__(message, stdout=stdout, stderr=stderr, exit_code=7)


class UploadFailed(_ToolchainFailure):
    """The sketch compiled but flashing the board failed."""

    kind = "upload_failed"

    def __init__(self, message: str = "Upload failed", stdout: str = "", stderr: str = ""):
        super().__init__(message, stdout=stdout, stderr=stderr, exit_code=8)


class NoPortResolved(CompanionError):
    kind = "no_port_resolved"

    def __init__(self, message: str = "No serial port found. Please connect your device."):
        super().__init__(message, exit_code=9)
