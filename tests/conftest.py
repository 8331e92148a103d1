"""Shared fakes for serial handles and the arduino-cli toolchain."""

import errno
import queue
import time

import pytest

from eblocks_companion.config import CompanionConfig
from eblocks_companion.errors import PortUnavailable, ToolchainNotFound
from eblocks_companion.toolchain import CommandResult


class FakeSerial:
    """Fake pyserial handle fed from a queue."""

    def __init__(self, port, baud_rate, timeout=0.01):
        self.port = port
        self.baudrate = baud_rate
        self.timeout = timeout
        self.is_open = True
        self.written = []
        self.read_error = None
        self._chunks = queue.Queue()

    def push(self, data):
        self._chunks.put(data.encode() if isinstance(data, str) else data)

    @property
    def in_waiting(self):
        return 0

    def read(self, size=1):
        if not self.is_open:
            raise OSError(errno.EBADF, "Bad file descriptor")
        if self.read_error is not None:
            raise self.read_error
        try:
            return self._chunks.get(timeout=self.timeout)
        except queue.Empty:
            return b""

    def write(self, data):
        if not self.is_open:
            raise OSError(errno.EBADF, "Bad file descriptor")
        self.written.append(data)
        return len(data)

    def close(self):
        self.is_open = False
        self.closed_at = time.monotonic()


class FakeOpener:
    """Stands in for open_serial; fails for ports listed as missing."""

    def __init__(self, missing=()):
        self.missing = set(missing)
        self.opened = []

    def __call__(self, port, baud_rate, timeout=0.01):
        if port in self.missing:
            raise PortUnavailable(port, "could not open port", exit_code=2)
        handle = FakeSerial(port, baud_rate, timeout)
        self.opened.append(handle)
        return handle

    def handles(self, port):
        return [h for h in self.opened if h.port == port]


def ok(stdout=""):
    return CommandResult(args=[], returncode=0, stdout=stdout)


def failed(stderr="", returncode=1, stdout=""):
    return CommandResult(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeToolchain:
    """Records calls in order and returns canned CommandResults."""

    def __init__(self, *, resolvable=True, ports=None):
        self.resolvable = resolvable
        self.ports = ports or []
        self.index_result = ok()
        self.install_result = ok()
        self.compile_result = ok("Sketch uses 1024 bytes")
        self.upload_result = ok("Upload complete")
        self.calls = []
        self.sketch_dirs = []
        self.on_compile = None

    def resolve(self):
        if not self.resolvable:
            raise ToolchainNotFound()
        return "/usr/bin/arduino-cli"

    async def update_index(self, core_url=""):
        self.calls.append("update-index")
        return self.index_result

    async def install_core(self, core, core_url=""):
        self.calls.append(f"install {core}")
        return self.install_result

    async def compile(self, fqbn, sketch_dir):
        self.calls.append(f"compile {fqbn}")
        self.sketch_dirs.append(sketch_dir)
        assert sketch_dir.exists()
        if self.on_compile is not None:
            await self.on_compile()
        return self.compile_result

    async def board_list(self):
        self.calls.append("board list")
        return self.ports

    async def upload(self, port, fqbn, sketch_dir):
        self.calls.append(f"upload {port}")
        return self.upload_result

    async def doctor(self):
        if not self.resolvable:
            return {"ok": False, "message": "arduino-cli not found"}
        return {"ok": True, "path": "/usr/bin/arduino-cli", "version": "arduino-cli 1.0.0", "message": "arduino-cli found"}


@pytest.fixture
def opener():
    return FakeOpener(missing={"/dev/does-not-exist"})


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def config(tmp_path):
    config = CompanionConfig()
    config.serial.settle_delay = 0
    config.serial.read_timeout = 0.01
    config.toolchain.work_dir = str(tmp_path / "work")
    return config
