"""Lifecycle of serial connections: connect, disconnect, write."""

from __future__ import annotations

import asyncio
import errno
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from eblocks_companion.config import DEFAULT_BAUD_RATE, default_settle_delay
from eblocks_companion.errors import NotConnected, PortUnavailable
from eblocks_companion.serial.bridge import DataBridge
from eblocks_companion.serial.port import open_serial
from eblocks_companion.serial.registry import ConnectionRecord, PortRegistry

logger = logging.getLogger(__name__)

# errnos a close() may raise when the device already went away underneath us
_ALREADY_GONE = {errno.EBADF, errno.ENODEV, errno.ENXIO, errno.EIO}


class ConnectionManager:
    """Owns every open serial handle in the process.

    connect/disconnect are idempotent. Operations on the same port are
    serialised by a per-port lock; different ports never share a lock.

    ``settle_delay`` is a platform accommodation: on Windows the COM device
    stays claimed for a moment after close returns, and reopening or
    flashing inside that window fails intermittently. Keep it.
    """

    def __init__(
        self,
        registry: PortRegistry,
        bridge: DataBridge,
        *,
        settle_delay: float | None = None,
        read_timeout: float = 0.1,
        opener: Callable | None = None,
    ):
        self.registry = registry
        self.bridge = bridge
        self.settle_delay = default_settle_delay() if settle_delay is None else settle_delay
        self.read_timeout = read_timeout
        self._opener = opener or open_serial
        self._locks: dict[str, asyncio.Lock] = {}
        self._cleanups: set[asyncio.Task] = set()

    def _lock(self, port: str) -> asyncio.Lock:
        lock = self._locks.get(port)
        if lock is None:
            lock = self._locks[port] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def exclusive(self, port: str) -> AsyncIterator[None]:
        """Hold the port's lock; connect/disconnect on it wait until release.

        Inside the block use the ``*_unlocked`` variants.
        """
        async with self._lock(port):
            yield

    def is_connected(self, port: str) -> bool:
        return self.registry.is_held(port)

    async def connect(self, port: str, baud_rate: int = DEFAULT_BAUD_RATE) -> ConnectionRecord:
        async with self._lock(port):
            return await self.connect_unlocked(port, baud_rate)

    async def connect_unlocked(self, port: str, baud_rate: int = DEFAULT_BAUD_RATE) -> ConnectionRecord:
        existing = self.registry.get(port)
        if existing is not None:
            # A disconnect whose close failed leaves the record held but its
            # reader stopped; resume reading instead of going silent.
            if not self.bridge.is_attached(port):
                logger.info("Resuming reader on %s", port)
                self.bridge.attach(existing, on_error=self._on_read_error)
            logger.debug("Already connected to %s", port)
            return existing

        handle = await asyncio.to_thread(self._opener, port, baud_rate, self.read_timeout)
        record = ConnectionRecord(port=port, handle=handle, baud_rate=baud_rate)
        self.registry.try_acquire(record)
        self.bridge.attach(record, on_error=self._on_read_error)
        logger.info("Connected to %s at %d baud", port, baud_rate)
        return record

    async def disconnect(self, port: str) -> bool:
        """Close the port; returns False if it was not connected."""
        async with self._lock(port):
            return await self.disconnect_unlocked(port)

    async def disconnect_unlocked(self, port: str) -> bool:
        record = self.registry.get(port)
        if record is None:
            return False

        await self.bridge.detach(port)
        await asyncio.to_thread(_close_handle, record)
        self.registry.release(port)
        logger.info("Disconnected from %s", port)

        if self.settle_delay > 0:
            logger.debug("Waiting %.1fs for the OS to release %s", self.settle_delay, port)
            await asyncio.sleep(self.settle_delay)
        return True

    async def write(self, port: str, data: bytes | str) -> int:
        record = self.registry.get(port)
        if record is None:
            raise NotConnected(port)
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            written = await asyncio.to_thread(record.handle.write, data)
        except OSError as e:
            raise PortUnavailable(port, f"write failed ({e})") from e
        return written if written is not None else len(data)

    async def close_all(self) -> None:
        """Release every held port concurrently, e.g. on shutdown."""
        ports = self.registry.ports()
        results = await asyncio.gather(*(self.disconnect(p) for p in ports), return_exceptions=True)
        for port, result in zip(ports, results):
            if isinstance(result, Exception):
                logger.error("Failed to close %s during shutdown: %s", port, result)

    def _on_read_error(self, port: str, exc: Exception) -> None:
        # The device vanished (unplugged, or reset into its bootloader). Tear
        # the connection down so the registry stops claiming a dead handle.
        logger.info("Connection to %s lost: %s", port, exc)
        task = asyncio.get_running_loop().create_task(self._drop_lost(port))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)

    async def _drop_lost(self, port: str) -> None:
        try:
            await self.disconnect(port)
        except Exception:
            logger.exception("Failed to clean up lost connection on %s", port)


def _close_handle(record: ConnectionRecord) -> None:
    handle = record.handle
    if not getattr(handle, "is_open", True):
        return
    try:
        handle.close()
    except OSError as e:
        if getattr(e, "errno", None) in _ALREADY_GONE:
            logger.debug("%s was already closed: %s", record.port, e)
            return
        raise PortUnavailable(record.port, f"close failed ({e})") from e
