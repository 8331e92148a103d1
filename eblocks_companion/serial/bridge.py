"""Buffered delivery of serial input to polling clients."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable

from eblocks_companion.config import BUFFER_SIZE
from eblocks_companion.serial.registry import ConnectionRecord

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[str, Exception], None]

# A pending line longer than this is flushed as a line of its own. Devices
# that never send "\n" (bare "\r" endings, binary dumps, bootloader noise)
# would otherwise grow the partial line without bound.
MAX_LINE_BYTES = 4096


def _read_available(handle) -> bytes:
    """Blocking read of whatever is waiting, or one byte within the port timeout."""
    return handle.read(handle.in_waiting or 1)


class _Reader:
    def __init__(self, task: asyncio.Task, stop: asyncio.Event):
        self.task = task
        self.stop = stop


class DataBridge:
    """Moves bytes from open connections into per-port line buffers.

    Each port's buffer is a FIFO capped at ``buffer_size`` lines; when full,
    the oldest line is dropped. ``drain`` hands the whole buffer to the
    caller and empties it, so a client that polls repeatedly never sees a
    line twice and never has to track a cursor.
    """

    def __init__(self, buffer_size: int = BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._buffers: dict[str, deque[str]] = {}
        self._partial: dict[str, bytes] = {}
        self._readers: dict[str, _Reader] = {}

    def feed(self, port: str, data: bytes) -> None:
        """Split raw bytes into lines and append them to the port's buffer."""
        buf = self._buffers.get(port)
        if buf is None:
            buf = self._buffers[port] = deque(maxlen=self.buffer_size)
        pending = self._partial.pop(port, b"") + data
        *complete, rest = pending.split(b"\n")
        for raw in complete:
            buf.append(raw.decode("utf-8", errors="ignore").rstrip("\r"))
        while len(rest) >= MAX_LINE_BYTES:
            buf.append(rest[:MAX_LINE_BYTES].decode("utf-8", errors="ignore"))
            rest = rest[MAX_LINE_BYTES:]
        if rest:
            self._partial[port] = rest

    def drain(self, port: str) -> list[str]:
        buf = self._buffers.get(port)
        if not buf:
            return []
        lines = list(buf)
        buf.clear()
        return lines

    def has_buffer(self, port: str) -> bool:
        return port in self._buffers

    def discard(self, port: str) -> None:
        """Drop everything buffered for a port."""
        self._buffers.pop(port, None)
        self._partial.pop(port, None)

    # -- Reader lifecycle -----------------------------------------------------

    def attach(self, record: ConnectionRecord, on_error: ErrorCallback | None = None) -> None:
        """Start pumping the record's handle into its buffer."""
        if record.port in self._readers:
            return
        stop = asyncio.Event()
        task = asyncio.create_task(
            self._pump(record, stop, on_error), name=f"serial-reader:{record.port}"
        )
        self._readers[record.port] = _Reader(task, stop)

    async def detach(self, port: str) -> None:
        """Stop the port's reader, wait for it to finish and drop its buffer.

        Returns once no thread is reading from the handle any more, so the
        caller may close it.
        """
        reader = self._readers.pop(port, None)
        if reader is not None:
            reader.stop.set()
            await reader.task
        self.discard(port)

    def is_attached(self, port: str) -> bool:
        return port in self._readers

    async def _pump(self, record: ConnectionRecord, stop: asyncio.Event, on_error: ErrorCallback | None) -> None:
        while not stop.is_set():
            try:
                chunk = await asyncio.to_thread(_read_available, record.handle)
            except OSError as e:
                if stop.is_set():
                    return
                logger.warning("Serial read on %s failed: %s", record.port, e)
                # The reader is finished; detach must not wait on it.
                self._readers.pop(record.port, None)
                if on_error is not None:
                    on_error(record.port, e)
                return
            if chunk:
                self.feed(record.port, chunk)
