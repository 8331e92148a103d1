"""Registry of open serial connections, keyed by port identifier."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from eblocks_companion.errors import PortAlreadyHeld

logger = logging.getLogger(__name__)


@dataclass
class ConnectionRecord:
    """An open OS handle on a serial port.

    While a record is registered its handle is open; once it is released
    the handle has been closed.
    """
    port: str
    handle: Any
    baud_rate: int
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "baud_rate": self.baud_rate,
            "opened_at": self.opened_at.isoformat(),
        }


class PortRegistry:
    """Single source of truth for "is this port busy".

    At most one ConnectionRecord exists per port. A second acquire fails
    fast instead of queuing; the only code path that needs a held port is
    the upload arbitrator, and it releases explicitly first.
    """

    def __init__(self) -> None:
        self._records: dict[str, ConnectionRecord] = {}

    def try_acquire(self, record: ConnectionRecord) -> ConnectionRecord:
        if record.port in self._records:
            raise PortAlreadyHeld(record.port)
        self._records[record.port] = record
        logger.debug("Acquired %s", record.port)
        return record

    def release(self, port: str) -> None:
        if self._records.pop(port, None) is not None:
            logger.debug("Released %s", port)

    def is_held(self, port: str) -> bool:
        return port in self._records

    def get(self, port: str) -> ConnectionRecord | None:
        return self._records.get(port)

    def ports(self) -> list[str]:
        return list(self._records)
