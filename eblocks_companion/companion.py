"""Wiring of the companion's services for one process."""

from __future__ import annotations

import logging

from eblocks_companion.config import CompanionConfig
from eblocks_companion.errors import ToolchainNotFound
from eblocks_companion.serial.bridge import DataBridge
from eblocks_companion.serial.connection import ConnectionManager
from eblocks_companion.serial.port import BoardDescriptor, list_serial_ports
from eblocks_companion.serial.registry import PortRegistry
from eblocks_companion.toolchain import ArduinoCli
from eblocks_companion.upload import UploadArbitrator, UploadRequest, UploadResult

logger = logging.getLogger(__name__)


class Companion:
    """Owns the registry, buffers, connections, toolchain and upload arbitration.

    Nothing outside this object touches the registry or the buffers directly.
    """

    def __init__(
        self,
        config: CompanionConfig | None = None,
        *,
        registry: PortRegistry | None = None,
        toolchain: ArduinoCli | None = None,
        opener=None,
    ):
        self.config = config or CompanionConfig()
        self.registry = registry or PortRegistry()
        self.bridge = DataBridge(buffer_size=self.config.serial.buffer_size)
        self.connections = ConnectionManager(
            self.registry,
            self.bridge,
            settle_delay=self.config.serial.settle_delay,
            read_timeout=self.config.serial.read_timeout,
            opener=opener,
        )
        self.toolchain = toolchain or ArduinoCli(self.config.toolchain)
        self.arbitrator = UploadArbitrator(self.connections, self.toolchain, self.config.toolchain.work_dir)

    async def list_ports(self) -> list[BoardDescriptor]:
        """Current ports with board descriptors; the toolchain is optional here."""
        try:
            toolchain_ports = await self.toolchain.board_list()
        except ToolchainNotFound:
            logger.debug("arduino-cli not available, listing ports from the OS only")
            toolchain_ports = []
        return list_serial_ports(toolchain_ports)

    async def connect(self, port: str, baud_rate: int | None = None):
        return await self.connections.connect(port, baud_rate or self.config.serial.baud_rate)

    async def disconnect(self, port: str) -> bool:
        return await self.connections.disconnect(port)

    async def write(self, port: str, data: bytes | str) -> int:
        return await self.connections.write(port, data)

    def drain(self, port: str) -> list[str]:
        return self.bridge.drain(port)

    async def upload(self, request: UploadRequest) -> UploadResult:
        return await self.arbitrator.upload(request)

    async def check_toolchain(self) -> dict:
        return await self.toolchain.doctor()

    async def shutdown(self) -> None:
        await self.connections.close_all()
