"""Configuration loading for eblocks-companion."""

from __future__ import annotations

import sys
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path

try:
    import tomllib
except ImportError:
    try:
        import tomli as tomllib  # type: ignore[no-redef]
    except ImportError:
        tomllib = None  # type: ignore[assignment]

CONFIG_FILENAME = "companion.toml"

DEFAULT_BAUD_RATE = 115200
BUFFER_SIZE = 1000


def default_settle_delay(platform: str | None = None) -> float:
    """Seconds to wait after closing a serial handle before the port is reused.

    Windows keeps the COM device node claimed for a while after CloseHandle
    returns; reopening or flashing inside that window fails intermittently.
    Other platforms release the node on close, so they only get a short grace
    period for boards that reset when DTR drops.
    """
    platform = platform or sys.platform
    if platform.startswith("win"):
        return 2.0
    return 0.5


@dataclass
class SerialConfig:
    baud_rate: int = DEFAULT_BAUD_RATE
    settle_delay: float = field(default_factory=default_settle_delay)
    buffer_size: int = BUFFER_SIZE
    read_timeout: float = 0.1


@dataclass
class ToolchainConfig:
    path: str | None = None
    resources_dir: str | None = None
    work_dir: str = field(default_factory=lambda: str(Path(tempfile.gettempdir()) / "eblocks-companion"))
    board_list_timeout: float = 10
    index_timeout: float = 60
    install_timeout: float = 120
    compile_timeout: float = 120
    upload_timeout: float = 60


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000


@dataclass
class CompanionConfig:
    serial: SerialConfig = field(default_factory=SerialConfig)
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def to_dict(self) -> dict:
        return asdict(self)


def _section(cls, data: dict):
    """Build a config dataclass from a TOML table, ignoring unknown keys."""
    known = cls.__dataclass_fields__
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(project_dir: Path | str | None = None) -> CompanionConfig:
    """Parse companion.toml and return a typed CompanionConfig.

    A missing file is not an error: every key has a default.
    """
    project_dir = Path(project_dir) if project_dir is not None else Path.cwd()
    toml_path = project_dir / CONFIG_FILENAME
    if not toml_path.exists():
        return CompanionConfig()

    if tomllib is None:
        raise ImportError("No TOML parser available (need Python 3.11+ or tomli)")

    with open(toml_path, "rb") as f:
        data = tomllib.load(f)

    return CompanionConfig(
        serial=_section(SerialConfig, data.get("serial", {})),
        toolchain=_section(ToolchainConfig, data.get("toolchain", {})),
        server=_section(ServerConfig, data.get("server", {})),
    )


def list_config(config: CompanionConfig) -> dict:
    """Return a flat dotted-key dict of all effective config values."""
    result = {}
    for section, values in config.to_dict().items():
        for k, v in values.items():
            result[f"{section}.{k}"] = v
    return result
