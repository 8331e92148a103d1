"""Serial port enumeration and opening."""

from __future__ import annotations

import errno
import logging
from dataclasses import asdict, dataclass

import serial
from serial.tools.list_ports import comports

from eblocks_companion.boards import UsbDescriptor, family_for_fqbn, identify_family
from eblocks_companion.errors import PortUnavailable

logger = logging.getLogger(__name__)


@dataclass
class ToolchainPort:
    """One row of the toolchain's own ``board list`` output."""
    address: str
    label: str = ""
    protocol: str = ""
    board_name: str = ""
    fqbn: str | None = None
    vendor_id: str | None = None
    product_id: str | None = None
    serial_number: str | None = None

    @property
    def is_usb(self) -> bool:
        return bool(self.vendor_id and self.product_id)

    @property
    def search_text(self) -> str:
        return " ".join(p for p in (self.address, self.label, self.board_name, self.fqbn or "") if p)


@dataclass
class BoardDescriptor:
    port: str
    display_name: str
    detected_family: str | None = None
    usb_vendor_id: str | None = None
    usb_product_id: str | None = None
    serial_number: str | None = None
    friendly_name: str | None = None
    manufacturer: str | None = None
    product: str | None = None
    fqbn: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _usb_descriptor(info) -> UsbDescriptor:
    return UsbDescriptor(
        vendor_id=info.vid,
        product_id=info.pid,
        serial_number=info.serial_number,
        friendly_name=info.description,
        product=info.product,
        manufacturer=info.manufacturer,
        pnp_id=info.hwid,
    )


def describe_port(device: str, usb: UsbDescriptor, toolchain_port: ToolchainPort | None = None) -> BoardDescriptor:
    """Combine OS metadata and the toolchain's guess into one descriptor.

    The USB heuristics win; the toolchain's FQBN is only a fallback because
    it is frequently blank or wrong for these boards.
    """
    family = identify_family(usb)
    fqbn = toolchain_port.fqbn if toolchain_port else None
    if family is None:
        family = family_for_fqbn(fqbn)
    if family is not None and family.fqbn:
        fqbn = family.fqbn

    if toolchain_port and toolchain_port.board_name:
        display_name = toolchain_port.board_name
    elif family is not None:
        display_name = family.name
    else:
        display_name = usb.friendly_name or usb.product or "Unknown"

    return BoardDescriptor(
        port=device,
        display_name=display_name,
        detected_family=family.slug if family else None,
        usb_vendor_id=usb.vendor_id,
        usb_product_id=usb.product_id,
        serial_number=usb.serial_number,
        friendly_name=usb.friendly_name,
        manufacturer=usb.manufacturer,
        product=usb.product,
        fqbn=fqbn,
    )


def list_serial_ports(toolchain_ports: list[ToolchainPort] | None = None) -> list[BoardDescriptor]:
    """List serial ports with board descriptors.

    Recomputed on every call: boards come and go at any time. Ports the
    toolchain sees but the OS enumeration misses are included too.
    """
    by_address = {tp.address: tp for tp in (toolchain_ports or [])}
    descriptors = []
    seen = set()
    for info in comports():
        descriptors.append(describe_port(info.device, _usb_descriptor(info), by_address.get(info.device)))
        seen.add(info.device)
    for address, tp in by_address.items():
        if address in seen:
            continue
        usb = UsbDescriptor(
            vendor_id=tp.vendor_id,
            product_id=tp.product_id,
            serial_number=tp.serial_number,
            friendly_name=tp.label,
        )
        descriptors.append(describe_port(address, usb, tp))
    return descriptors


def open_serial(port: str, baud_rate: int, timeout: float = 0.1) -> serial.Serial:
    """Open a serial port, mapping OS refusals to PortUnavailable.

    Exit codes on the raised error:
        2: port not found / device disconnected
        3: port busy
        4: permission denied
    """
    try:
        return serial.Serial(port, baud_rate, timeout=timeout)
    except PermissionError as e:
        raise PortUnavailable(port, f"permission denied ({e})", exit_code=4) from e
    except (serial.SerialException, OSError) as e:
        msg = str(e).lower()
        code = getattr(e, "errno", None)
        # Windows reports a COM port held elsewhere as "Access is denied".
        if code == errno.EBUSY or "busy" in msg or "access is denied" in msg:
            raise PortUnavailable(port, f"port is in use by another program ({e})", exit_code=3) from e
        if code == errno.EACCES or "permission denied" in msg:
            raise PortUnavailable(port, f"permission denied ({e})", exit_code=4) from e
        raise PortUnavailable(port, f"could not open port ({e})", exit_code=2) from e
