"""Board families and USB-descriptor based board identification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Family:
    """A class of board that shares one toolchain profile."""
    slug: str
    name: str
    fqbn: str
    core: str = ""
    core_url: str = ""


@dataclass
class UsbDescriptor:
    """Raw USB metadata for a serial port, as reported by the OS."""
    vendor_id: str | None = None
    product_id: str | None = None
    serial_number: str | None = None
    friendly_name: str | None = None
    product: str | None = None
    manufacturer: str | None = None
    pnp_id: str | None = None

    def __post_init__(self) -> None:
        self.vendor_id = normalize_usb_id(self.vendor_id)
        self.product_id = normalize_usb_id(self.product_id)

    @property
    def text(self) -> str:
        """Lower-cased concatenation of every free-text field."""
        parts = (self.friendly_name, self.product, self.manufacturer, self.pnp_id)
        return " ".join(p for p in parts if p).lower()


FAMILIES: dict[str, Family] = {}


def _register(family: Family) -> Family:
    FAMILIES[family.slug] = family
    return family


ARDUINO_MEGA = _register(Family(
    slug="arduino-mega",
    name="Arduino Mega 2560",
    fqbn="arduino:avr:mega",
    core="arduino:avr",
))
ARDUINO_UNO = _register(Family(
    slug="arduino-uno",
    name="Arduino Uno",
    fqbn="arduino:avr:uno",
    core="arduino:avr",
))
ARDUINO_NANO = _register(Family(
    slug="arduino-nano",
    name="Arduino Nano",
    fqbn="arduino:avr:nano",
    core="arduino:avr",
))
ESP32 = _register(Family(
    slug="esp32",
    name="ESP32",
    fqbn="esp32:esp32:esp32",
    core="esp32:esp32",
    core_url="https://raw.githubusercontent.com/espressif/arduino-esp32/gh-pages/package_esp32_index.json",
))
# PIC boards are recognised for display but arduino-cli has no profile for them.
PIC = _register(Family(
    slug="pic",
    name="PIC",
    fqbn="",
))


def get_family(slug: str) -> Family | None:
    """Get a family by its slug."""
    return FAMILIES.get(slug)


def list_families() -> list[Family]:
    """Return all known families."""
    return list(FAMILIES.values())


def _base_fqbn(fqbn: str) -> str:
    """Return the first three colon-separated segments of an FQBN (vendor:arch:board)."""
    return ":".join(fqbn.split(":")[:3])


def core_for_fqbn(fqbn: str) -> str:
    """Return the platform core (vendor:arch) an FQBN belongs to."""
    return ":".join(fqbn.split(":")[:2])


def family_for_fqbn(fqbn: str | None) -> Family | None:
    """Find the family whose FQBN matches on the base vendor:arch:board portion."""
    if not fqbn:
        return None
    target = _base_fqbn(fqbn)
    for family in FAMILIES.values():
        if family.fqbn and _base_fqbn(family.fqbn) == target:
            return family
    return None


def resolve_fqbn(target: str) -> str:
    """Turn a family slug or a raw FQBN into the FQBN to compile for."""
    family = FAMILIES.get(target)
    if family is not None:
        if not family.fqbn:
            raise ValueError(f"{family.name} boards cannot be programmed with arduino-cli")
        return family.fqbn
    if target.count(":") >= 2:
        return target
    raise ValueError(
        f"Unknown board: {target}. Use a family ({', '.join(FAMILIES)}) or a full FQBN."
    )


def normalize_usb_id(value) -> str | None:
    """Normalise a USB vendor/product id to four upper-case hex digits.

    Accepts ints (pyserial), "0x2341" (arduino-cli) and bare "2341" (node
    serialport). Anything unparsable is treated as absent.
    """
    if value is None or value == "":
        return None
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        try:
            number = int(text, 16)
        except ValueError:
            return None
    if not 0 <= number <= 0xFFFF:
        return None
    return f"{number:04X}"


# --- Identification --------------------------------------------------------

VENDOR_VID = "12BF"
VENDOR_SERIAL_PREFIX = "EB"
VENDOR_MARKERS = ("eblocks",)

# Exact VID/PID combinations that identify a board without further evidence.
# Generic USB-serial bridges (CH340, CP2102, FTDI) are deliberately absent:
# their ids are reused across unrelated products.
_USB_ID_TABLE: dict[tuple[str, str], Family] = {
    (VENDOR_VID, "0030"): ARDUINO_MEGA,
    ("2341", "0010"): ARDUINO_MEGA,
    ("2341", "0042"): ARDUINO_MEGA,
    ("2A03", "0042"): ARDUINO_MEGA,
    ("2341", "0001"): ARDUINO_UNO,
    ("2341", "0043"): ARDUINO_UNO,
    ("2A03", "0043"): ARDUINO_UNO,
    ("303A", "1001"): ESP32,
}

# Keywords in priority order. Chip names are unambiguous anywhere; the
# vendor-scoped ones only mean something on a board we know is the vendor's.
_CHIP_KEYWORDS: list[tuple[str, Family]] = [
    ("esp32", ESP32),
]
_VENDOR_KEYWORDS: list[tuple[str, Family]] = [
    ("esp32", ESP32),
    ("mega", ARDUINO_MEGA),
    ("ard", ARDUINO_MEGA),
    ("pic", PIC),
]


def is_vendor_board(descriptor: UsbDescriptor) -> bool:
    """True when the descriptor carries any of the vendor's own markers."""
    if descriptor.vendor_id == VENDOR_VID:
        return True
    serial_number = (descriptor.serial_number or "").upper()
    if serial_number.startswith(VENDOR_SERIAL_PREFIX):
        return True
    text = descriptor.text
    return any(marker in text for marker in VENDOR_MARKERS)


def match_usb_ids(descriptor: UsbDescriptor) -> Family | None:
    if not descriptor.vendor_id or not descriptor.product_id:
        return None
    return _USB_ID_TABLE.get((descriptor.vendor_id, descriptor.product_id))


def match_serial_prefix(descriptor: UsbDescriptor) -> Family | None:
    """The vendor serial prefix is evidence, never a verdict.

    It only widens the keyword search below; the prefix alone cannot tell a
    Mega from an ESP32 carrier.
    """
    serial_number = (descriptor.serial_number or "").upper()
    if serial_number.startswith(VENDOR_SERIAL_PREFIX):
        logger.debug("Vendor serial number %s, falling through to name matching", serial_number)
    return None


def match_keywords(descriptor: UsbDescriptor) -> Family | None:
    text = descriptor.text
    if not text:
        return None
    keywords = _VENDOR_KEYWORDS if is_vendor_board(descriptor) else _CHIP_KEYWORDS
    for keyword, family in keywords:
        if keyword in text:
            return family
    return None


CLASSIFIERS: list[Callable[[UsbDescriptor], Family | None]] = [
    match_usb_ids,
    match_serial_prefix,
    match_keywords,
]


def identify_family(descriptor: UsbDescriptor) -> Family | None:
    """Best-effort board family for a USB descriptor; None means unknown.

    Never raises: a classifier that blows up on odd metadata is logged and
    skipped.
    """
    for classify in CLASSIFIERS:
        try:
            family = classify(descriptor)
        except Exception:
            logger.exception("Board classifier %s failed", classify.__name__)
            continue
        if family is not None:
            logger.debug("Identified %s via %s", family.slug, classify.__name__)
            return family
    return None
