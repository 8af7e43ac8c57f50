"""File format handlers for Intel HEX firmware images and raw .bin dumps.

.hex: Intel HEX records, flattened into an address-indexed binary
.bin: Raw flash dump, one byte per device address starting at 0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ImageInvalidError
from .flash_image import ERASED_BYTE

logger = logging.getLogger(__name__)

REC_DATA = 0x00
REC_EOF = 0x01
REC_EXT_SEGMENT = 0x02
REC_START_SEGMENT = 0x03
REC_EXT_LINEAR = 0x04
REC_START_LINEAR = 0x05

MAX_HEX_IMAGE_SIZE = 16 * 1024 * 1024


@dataclass
class HexImage:
    """Flattened contents of an Intel HEX file.

    Attributes:
        binary: Address-indexed image; gaps hold 0xFF.
        valid: False if any record failed to parse or the EOF record
            is missing.
        binary_size: Highest written address + 1.
        errors: One message per rejected record.
    """

    binary: bytes = b""
    valid: bool = False
    binary_size: int = 0
    errors: list[str] = field(default_factory=list)

    def require_valid(self, source: str) -> None:
        """Raise :class:`ImageInvalidError` if any record was rejected."""
        if not self.valid:
            raise ImageInvalidError(f"{source} contains errors: " + "; ".join(self.errors[:3]))


def _parse_record(line: str) -> tuple[int, int, int, bytes]:
    """Decode one ``:LLAAAATT<data>CC`` record.

    Returns:
        (record_type, offset, byte_count, data)

    Raises:
        ValueError: On bad syntax, length or checksum.
    """
    if not line.startswith(":"):
        raise ValueError("missing ':' start code")
    raw = bytes.fromhex(line[1:])
    if len(raw) < 5:
        raise ValueError("record too short")

    count = raw[0]
    if len(raw) != count + 5:
        raise ValueError(f"byte count {count} does not match record length")
    if sum(raw) & 0xFF:
        raise ValueError("checksum mismatch")

    offset = int.from_bytes(raw[1:3], "big")
    rec_type = raw[3]
    return rec_type, offset, count, raw[4 : 4 + count]


def load_hex(text: str) -> HexImage:
    """Parse Intel HEX text into a flat binary image.

    Supports data, EOF, extended segment and extended linear address
    records. Start address records are accepted and ignored.
    """
    image = bytearray()
    errors: list[str] = []
    base = 0
    end_of_file = False
    highest = 0

    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        if end_of_file:
            errors.append(f"line {lineno}: data after EOF record")
            break
        try:
            rec_type, offset, count, data = _parse_record(line)
        except ValueError as e:
            errors.append(f"line {lineno}: {e}")
            continue

        if rec_type == REC_DATA:
            address = base + offset
            end = address + count
            if end > MAX_HEX_IMAGE_SIZE:
                errors.append(f"line {lineno}: address 0x{address:X} out of range")
                continue
            if end > len(image):
                image.extend([ERASED_BYTE] * (end - len(image)))
            image[address:end] = data
            highest = max(highest, end)
        elif rec_type == REC_EOF:
            end_of_file = True
        elif rec_type in (REC_EXT_SEGMENT, REC_EXT_LINEAR):
            if count != 2:
                errors.append(
                    f"line {lineno}: address record needs 2 data bytes, got {count}"
                )
                continue
            shift = 4 if rec_type == REC_EXT_SEGMENT else 16
            base = int.from_bytes(data, "big") << shift
        elif rec_type in (REC_START_SEGMENT, REC_START_LINEAR):
            pass
        else:
            errors.append(f"line {lineno}: unknown record type 0x{rec_type:02X}")

    if not end_of_file:
        errors.append("missing EOF record")

    for message in errors:
        logger.warning("HEX: %s", message)

    return HexImage(
        binary=bytes(image[:highest]),
        valid=not errors,
        binary_size=highest,
        errors=errors,
    )


def load_hex_file(path: str | Path) -> HexImage:
    """Load and parse an Intel HEX file.

    Raises:
        OSError: If the file cannot be read.
    """
    path = Path(path)
    text = path.read_text(encoding="ascii", errors="replace")
    return load_hex(text)


def export_bin(data: bytes, path: str | Path) -> Path:
    """Write a raw flash dump to ``path``.

    Returns:
        The path written to.
    """
    path = Path(path)
    path.write_bytes(bytes(data))
    return path


def import_bin(path: str | Path) -> bytes:
    """Read a raw flash dump."""
    return Path(path).read_bytes()
