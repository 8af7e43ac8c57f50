"""Fixed-size frame encoder and decoder for 64-byte USB HID reports.

Frame layout::

    +---------+--------------+--------+--------------------------------+
    | Command |   Address    |  Size  |            Payload             |
    | 1 byte  | 4 bytes (LE) | 1 byte |  58 bytes, zero-padded past    |
    |         |              |        |  ``size``                      |
    +---------+--------------+--------+--------------------------------+

- Command: single-byte bootloader opcode (see :class:`~.commands.Command`)
- Address: little-endian 32-bit target address
- Size: number of meaningful payload bytes (0-58)
- Payload: data bytes, zero-filled beyond ``size``
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from ..errors import MalformedResponseError

HID_REPORT_SIZE = 64
HEADER_FORMAT = "<BIB"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 1(cmd) + 4(address) + 1(size)
MAX_PAYLOAD_PER_FRAME = HID_REPORT_SIZE - HEADER_SIZE
MAX_ADDRESS = 0xFFFFFFFF


@dataclass
class Frame:
    """A decoded protocol frame."""

    command: int
    address: int = 0
    size: int = 0
    payload: bytes = bytes(MAX_PAYLOAD_PER_FRAME)

    @property
    def data(self) -> bytes:
        """The meaningful part of the payload."""
        return self.payload[: self.size]

    def __repr__(self) -> str:
        return (
            f"Frame(command=0x{self.command:02X}, "
            f"address=0x{self.address:08X}, size={self.size}, "
            f"data={self.data.hex(' ') if self.size else '(empty)'})"
        )


def build_frame(
    command: int,
    address: int = 0,
    size: int | None = None,
    payload: bytes = b"",
) -> bytes:
    """Build a 64-byte HID report containing a single protocol frame.

    Args:
        command: Single-byte bootloader opcode.
        address: Target address, written little-endian.
        size: Number of meaningful payload bytes (0-58). Defaults to
            ``len(payload)``.
        payload: Payload bytes. Truncated to ``size`` or zero-padded
            to the full 58-byte payload field.

    Returns:
        A 64-byte ``bytes`` object ready to send via USB HID.

    Raises:
        ValueError: If ``size`` or ``address`` is out of range.
    """
    if size is None:
        size = len(payload)
    if not 0 <= size <= MAX_PAYLOAD_PER_FRAME:
        raise ValueError(
            f"Frame size must be 0-{MAX_PAYLOAD_PER_FRAME}, got {size}"
        )
    if not 0 <= address <= MAX_ADDRESS:
        raise ValueError(f"Address must fit in 32 bits, got {address:#x}")
    if not 0 <= command <= 0xFF:
        raise ValueError(f"Command must be a single byte, got {command:#x}")

    body = bytes(payload[:size]).ljust(MAX_PAYLOAD_PER_FRAME, b"\x00")
    return struct.pack(HEADER_FORMAT, command, address, size) + body


def parse_frame(data: bytes) -> Frame:
    """Parse a 64-byte HID report into a Frame.

    Args:
        data: A 64-byte USB HID report.

    Returns:
        The decoded ``Frame``. Its payload is always 58 bytes long.

    Raises:
        MalformedResponseError: If the report is not exactly 64 bytes
            or the size field exceeds the payload capacity.
    """
    if len(data) != HID_REPORT_SIZE:
        raise MalformedResponseError(
            f"Frame must be {HID_REPORT_SIZE} bytes, got {len(data)}"
        )

    command, address, size = struct.unpack_from(HEADER_FORMAT, data)
    if size > MAX_PAYLOAD_PER_FRAME:
        raise MalformedResponseError(
            f"Frame size field {size} exceeds {MAX_PAYLOAD_PER_FRAME}"
        )

    payload = bytes(data[HEADER_SIZE:])
    return Frame(command=command, address=address, size=size, payload=payload)
