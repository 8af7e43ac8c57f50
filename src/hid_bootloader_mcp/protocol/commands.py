"""Bootloader opcodes and command builders.

Each command is identified by a single-byte opcode used for both
host-to-device requests and device-to-host responses. The numeric values
are fixed by the device firmware.
"""

from __future__ import annotations

from enum import IntEnum

from .framing import build_frame, MAX_PAYLOAD_PER_FRAME


class Command(IntEnum):
    """Bootloader opcodes."""

    QUERY_DEVICE = 0x02
    UNLOCK_CONFIG = 0x03
    ERASE_DEVICE = 0x04
    PROGRAM_DEVICE = 0x05
    PROGRAM_COMPLETE = 0x06
    GET_DATA = 0x07
    RESET_DEVICE = 0x08
    SIGN_FLASH = 0x09
    QUERY_EXTENDED_INFO = 0x0C


def build_command(
    command: Command,
    address: int = 0,
    payload: bytes = b"",
    size: int | None = None,
) -> bytes:
    """Build a single 64-byte HID report for a command."""
    return build_frame(command.value, address, size, payload)


def build_query_device() -> bytes:
    """Build a Query Device command (0x02) to read the memory layout."""
    return build_command(Command.QUERY_DEVICE)


def build_query_extended_info() -> bytes:
    """Build a Query Extended Info command (0x0C)."""
    return build_command(Command.QUERY_EXTENDED_INFO)


def build_erase_device() -> bytes:
    """Build an Erase Device command (0x04).

    The firmware decides which pages are erased.
    """
    return build_command(Command.ERASE_DEVICE)


def build_program_block(address: int, data: bytes, last: bool = False) -> bytes:
    """Build a program command for one block of flash data.

    Args:
        address: Even start address of the block.
        data: Up to 58 bytes to program.
        last: Send ``PROGRAM_COMPLETE`` instead of ``PROGRAM_DEVICE`` so the
            firmware flushes its buffer.
    """
    if address & 0x1:
        raise ValueError(f"Program address must be even, got {address:#x}")
    if len(data) > MAX_PAYLOAD_PER_FRAME:
        raise ValueError(
            f"Program block must be at most {MAX_PAYLOAD_PER_FRAME} bytes, "
            f"got {len(data)}"
        )
    command = Command.PROGRAM_COMPLETE if last else Command.PROGRAM_DEVICE
    return build_command(command, address, data)


def build_get_data(address: int, size: int) -> bytes:
    """Build a Get Data command (0x07) requesting ``size`` bytes at ``address``."""
    return build_command(Command.GET_DATA, address, size=size)


def build_reset_device() -> bytes:
    """Build a Reset Device command (0x08)."""
    return build_command(Command.RESET_DEVICE)


def build_sign_flash() -> bytes:
    """Build a Sign Flash command (0x09).

    Tells the firmware to write its signature word once the image has
    been written completely.
    """
    return build_command(Command.SIGN_FLASH)
