"""Response parsing for Query Device and Query Extended Info replies.

Query Device response (64 bytes)::

    command(1) packet_data_field_size(1) bytes_per_address(1)
    6 x { type(1) address(4, LE) length(4, LE) }
    version_flag(1) pad(6)

Query Extended Info response (64 bytes)::

    command(1) bootloader_version(2) application_version(2)
    signature_address(4) signature_value(2) erase_page_size(4)
    7 x { low_mask(1) high_mask(1) }
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

from ..errors import MalformedResponseError
from .framing import HID_REPORT_SIZE

EXTENDED_QUERY_FLAG = 0xA5
REGION_SLOTS = 6
CONFIG_WORDS = 7

QUERY_HEADER = "<BBB"
REGION_LAYOUT = "<BII"
QUERY_PAD_SIZE = 6
EXTENDED_HEADER = "<BHHIHI"


class MemoryRegionType(IntEnum):
    """Memory region tags reported by Query Device."""

    PROGRAM_MEM = 0x01
    EEDATA = 0x02
    CONFIG = 0x03
    USERID = 0x04
    END = 0xFF


@dataclass
class MemoryRegion:
    """One memory region slot from a Query Device response."""

    type: int
    address: int
    length: int

    @property
    def region_type(self) -> MemoryRegionType | None:
        try:
            return MemoryRegionType(self.type)
        except ValueError:
            return None

    def to_dict(self) -> dict:
        region_type = self.region_type
        return {
            "type": region_type.name if region_type else f"0x{self.type:02X}",
            "address": f"0x{self.address:08X}",
            "length": self.length,
        }


@dataclass
class QueryResponse:
    """Parsed Query Device (0x02) response."""

    command: int
    packet_data_field_size: int
    bytes_per_address: int
    regions: list[MemoryRegion]
    version_flag: int
    pad: bytes = b""

    @property
    def extended_query_supported(self) -> bool:
        """True when the bootloader is V1.01 or newer."""
        return self.version_flag == EXTENDED_QUERY_FLAG

    @property
    def program_mem_start(self) -> int:
        return self.regions[0].address

    @property
    def program_mem_length(self) -> int:
        return self.regions[0].length

    def memory_map(self) -> list[MemoryRegion]:
        """Regions up to (not including) the first END marker."""
        regions = []
        for region in self.regions:
            if region.type == MemoryRegionType.END:
                break
            regions.append(region)
        return regions

    def to_dict(self) -> dict:
        return {
            "packet_data_field_size": self.packet_data_field_size,
            "bytes_per_address": self.bytes_per_address,
            "program_mem_start": f"0x{self.program_mem_start:08X}",
            "program_mem_length": self.program_mem_length,
            "regions": [r.to_dict() for r in self.memory_map()],
            "extended_query_supported": self.extended_query_supported,
        }


@dataclass
class ExtendedQueryResponse:
    """Parsed Query Extended Info (0x0C) response."""

    command: int
    bootloader_version: int
    application_version: int
    signature_address: int
    signature_value: int
    erase_page_size: int
    config_masks: list[tuple[int, int]] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"ExtendedQueryResponse(bootloader={_version(self.bootloader_version)}, "
            f"application={_version(self.application_version)}, "
            f"signature=0x{self.signature_value:04X}@0x{self.signature_address:08X})"
        )

    def to_dict(self) -> dict:
        return {
            "bootloader_version": _version(self.bootloader_version),
            "application_version": _version(self.application_version),
            "signature_address": f"0x{self.signature_address:08X}",
            "signature_value": f"0x{self.signature_value:04X}",
            "erase_page_size": self.erase_page_size,
            "config_masks": [
                {"word": i + 1, "low": f"0x{lo:02X}", "high": f"0x{hi:02X}"}
                for i, (lo, hi) in enumerate(self.config_masks)
            ],
        }


def _version(value: int) -> str:
    return f"V{value >> 8}.{value & 0xFF}"


def _require_report(data: bytes, what: str) -> None:
    if len(data) != HID_REPORT_SIZE:
        raise MalformedResponseError(
            f"{what} response must be {HID_REPORT_SIZE} bytes, got {len(data)}"
        )


def parse_query_response(data: bytes) -> QueryResponse:
    """Parse a Query Device response.

    Raises:
        MalformedResponseError: If ``data`` is not exactly 64 bytes.
    """
    _require_report(data, "Query")

    command, field_size, bytes_per_address = struct.unpack_from(QUERY_HEADER, data)
    offset = struct.calcsize(QUERY_HEADER)

    region_len = struct.calcsize(REGION_LAYOUT)
    regions = []
    for _ in range(REGION_SLOTS):
        tag, address, length = struct.unpack_from(REGION_LAYOUT, data, offset)
        regions.append(MemoryRegion(type=tag, address=address, length=length))
        offset += region_len

    version_flag = data[offset]
    offset += 1
    pad = bytes(data[offset : offset + QUERY_PAD_SIZE])

    return QueryResponse(
        command=command,
        packet_data_field_size=field_size,
        bytes_per_address=bytes_per_address,
        regions=regions,
        version_flag=version_flag,
        pad=pad,
    )


def parse_extended_query_response(data: bytes) -> ExtendedQueryResponse:
    """Parse a Query Extended Info response.

    Only meaningful when the preceding Query Device response reported
    extended query support.

    Raises:
        MalformedResponseError: If ``data`` is not exactly 64 bytes.
    """
    _require_report(data, "Extended query")

    (
        command,
        bootloader_version,
        application_version,
        signature_address,
        signature_value,
        erase_page_size,
    ) = struct.unpack_from(EXTENDED_HEADER, data)
    offset = struct.calcsize(EXTENDED_HEADER)

    masks = []
    for i in range(CONFIG_WORDS):
        masks.append((data[offset + 2 * i], data[offset + 2 * i + 1]))

    return ExtendedQueryResponse(
        command=command,
        bootloader_version=bootloader_version,
        application_version=application_version,
        signature_address=signature_address,
        signature_value=signature_value,
        erase_page_size=erase_page_size,
        config_masks=masks,
    )
