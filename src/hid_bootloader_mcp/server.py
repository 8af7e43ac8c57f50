"""MCP server entry point for the HID bootloader host.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .controller import Bootloader
from .errors import ErrorKind, Outcome
from .transport.usb_connection import PRODUCT_ID, VENDOR_ID

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "hid-bootloader",
    instructions="MCP server for flashing microcontrollers through a USB HID bootloader",
)

# Global bootloader state
_bootloader: Bootloader | None = None


def _get_bootloader() -> Bootloader:
    """Get the bootloader controller, creating it on first use."""
    global _bootloader
    if _bootloader is None:
        _bootloader = Bootloader()
    return _bootloader


def _result(outcome: Outcome, **extra: Any) -> dict[str, Any]:
    result = outcome.to_dict()
    result.update(extra)
    return result


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def connect(vendor_id: int = VENDOR_ID, product_id: int = PRODUCT_ID) -> dict[str, Any]:
    """Connect to a device running the HID bootloader.

    Looks for the device by USB vendor/product ID (default 0x04D8:0x003C),
    then sends Query Device to read its memory layout. Bootloaders V1.01
    and newer also report version and signature information.

    Args:
        vendor_id: USB vendor ID.
        product_id: USB product ID.
    """
    bl = _get_bootloader()
    outcome = bl.connect(vendor_id, product_id)
    if not outcome.ok:
        return _result(outcome)
    return _result(outcome, device=bl.session.to_dict())


@mcp.tool()
def disconnect() -> dict[str, Any]:
    """Close the USB connection to the bootloader."""
    if _bootloader is None:
        return {"ok": True, "operation": "disconnect", "message": "Not connected"}
    return _result(_bootloader.disconnect())


@mcp.tool()
def get_device_info() -> dict[str, Any]:
    """Re-read the device memory map and bootloader version."""
    bl = _get_bootloader()
    outcome = bl.query()
    if not outcome.ok:
        return _result(outcome)
    if bl.session.extended_query_supported:
        extended = bl.query_extended()
        if not extended.ok:
            logger.warning("Extended query failed: %s", extended.message)
    return _result(outcome, device=bl.session.to_dict())


# ─── FLASH TOOLS ──────────────────────────────────────────────────────

@mcp.tool()
def erase_device() -> dict[str, Any]:
    """Erase the program memory. Can take up to 40 seconds."""
    return _result(_get_bootloader().erase())


@mcp.tool()
def program_hex(path: str) -> dict[str, Any]:
    """Write an Intel HEX firmware image to program memory.

    Erase the device first. The image is signed after writing when the
    bootloader supports it.

    Args:
        path: Path to the .hex file.
    """
    if not Path(path).exists():
        return {
            "ok": False,
            "operation": "program_hex",
            "error": ErrorKind.FILE_IO.value,
            "message": f"File not found: {path}",
        }
    return _result(_get_bootloader().program_hex_file(path))


@mcp.tool()
def program_bin(path: str) -> dict[str, Any]:
    """Write a raw binary dump (as produced by read_flash) to program memory.

    Args:
        path: Path to the .bin file. Byte N is written to address N.
    """
    if not Path(path).exists():
        return {
            "ok": False,
            "operation": "program_bin",
            "error": ErrorKind.FILE_IO.value,
            "message": f"File not found: {path}",
        }
    return _result(_get_bootloader().program_bin_file(path))


@mcp.tool()
def read_flash(output_path: str | None = None) -> dict[str, Any]:
    """Read back the whole program memory.

    Args:
        output_path: Optional .bin file to export the content to.
    """
    bl = _get_bootloader()
    outcome = bl.read_flash()
    if not outcome.ok:
        return _result(outcome)

    query = bl.session.query
    image = outcome.value
    extra: dict[str, Any] = {
        "program_mem_start": f"0x{query.program_mem_start:08X}",
        "blank": image.is_blank(query.program_mem_start, query.program_mem_length),
    }
    if output_path:
        exported = bl.export_last_read(output_path)
        if not exported.ok:
            return _result(exported)
        extra["path"] = str(exported.value)
    return _result(outcome, **extra)


@mcp.tool()
def read_region(address: int, count: int = 58) -> dict[str, Any]:
    """Read a single block of memory (at most 58 bytes per request).

    Args:
        address: Start address.
        count: Number of bytes to return.
    """
    outcome = _get_bootloader().read_region(address, count)
    if outcome.value is None:
        return _result(outcome)
    return _result(outcome, address=f"0x{address:08X}", data=outcome.value.hex(" "))


@mcp.tool()
def export_read(output_path: str) -> dict[str, Any]:
    """Export the content of the last read_flash to a .bin file.

    Args:
        output_path: Output file path.
    """
    outcome = _get_bootloader().export_last_read(output_path)
    if not outcome.ok:
        return _result(outcome)
    return _result(outcome, path=str(outcome.value))


@mcp.tool()
def reset_device() -> dict[str, Any]:
    """Reset the device so it leaves the bootloader and starts the application."""
    return _result(_get_bootloader().reset_device())


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("bootloader://device/status")
def resource_device_status() -> str:
    """Connection state of the bootloader."""
    if _bootloader is None:
        return json.dumps({"connected": False, "state": "disconnected"})
    return json.dumps({
        "connected": _bootloader.connected,
        "state": _bootloader.state.value,
    })


@mcp.resource("bootloader://device/memory-map")
def resource_memory_map() -> str:
    """Memory regions reported by the last Query Device."""
    if _bootloader is None or _bootloader.session.query is None:
        return json.dumps({"regions": []})
    return json.dumps(_bootloader.session.query.to_dict())


@mcp.resource("bootloader://device/extended-info")
def resource_extended_info() -> str:
    """Bootloader/application versions and signature, if reported."""
    if _bootloader is None or _bootloader.session.extended_query is None:
        return json.dumps({"extended_query": None})
    return json.dumps({"extended_query": _bootloader.session.extended_query.to_dict()})


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def flash_firmware(path: str) -> str:
    """Guide the AI through a complete firmware update.

    Args:
        path: Firmware image (.hex or .bin).
    """
    return f"""Update the device firmware with {path}.
Steps:
- connect to the bootloader and check the reported program memory range
- erase_device and wait for it to finish
- program_hex (or program_bin for a raw dump) with {path}
- read_flash to verify the program memory is no longer blank
- reset_device to start the new application

If programming fails the device is erased again automatically; do not
reset a device whose programming failed."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
