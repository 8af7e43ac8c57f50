"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol


class Transport(Protocol):
    @property
    def is_open(self) -> bool:
        """Whether the device handle is open."""

    def open(self) -> object:
        """Open the device. Raises ConnectionError on failure."""

    def write(self, data: bytes) -> int:
        """Send one 64-byte report; returns bytes written, <= 0 on failure."""

    def read(self, timeout_ms: int) -> bytes:
        """Receive one report; fewer than 64 bytes means timeout or failure."""

    def close(self) -> None:
        """Release the device handle."""


class DeviceScanner(Protocol):
    def scan_once(self, vendor_id: int, product_id: int, timeout_ms: int) -> bool:
        """Return True if a matching device is attached."""
