"""Error kinds, exceptions, and the outcome object returned by the controller.

Internal layers raise; the :class:`~.controller.Bootloader` converts every
failure into an :class:`Outcome` tagged with an :class:`ErrorKind` so callers
can choose between retrying and aborting.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Failure categories reported by bootloader operations."""

    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    TRANSPORT_IO = "transport_io"
    PROTOCOL_TIMEOUT = "protocol_timeout"
    MALFORMED_RESPONSE = "malformed_response"
    INVALID_ADDRESS = "invalid_address"
    FILE_IO = "file_io"
    IMAGE_INVALID = "image_invalid"


class BootloaderError(Exception):
    """Base error for the bootloader host."""

    kind: ErrorKind = ErrorKind.TRANSPORT_IO


class MalformedResponseError(BootloaderError, ValueError):
    """Raised when a device report has the wrong length or contents."""

    kind = ErrorKind.MALFORMED_RESPONSE


class ImageInvalidError(BootloaderError, ValueError):
    """Raised when a firmware image fails validation."""

    kind = ErrorKind.IMAGE_INVALID


@dataclass
class Outcome:
    """Result of a single bootloader operation.

    Attributes:
        ok: Whether the operation completed successfully.
        operation: Name of the operation (e.g. ``"erase"``).
        error: Failure category, ``None`` on success.
        message: Human-readable description of the result.
        value: Operation-specific payload (query result, read buffer, ...).
        bytes_len: Number of bytes written or read, where meaningful.
    """

    ok: bool
    operation: str
    error: ErrorKind | None = None
    message: str = ""
    value: Any = None
    bytes_len: int = 0

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(
        cls,
        operation: str,
        message: str = "",
        value: Any = None,
        bytes_len: int = 0,
    ) -> Outcome:
        """Create a successful outcome."""
        return cls(
            ok=True,
            operation=operation,
            message=message,
            value=value,
            bytes_len=bytes_len,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: ErrorKind,
        message: str,
        value: Any = None,
        bytes_len: int = 0,
    ) -> Outcome:
        """Create a failed outcome."""
        return cls(
            ok=False,
            operation=operation,
            error=error,
            message=message,
            value=value,
            bytes_len=bytes_len,
        )

    def to_summary(self) -> str:
        status = "SUCCESS" if self.ok else f"FAILED ({self.error.value})"
        line = f"[{status}] {self.operation}"
        if self.message:
            line += f": {self.message}"
        return line

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary (``value`` is omitted)."""
        result: dict[str, Any] = {
            "ok": self.ok,
            "operation": self.operation,
            "message": self.message,
        }
        if self.error is not None:
            result["error"] = self.error.value
        if self.bytes_len:
            result["bytes_len"] = self.bytes_len
        return result
