"""Address-indexed flash buffer used while reading or writing the device."""

from __future__ import annotations

from dataclasses import dataclass, field

ERASED_BYTE = 0xFF


@dataclass
class FlashImage:
    """A byte buffer indexed by absolute device address.

    Unwritten locations hold the erased-state value 0xFF.
    """

    data: bytearray = field(default_factory=bytearray)

    @classmethod
    def blank(cls, size: int) -> FlashImage:
        """Create an image of ``size`` bytes filled with 0xFF."""
        return cls(data=bytearray([ERASED_BYTE]) * size)

    def __len__(self) -> int:
        return len(self.data)

    def store(self, address: int, chunk: bytes) -> None:
        """Copy ``chunk`` into the image at ``address``.

        Bytes past the end of the image are dropped.
        """
        end = min(address + len(chunk), len(self.data))
        if address >= end:
            return
        self.data[address:end] = chunk[: end - address]

    def window(self, start: int, length: int) -> bytes:
        return bytes(self.data[start : start + length])

    def is_blank(self, start: int = 0, length: int | None = None) -> bool:
        if length is None:
            length = len(self.data) - start
        return all(b == ERASED_BYTE for b in self.data[start : start + length])

    def to_bytes(self) -> bytes:
        return bytes(self.data)
