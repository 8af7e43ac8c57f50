"""Connection session state owned by a single Bootloader instance."""

from __future__ import annotations

from dataclasses import dataclass

from ..protocol.parser import ExtendedQueryResponse, QueryResponse
from .flash_image import FlashImage


@dataclass
class Session:
    """What the host currently knows about the attached bootloader."""

    vendor_id: int
    product_id: int
    connected: bool = False
    query: QueryResponse | None = None
    extended_query: ExtendedQueryResponse | None = None
    last_read: FlashImage | None = None

    @property
    def extended_query_supported(self) -> bool:
        return self.query is not None and self.query.extended_query_supported

    def reset(self) -> None:
        """Drop query results before a new connect attempt."""
        self.query = None
        self.extended_query = None

    def invalidate(self) -> None:
        self.connected = False

    def to_dict(self) -> dict:
        result = {
            "connected": self.connected,
            "vendor_id": f"0x{self.vendor_id:04X}",
            "product_id": f"0x{self.product_id:04X}",
        }
        if self.query is not None:
            result["query"] = self.query.to_dict()
        if self.extended_query is not None:
            result["extended_query"] = self.extended_query.to_dict()
        if self.last_read is not None:
            result["last_read_size"] = len(self.last_read)
        return result
