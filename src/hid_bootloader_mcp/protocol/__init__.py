"""Protocol layer: frame codec, command builders, and response parsing."""

from .framing import Frame, build_frame, parse_frame
from .commands import Command, build_command
from .parser import (
    ExtendedQueryResponse,
    MemoryRegion,
    MemoryRegionType,
    QueryResponse,
    parse_extended_query_response,
    parse_query_response,
)
