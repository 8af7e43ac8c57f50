"""Protocol engine for the USB HID bootloader.

The :class:`Bootloader` owns the session and the transport handle, and
drives the connect, erase, program, read, sign and reset sequences.

Every public operation returns an :class:`~.errors.Outcome`; transport,
decoding and file errors are caught here and reported with an
:class:`~.errors.ErrorKind` instead of being raised.

Usage::

    bl = Bootloader()
    if bl.connect():
        bl.erase()
        bl.program_hex_file("firmware.hex")
        bl.reset_device()
    bl.disconnect()
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from .errors import BootloaderError, ErrorKind, MalformedResponseError, Outcome
from .models.file_formats import HexImage, export_bin, import_bin, load_hex, load_hex_file
from .models.flash_image import FlashImage
from .models.session import Session
from .protocol.commands import (
    Command,
    build_erase_device,
    build_get_data,
    build_program_block,
    build_query_device,
    build_query_extended_info,
    build_reset_device,
    build_sign_flash,
)
from .protocol.framing import HID_REPORT_SIZE, MAX_ADDRESS, MAX_PAYLOAD_PER_FRAME, parse_frame
from .protocol.parser import (
    ExtendedQueryResponse,
    QueryResponse,
    parse_extended_query_response,
    parse_query_response,
)
from .transport.base import DeviceScanner, Transport
from .transport.usb_connection import PRODUCT_ID, VENDOR_ID, HIDScanner, USBConnection

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

PROGRESS_LOG_STEP = 5.0  # percent
MAX_REGION_READ = 0x1000  # bytes returned by read_region, 0xFF past one block


class State(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERASING = "erasing"
    PROGRAMMING = "programming"
    READING = "reading"


@dataclass
class Timing:
    """Timeouts and delays used by the protocol engine."""

    query_timeout_ms: int = 200
    extended_query_timeout_ms: int = 1000
    read_timeout_ms: int = 200
    scan_timeout_ms: int = 200
    erase_settle_s: float = 0.2
    erase_poll_interval_s: float = 0.1
    erase_deadline_s: float = 40.0
    reset_settle_s: float = 0.2


def erase_deadline_expired(started: float, now: float, deadline_s: float) -> bool:
    """True once ``deadline_s`` seconds have passed since ``started``."""
    return now - started >= deadline_s


class Bootloader:
    """Host-side controller for one HID bootloader device.

    Not thread-safe: calls on one instance must be serialized by the caller.
    """

    def __init__(
        self,
        vendor_id: int = VENDOR_ID,
        product_id: int = PRODUCT_ID,
        *,
        connection_factory: Callable[[int, int], Transport] = USBConnection,
        scanner: DeviceScanner | None = None,
        timing: Timing | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = Session(vendor_id=vendor_id, product_id=product_id)
        self._connection_factory = connection_factory
        self._scanner = scanner if scanner is not None else HIDScanner()
        self._timing = timing if timing is not None else Timing()
        self._clock = clock
        self._sleep = sleep
        self._connection: Transport | None = None
        self._state = State.DISCONNECTED

    @property
    def state(self) -> State:
        return self._state

    @property
    def connected(self) -> bool:
        return self.session.connected

    @property
    def connection(self) -> Transport | None:
        return self._connection

    # ─── Transport helpers ──────────────────────────────────────────────

    def _ready(self) -> bool:
        return (
            self.session.connected
            and self._connection is not None
            and self._connection.is_open
        )

    @staticmethod
    def _unavailable(operation: str) -> Outcome:
        return Outcome.failure(
            operation,
            ErrorKind.TRANSPORT_UNAVAILABLE,
            "Not connected to a bootloader. Use connect first.",
        )

    def _send(self, report: bytes) -> bool:
        """Write one report; True if the full report went out."""
        try:
            written = self._connection.write(report)
        except OSError as e:
            logger.debug("Write failed: %s", e)
            return False
        return written >= HID_REPORT_SIZE

    def _receive(self, timeout_ms: int) -> bytes | None:
        """Read one report; None on timeout or a short read."""
        try:
            data = self._connection.read(timeout_ms)
        except OSError as e:
            logger.debug("Read failed: %s", e)
            return None
        if not data or len(data) < HID_REPORT_SIZE:
            return None
        return bytes(data[:HID_REPORT_SIZE])

    def _close_connection(self) -> None:
        if self._connection is None:
            return
        try:
            if self._connection.is_open:
                self._connection.close()
        except OSError as e:
            logger.warning("Error closing device: %s", e)
        finally:
            self._connection = None

    def _set_disconnected(self) -> None:
        self.session.invalidate()
        self._state = State.DISCONNECTED

    @contextmanager
    def _operation(self, state: State) -> Iterator[None]:
        previous = self._state
        self._state = state
        try:
            yield
        finally:
            self._state = previous if self.session.connected else State.DISCONNECTED

    # ─── Connection ─────────────────────────────────────────────────────

    def connect(
        self,
        vendor_id: int | None = None,
        product_id: int | None = None,
    ) -> Outcome:
        """Scan for the device, open it and read its memory layout.

        Makes exactly one attempt. The outcome value is the
        :class:`QueryResponse` on success.
        """
        op = "connect"
        if vendor_id is not None:
            self.session.vendor_id = vendor_id
        if product_id is not None:
            self.session.product_id = product_id
        vid, pid = self.session.vendor_id, self.session.product_id

        self._state = State.CONNECTING
        if not self._scanner.scan_once(vid, pid, self._timing.scan_timeout_ms):
            self._close_connection()
            self._set_disconnected()
            return Outcome.failure(
                op,
                ErrorKind.TRANSPORT_UNAVAILABLE,
                f"No bootloader found at {vid:04X}:{pid:04X}",
            )

        self._close_connection()
        self.session.invalidate()
        connection = self._connection_factory(vid, pid)
        try:
            connection.open()
        except OSError as e:
            self._set_disconnected()
            return Outcome.failure(op, ErrorKind.TRANSPORT_UNAVAILABLE, str(e))
        if not connection.is_open:
            self._set_disconnected()
            return Outcome.failure(
                op,
                ErrorKind.TRANSPORT_UNAVAILABLE,
                f"Could not open {vid:04X}:{pid:04X}",
            )
        self._connection = connection

        self.session.reset()
        result = self._query_device(op)
        if not result.ok:
            self._close_connection()
            self._set_disconnected()
            return result

        self.session.connected = True
        self._state = State.CONNECTED
        query: QueryResponse = result.value
        logger.info(
            "Connected to %04X:%04X, program memory 0x%08X + %d bytes",
            vid,
            pid,
            query.program_mem_start,
            query.program_mem_length,
        )

        if query.extended_query_supported:
            logger.info("Bootloader version V1.01 or newer")
            extended = self._query_extended(op)
            if not extended.ok:
                logger.warning("Extended query failed: %s", extended.message)
        else:
            logger.info("Bootloader old version V1.0")

        return Outcome.success(op, f"Connected to {vid:04X}:{pid:04X}", value=query)

    def disconnect(self) -> Outcome:
        """Close the device handle, if any, and drop the connection."""
        self._close_connection()
        self._set_disconnected()
        return Outcome.success("disconnect", "Disconnected")

    def query(self) -> Outcome:
        """Re-read the device memory layout."""
        op = "query"
        if not self._ready():
            return self._unavailable(op)
        return self._query_device(op)

    def query_extended(self) -> Outcome:
        """Read version, signature and config-mask information."""
        op = "query_extended"
        if not self._ready():
            return self._unavailable(op)
        return self._query_extended(op)

    def _query_device(self, op: str) -> Outcome:
        if not self._send(build_query_device()):
            return Outcome.failure(op, ErrorKind.TRANSPORT_IO, "Query command could not be sent")
        response = self._receive(self._timing.query_timeout_ms)
        if response is None:
            return Outcome.failure(op, ErrorKind.TRANSPORT_IO, "No response to query")

        query = parse_query_response(response)
        if query.command != Command.QUERY_DEVICE:
            return Outcome.failure(
                op,
                ErrorKind.MALFORMED_RESPONSE,
                f"Unexpected reply 0x{query.command:02X} to query",
            )
        self.session.query = query
        logger.debug("Query: %s", query)
        return Outcome.success(op, value=query)

    def _query_extended(self, op: str) -> Outcome:
        if not self.session.extended_query_supported:
            return Outcome.failure(
                op,
                ErrorKind.MALFORMED_RESPONSE,
                "Bootloader does not support extended query",
            )
        if not self._send(build_query_extended_info()):
            return Outcome.failure(
                op, ErrorKind.TRANSPORT_IO, "Extended query command could not be sent"
            )
        response = self._receive(self._timing.extended_query_timeout_ms)
        if response is None:
            return Outcome.failure(op, ErrorKind.TRANSPORT_IO, "No response to extended query")

        extended: ExtendedQueryResponse = parse_extended_query_response(response)
        if extended.command != Command.QUERY_EXTENDED_INFO:
            return Outcome.failure(
                op,
                ErrorKind.MALFORMED_RESPONSE,
                f"Unexpected reply 0x{extended.command:02X} to extended query",
            )
        self.session.extended_query = extended
        logger.info("%r", extended)
        return Outcome.success(op, value=extended)

    # ─── Erase ──────────────────────────────────────────────────────────

    def erase(self) -> Outcome:
        """Erase program memory and wait for the firmware to answer again.

        The device is unresponsive while erasing; it is polled with Query
        Device until it replies or the erase deadline passes.
        """
        op = "erase"
        if not self._ready():
            return self._unavailable(op)
        with self._operation(State.ERASING):
            return self._erase(op)

    def _erase(self, op: str) -> Outcome:
        timing = self._timing
        started = self._clock()
        logger.info("Start erase")
        if not self._send(build_erase_device()):
            return Outcome.failure(op, ErrorKind.TRANSPORT_IO, "Erase command could not be sent")
        self._sleep(timing.erase_settle_s)

        while True:
            if self._send(build_query_device()):
                response = self._receive(timing.query_timeout_ms)
                if response is not None:
                    query = parse_query_response(response)
                    if query.command == Command.QUERY_DEVICE:
                        self.session.query = query
                    elapsed = self._clock() - started
                    logger.info("Erase completed after %.1f s", elapsed)
                    return Outcome.success(op, f"Erase completed in {elapsed:.1f} s")

            if erase_deadline_expired(started, self._clock(), timing.erase_deadline_s):
                logger.error("Timeout on erase")
                return Outcome.failure(
                    op,
                    ErrorKind.PROTOCOL_TIMEOUT,
                    f"Device did not respond within {timing.erase_deadline_s:.0f} s of erase",
                )
            self._sleep(timing.erase_poll_interval_s)

    # ─── Program ────────────────────────────────────────────────────────

    def program_flash(
        self,
        image: bytes,
        progress: ProgressCallback | None = None,
    ) -> Outcome:
        """Write ``image`` into program memory, block by block.

        ``image[0]`` lands at the program memory start address. The last
        block goes out as ``PROGRAM_COMPLETE``. If a block cannot be
        written the device is erased again and the operation fails. On
        success the flash is signed when the bootloader supports it.

        Args:
            image: Firmware bytes, at most the program memory length.
            progress: Optional callback receiving the percent written.
        """
        op = "program_flash"
        if not self._ready():
            return self._unavailable(op)

        query = self.session.query
        start, length = query.program_mem_start, query.program_mem_length
        if len(image) > length:
            logger.warning(
                "Image is %d bytes but program memory holds %d; truncating",
                len(image),
                length,
            )
            image = image[:length]
        if not image:
            return Outcome.failure(op, ErrorKind.IMAGE_INVALID, "Image is empty")

        with self._operation(State.PROGRAMMING):
            return self._program(op, bytes(image), start, progress)

    def _program(
        self,
        op: str,
        image: bytes,
        start: int,
        progress: ProgressCallback | None,
    ) -> Outcome:
        total = len(image)
        written = 0
        next_log = PROGRESS_LOG_STEP
        logger.info("Start writing flash: %d bytes at 0x%08X", total, start)

        while written < total:
            address = start + written
            if address & 0x1:
                logger.error("Error on write: address 0x%X not even", address)
                return Outcome.failure(
                    op,
                    ErrorKind.INVALID_ADDRESS,
                    f"Block address 0x{address:X} is not even",
                    bytes_len=written,
                )

            chunk = image[written : written + MAX_PAYLOAD_PER_FRAME]
            last = total - written <= MAX_PAYLOAD_PER_FRAME
            logger.debug("Write at address 0x%06X, len %d", address, len(chunk))
            if not self._send(build_program_block(address, chunk, last)):
                logger.error("Error while writing 0x%X; erasing device again", address)
                recovery = self.erase()
                return Outcome.failure(
                    op,
                    ErrorKind.TRANSPORT_IO,
                    f"Write failed at 0x{address:X}; recovery erase "
                    f"{'succeeded' if recovery.ok else 'failed'}",
                    bytes_len=written,
                )

            written += len(chunk)
            percent = 100.0 * written / total
            if progress is not None:
                progress(percent)
            if percent >= next_log:
                logger.info("Progress: %.1f%%", percent)
                next_log = (percent // PROGRESS_LOG_STEP + 1) * PROGRESS_LOG_STEP

        if self.session.extended_query_supported:
            logger.info("Bootloader V1.01 or newer, signing flash")
            if not self._send(build_sign_flash()):
                return Outcome.failure(
                    op,
                    ErrorKind.TRANSPORT_IO,
                    "Image written but the sign command could not be sent",
                    bytes_len=written,
                )
            message = f"Wrote and signed {written} bytes"
        else:
            logger.info("Old bootloader, flash content not signed")
            message = f"Wrote {written} bytes"

        return Outcome.success(op, message, bytes_len=written)

    def program_hex(self, text: str, progress: ProgressCallback | None = None) -> Outcome:
        """Program an image given as Intel HEX text."""
        op = "program_hex"
        if not self._ready():
            return self._unavailable(op)
        return self._program_hex_image(op, load_hex(text), "HEX input", progress)

    def program_hex_file(
        self,
        path: str | Path,
        progress: ProgressCallback | None = None,
    ) -> Outcome:
        """Program an image from an Intel HEX file.

        Nothing is sent if the file contains invalid records.
        """
        op = "program_hex_file"
        if not self._ready():
            return self._unavailable(op)
        try:
            hex_image = load_hex_file(path)
        except OSError as e:
            return Outcome.failure(op, ErrorKind.FILE_IO, f"Cannot read {path}: {e}")
        return self._program_hex_image(op, hex_image, str(path), progress)

    def program_bin_file(
        self,
        path: str | Path,
        progress: ProgressCallback | None = None,
    ) -> Outcome:
        """Program an image from a raw binary indexed by device address.

        This is the format written by :meth:`export_last_read`.
        """
        op = "program_bin_file"
        if not self._ready():
            return self._unavailable(op)
        try:
            binary = import_bin(path)
        except OSError as e:
            return Outcome.failure(op, ErrorKind.FILE_IO, f"Cannot read {path}: {e}")
        logger.info("Start writing flash with binfile %s. Binary size: %d", path, len(binary))
        return self._program_absolute(op, binary, progress)

    def _program_hex_image(
        self,
        op: str,
        hex_image: HexImage,
        source: str,
        progress: ProgressCallback | None,
    ) -> Outcome:
        try:
            hex_image.require_valid(source)
        except BootloaderError as e:
            logger.error("%s contains errors. Abort.", source)
            return Outcome.failure(op, e.kind, str(e))
        logger.info(
            "Start writing flash with %s. Binary size: %d", source, hex_image.binary_size
        )
        return self._program_absolute(op, hex_image.binary, progress)

    def _program_absolute(
        self,
        op: str,
        binary: bytes,
        progress: ProgressCallback | None,
    ) -> Outcome:
        query = self.session.query
        start, length = query.program_mem_start, query.program_mem_length
        window = binary[start : start + length]
        if not window:
            return Outcome.failure(
                op,
                ErrorKind.IMAGE_INVALID,
                f"Image has no data inside program memory "
                f"0x{start:08X}-0x{start + length:08X}",
            )
        return self.program_flash(window, progress)

    # ─── Read ───────────────────────────────────────────────────────────

    def read_flash(self, progress: ProgressCallback | None = None) -> Outcome:
        """Read the whole program memory window.

        The outcome value is a :class:`FlashImage` indexed by device
        address. Blocks the device does not answer stay at 0xFF; only a
        failed request write aborts the read.
        """
        op = "read_flash"
        if not self._ready():
            return self._unavailable(op)
        with self._operation(State.READING):
            return self._read_flash(op, progress)

    def _read_flash(self, op: str, progress: ProgressCallback | None) -> Outcome:
        query = self.session.query
        start = query.program_mem_start
        end = start + query.program_mem_length
        image = FlashImage.blank(end)
        populated = 0

        logger.info("Start reading flash 0x%05X-0x%05X", start, end)
        address = start
        while address < end:
            size = min(MAX_PAYLOAD_PER_FRAME, end - address)
            logger.debug("Reading %d bytes from address 0x%05X", size, address)
            if not self._send(build_get_data(address, size)):
                logger.error("Error while reading 0x%X. USB write error.", address)
                return Outcome.failure(
                    op,
                    ErrorKind.TRANSPORT_IO,
                    f"Read request failed at 0x{address:X}",
                    value=image,
                    bytes_len=populated,
                )
            populated += self._receive_data(image, address, size)
            address += size
            if progress is not None:
                progress(100.0 * (address - start) / (end - start))

        self.session.last_read = image
        logger.info("Read from address 0x%05X to address 0x%05X", start, address)
        return Outcome.success(
            op,
            f"Read {end - start} bytes ({populated} returned by device)",
            value=image,
            bytes_len=end - start,
        )

    def _receive_data(self, image: FlashImage, offset: int, size: int) -> int:
        """Store one GET_DATA reply at ``offset``; returns bytes stored."""
        response = self._receive(self._timing.read_timeout_ms)
        if response is None:
            logger.debug("No data returned for offset 0x%X", offset)
            return 0
        try:
            frame = parse_frame(response)
        except MalformedResponseError as e:
            logger.debug("Discarding reply: %s", e)
            return 0
        if frame.command != Command.GET_DATA:
            logger.debug("Unexpected reply 0x%02X to GET_DATA", frame.command)
            return 0
        count = min(frame.size, size)
        image.store(offset, frame.data[:count])
        return count

    def read_region(self, address: int, count: int) -> Outcome:
        """Read up to one block of memory with a single GET_DATA request.

        The outcome value is ``count`` bytes (at most ``MAX_REGION_READ``),
        0xFF past whatever the device returned.
        """
        op = "read_region"
        if not self._ready():
            return self._unavailable(op)
        if not 0 <= count <= MAX_REGION_READ or not 0 <= address <= MAX_ADDRESS:
            return Outcome.failure(
                op,
                ErrorKind.INVALID_ADDRESS,
                f"Cannot read {count} bytes at 0x{address:X}",
            )

        buffer = FlashImage.blank(count)
        size = min(count, MAX_PAYLOAD_PER_FRAME)
        with self._operation(State.READING):
            logger.info("Reading %d bytes from address 0x%05X", size, address)
            if not self._send(build_get_data(address, size)):
                return Outcome.failure(
                    op,
                    ErrorKind.TRANSPORT_IO,
                    f"Read request failed at 0x{address:X}",
                    value=buffer.to_bytes(),
                )
            populated = self._receive_data(buffer, 0, size)

        return Outcome.success(
            op,
            f"{populated} bytes read from 0x{address:X}",
            value=buffer.to_bytes(),
            bytes_len=populated,
        )

    def read_flash_to_file(self, path: str | Path) -> Outcome:
        """Read program memory and export it as a raw binary."""
        result = self.read_flash()
        if not result.ok:
            return result
        return self.export_last_read(path)

    def export_last_read(self, path: str | Path) -> Outcome:
        """Write the image from the last :meth:`read_flash` to ``path``."""
        op = "export_last_read"
        if not self._ready():
            return self._unavailable(op)
        image = self.session.last_read
        if image is None:
            return Outcome.failure(op, ErrorKind.FILE_IO, "Nothing read. No binary export.")
        try:
            written = export_bin(image.to_bytes(), path)
        except OSError as e:
            return Outcome.failure(op, ErrorKind.FILE_IO, f"Cannot write {path}: {e}")
        logger.info("Flash content exported to %s", written)
        return Outcome.success(
            op, f"Exported to {written}", value=written, bytes_len=len(image)
        )

    # ─── Reset ──────────────────────────────────────────────────────────

    def reset_device(self) -> Outcome:
        """Ask the device to reset into its application.

        Only reports whether the command was sent, not whether the
        device restarted.
        """
        op = "reset_device"
        if not self._ready():
            return self._unavailable(op)
        logger.info("Send reset command")
        sent = self._send(build_reset_device())
        self._sleep(self._timing.reset_settle_s)
        if not sent:
            return Outcome.failure(op, ErrorKind.TRANSPORT_IO, "Reset command could not be sent")
        return Outcome.success(op, "Reset command sent")
