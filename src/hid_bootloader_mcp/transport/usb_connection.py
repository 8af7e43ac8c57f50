"""USB HID connection to a device running the HID bootloader.

Supports both ``hidapi`` (preferred) and ``pyusb`` backends.
The bootloader enumerates as a vendor-specific HID device with a single
interface and 64-byte interrupt endpoints 0x81 (IN) and 0x01 (OUT).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from ..protocol.framing import HID_REPORT_SIZE

logger = logging.getLogger(__name__)

VENDOR_ID = 0x04D8
PRODUCT_ID = 0x003C
HID_INTERFACE = 0
EP_IN = 0x81
EP_OUT = 0x01
READ_TIMEOUT_MS = 200
SCAN_TIMEOUT_MS = 200
SCAN_INTERVAL_S = 0.05


@dataclass
class DeviceInfo:
    """Basic device identification from USB descriptors."""

    vendor_id: int = VENDOR_ID
    product_id: int = PRODUCT_ID
    manufacturer: str = ""
    product: str = ""
    path: str = ""


class USBConnection:
    """Manages the USB HID connection to the bootloader.

    Usage::

        conn = USBConnection()
        conn.open()
        conn.write(frame_bytes)
        response = conn.read(200)
        conn.close()
    """

    def __init__(
        self,
        vendor_id: int = VENDOR_ID,
        product_id: int = PRODUCT_ID,
    ) -> None:
        self._vendor_id = vendor_id
        self._product_id = product_id
        self._device = None
        self._backend: str = ""
        self._open = False
        self._device_info = DeviceInfo(vendor_id=vendor_id, product_id=product_id)

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    def open(self) -> DeviceInfo:
        """Open a connection to the bootloader, trying hidapi first, then pyusb.

        Returns:
            DeviceInfo with USB descriptor information.

        Raises:
            ConnectionError: If the device cannot be found or opened.
        """
        try:
            return self._open_hidapi()
        except Exception as e:
            logger.debug("hidapi backend failed: %s, trying pyusb", e)

        try:
            return self._open_pyusb()
        except Exception as e:
            raise ConnectionError(
                f"Could not open HID bootloader "
                f"({self._vendor_id:#06x}:{self._product_id:#06x}). "
                f"Ensure the device is in bootloader mode and you have permissions. "
                f"Last error: {e}"
            ) from e

    def _open_hidapi(self) -> DeviceInfo:
        """Open using the hidapi library."""
        import hid

        device = hid.device()
        device.open(self._vendor_id, self._product_id)
        device.set_nonblocking(False)

        self._device = device
        self._backend = "hidapi"
        self._open = True
        self._device_info = DeviceInfo(
            vendor_id=self._vendor_id,
            product_id=self._product_id,
            manufacturer=device.get_manufacturer_string() or "",
            product=device.get_product_string() or "",
        )

        logger.info(
            "Opened via hidapi: %s %s",
            self._device_info.manufacturer,
            self._device_info.product,
        )
        return self._device_info

    def _open_pyusb(self) -> DeviceInfo:
        """Open using pyusb + libusb."""
        import usb.core
        import usb.util

        dev = usb.core.find(idVendor=self._vendor_id, idProduct=self._product_id)
        if dev is None:
            raise ConnectionError("Device not found via pyusb")

        # Detach kernel driver if needed
        if dev.is_kernel_driver_active(HID_INTERFACE):
            dev.detach_kernel_driver(HID_INTERFACE)

        usb.util.claim_interface(dev, HID_INTERFACE)

        self._device = dev
        self._backend = "pyusb"
        self._open = True
        self._device_info = DeviceInfo(
            vendor_id=self._vendor_id,
            product_id=self._product_id,
            manufacturer=usb.util.get_string(dev, dev.iManufacturer) or "",
            product=usb.util.get_string(dev, dev.iProduct) or "",
        )

        logger.info(
            "Opened via pyusb: %s %s",
            self._device_info.manufacturer,
            self._device_info.product,
        )
        return self._device_info

    def close(self) -> None:
        """Close the USB connection."""
        if not self._open:
            return

        try:
            if self._backend == "hidapi":
                self._device.close()
            elif self._backend == "pyusb":
                import usb.util
                usb.util.release_interface(self._device, HID_INTERFACE)
                usb.util.dispose_resources(self._device)
        except Exception as e:
            logger.warning("Error closing device: %s", e)
        finally:
            self._device = None
            self._open = False
            logger.info("Device closed")

    def write(self, data: bytes) -> int:
        """Write a 64-byte HID report to the device.

        Args:
            data: A 64-byte HID report.

        Returns:
            Number of report bytes written, or -1 if the backend failed.

        Raises:
            ConnectionError: If not open.
            ValueError: If ``data`` is not a 64-byte report.
        """
        if not self._open:
            raise ConnectionError("Device is not open")

        if len(data) != HID_REPORT_SIZE:
            raise ValueError(
                f"HID report must be {HID_REPORT_SIZE} bytes, got {len(data)}"
            )

        try:
            if self._backend == "hidapi":
                # Leading report ID 0: the bootloader uses unnumbered reports.
                written = self._device.write(b"\x00" + bytes(data))
                return written - 1 if written > 0 else written
            elif self._backend == "pyusb":
                return self._device.write(EP_OUT, data, timeout=READ_TIMEOUT_MS)
        except Exception as e:
            logger.debug("Write error: %s", e)
            return -1
        raise RuntimeError(f"Unknown backend: {self._backend}")

    def read(self, timeout_ms: int = READ_TIMEOUT_MS) -> bytes:
        """Read a 64-byte HID report from the device.

        Args:
            timeout_ms: Read timeout in milliseconds.

        Returns:
            The report bytes, or ``b""`` if the read timed out or failed.

        Raises:
            ConnectionError: If not open.
        """
        if not self._open:
            raise ConnectionError("Device is not open")

        try:
            if self._backend == "hidapi":
                data = self._device.read(HID_REPORT_SIZE, timeout_ms)
                return bytes(data) if data else b""
            elif self._backend == "pyusb":
                data = self._device.read(EP_IN, HID_REPORT_SIZE, timeout=timeout_ms)
                return bytes(data)
        except Exception as e:
            logger.debug("Read error: %s", e)
        return b""


class HIDScanner:
    """Presence probe for an attached bootloader.

    Used only while connecting, before a handle is opened.
    """

    def __init__(self, interval_s: float = SCAN_INTERVAL_S) -> None:
        self._interval_s = interval_s

    def scan_once(
        self,
        vendor_id: int = VENDOR_ID,
        product_id: int = PRODUCT_ID,
        timeout_ms: int = SCAN_TIMEOUT_MS,
    ) -> bool:
        """Poll for a matching device until found or ``timeout_ms`` elapses."""
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            if self._present(vendor_id, product_id):
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self._interval_s)

    def _present(self, vendor_id: int, product_id: int) -> bool:
        try:
            import hid

            return bool(hid.enumerate(vendor_id, product_id))
        except Exception as e:
            logger.debug("hidapi enumerate failed: %s, trying pyusb", e)

        try:
            import usb.core

            return usb.core.find(idVendor=vendor_id, idProduct=product_id) is not None
        except Exception as e:
            logger.debug("pyusb find failed: %s", e)
            return False
