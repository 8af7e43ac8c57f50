"""USB HID transport for the bootloader."""

from .usb_connection import USBConnection, HIDScanner, DeviceInfo
