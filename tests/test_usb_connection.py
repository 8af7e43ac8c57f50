"""Tests for the USB HID transport with the hidapi backend mocked."""

from __future__ import annotations

import sys
from unittest.mock import MagicMock, patch

import pytest

from hid_bootloader_mcp.transport.usb_connection import HIDScanner, USBConnection


def _mock_hid(read_data=b"", write_result=65):
    device = MagicMock()
    device.get_manufacturer_string.return_value = "Microchip Technology Inc."
    device.get_product_string.return_value = "USB HID Bootloader"
    device.read.return_value = list(read_data)
    device.write.return_value = write_result
    module = MagicMock()
    module.device.return_value = device
    return module, device


def test_open_via_hidapi():
    hid_mod, device = _mock_hid()
    with patch.dict(sys.modules, {"hid": hid_mod}):
        conn = USBConnection()
        info = conn.open()

    assert conn.is_open
    assert info.product == "USB HID Bootloader"
    device.open.assert_called_once_with(0x04D8, 0x003C)


def test_write_prepends_report_id():
    hid_mod, device = _mock_hid()
    with patch.dict(sys.modules, {"hid": hid_mod}):
        conn = USBConnection()
        conn.open()
        written = conn.write(bytes([0x02]) + bytes(63))

    assert written == 64
    sent = device.write.call_args[0][0]
    assert len(sent) == 65
    assert sent[0] == 0x00
    assert sent[1] == 0x02


def test_write_backend_error_returns_negative():
    hid_mod, device = _mock_hid()
    device.write.side_effect = OSError("pipe error")
    with patch.dict(sys.modules, {"hid": hid_mod}):
        conn = USBConnection()
        conn.open()
        assert conn.write(bytes(64)) == -1


def test_write_requires_full_report():
    hid_mod, _ = _mock_hid()
    with patch.dict(sys.modules, {"hid": hid_mod}):
        conn = USBConnection()
        conn.open()
        with pytest.raises(ValueError):
            conn.write(b"\x02")


def test_write_when_closed():
    with pytest.raises(ConnectionError):
        USBConnection().write(bytes(64))


def test_read_returns_report():
    hid_mod, device = _mock_hid(read_data=bytes(range(64)))
    with patch.dict(sys.modules, {"hid": hid_mod}):
        conn = USBConnection()
        conn.open()
        data = conn.read(200)

    assert data == bytes(range(64))
    device.read.assert_called_once_with(64, 200)


def test_read_timeout_returns_empty():
    hid_mod, _ = _mock_hid(read_data=b"")
    with patch.dict(sys.modules, {"hid": hid_mod}):
        conn = USBConnection()
        conn.open()
        assert conn.read(10) == b""


def test_close():
    hid_mod, device = _mock_hid()
    with patch.dict(sys.modules, {"hid": hid_mod}):
        conn = USBConnection()
        conn.open()
        conn.close()

    assert not conn.is_open
    device.close.assert_called_once()


def test_scanner_finds_device():
    hid_mod = MagicMock()
    hid_mod.enumerate.return_value = [{"vendor_id": 0x04D8, "product_id": 0x003C}]
    with patch.dict(sys.modules, {"hid": hid_mod}):
        assert HIDScanner().scan_once(0x04D8, 0x003C, 0)
    hid_mod.enumerate.assert_called_with(0x04D8, 0x003C)


def test_scanner_gives_up_after_timeout():
    hid_mod = MagicMock()
    hid_mod.enumerate.return_value = []
    with patch.dict(sys.modules, {"hid": hid_mod}):
        assert not HIDScanner(interval_s=0.001).scan_once(0x04D8, 0x003C, 5)
