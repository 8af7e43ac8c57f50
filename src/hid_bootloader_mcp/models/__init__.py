"""Data models for session state, flash images, and firmware files."""

from .flash_image import FlashImage, ERASED_BYTE
from .session import Session
from .file_formats import HexImage, load_hex, load_hex_file, export_bin, import_bin
