"""Host-side engine for flashing microcontrollers through a USB HID bootloader."""

from .controller import Bootloader, State, Timing
from .errors import ErrorKind, Outcome

__version__ = "0.1.0"
