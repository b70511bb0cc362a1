"""
Read-only checks of the printer's serial device node and Bluetooth link.
"""

import logging
import os

from .bluetooth import BluetoothControl

logger = logging.getLogger(__name__)


class DeviceProbe:
    """Answers whether the device node exists and whether the link is up."""

    def __init__(self, device: str, control: BluetoothControl, timeout: float = 3.0):
        self.device = device
        self.control = control
        self.timeout = timeout

    def device_exists(self) -> bool:
        return os.path.exists(self.device)

    def is_bluetooth_connected(self) -> bool:
        """
        Query the OS for the link state.

        Any failure of the query counts as "not connected".
        """
        try:
            return self.control.is_connected(timeout=self.timeout)
        except Exception as e:
            logger.debug(f"[Probe] Connection query failed: {e}")
            return False
