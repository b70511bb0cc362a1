"""
Bluetooth reset sequence for the receipt printer.

A stale RFCOMM channel keeps accepting writes without delivering them to the
printer, so the only reliable recovery is a full episode: disconnect, unpair,
power-cycle the radio, re-pair, connect and wait for the serial node.
"""

import logging
import subprocess
import time
from typing import Callable

from .bluetooth import BluetoothControl
from .exceptions import BluetoothCommandError, DeviceUnavailableError
from .probe import DeviceProbe

logger = logging.getLogger(__name__)


class ResetSequencer:
    """Runs reset episodes against one Bluetooth device."""

    def __init__(self, control: BluetoothControl, probe: DeviceProbe, pin: str,
                 reset_config: dict = None, sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            control: Bluetooth control backend
            probe: Probe for the serial device node
            pin: Numeric pairing PIN
            reset_config: The 'reset' configuration section (delays and poll bounds)
            sleep: Sleep function, replaceable in tests
        """
        reset_config = reset_config or {}
        self.control = control
        self.probe = probe
        self.pin = pin
        self.sleep = sleep

        self.unpair_delay = reset_config.get('unpair_delay', 1.0)
        self.power_off_delay = reset_config.get('power_off_delay', 2.0)
        self.power_on_delay = reset_config.get('power_on_delay', 3.0)
        self.pair_delay = reset_config.get('pair_delay', 1.0)
        self.reconnect_delay = reset_config.get('reconnect_delay', 1.0)
        self.poll_interval = reset_config.get('poll_interval', 1.0)
        self.poll_attempts = reset_config.get('poll_attempts', 5)
        self.reconnect_cycles = reset_config.get('reconnect_cycles', 3)

        self.episodes = 0

    def _step(self, name: str, action: Callable[[], None]) -> bool:
        """Run one best-effort step, logging and swallowing its failure."""
        try:
            action()
            logger.debug(f"[Reset] {name}: ok")
            return True
        except (BluetoothCommandError, OSError, subprocess.SubprocessError) as e:
            logger.debug(f"[Reset] {name} failed (continuing): {e}")
            return False

    def _wait_for_device(self) -> bool:
        for _ in range(self.poll_attempts):
            if self.probe.device_exists():
                return True
            self.sleep(self.poll_interval)
        return self.probe.device_exists()

    def run(self):
        """
        Perform one full reset episode.

        Raises:
            DeviceUnavailableError: If the serial device never reappears
        """
        self.episodes += 1
        logger.info(f"[Reset] Full reset #{self.episodes}: power cycle + re-pair...")

        self._step('disconnect', self.control.disconnect)
        self._step('unpair', self.control.unpair)
        self.sleep(self.unpair_delay)

        self._step('power off', lambda: self.control.power(False))
        self.sleep(self.power_off_delay)
        self._step('power on', lambda: self.control.power(True))
        self.sleep(self.power_on_delay)

        self._step('pair', lambda: self.control.pair(self.pin))
        self.sleep(self.pair_delay)
        self._step('connect', self.control.connect)

        # The node sometimes only shows up after another disconnect/connect
        for cycle in range(self.reconnect_cycles):
            if self._wait_for_device():
                logger.info("[Reset] Reset complete, serial device ready")
                return
            logger.info(f"[Reset] Serial device still absent, reconnecting ({cycle + 1}/{self.reconnect_cycles})")
            self._step('disconnect', self.control.disconnect)
            self.sleep(self.reconnect_delay)
            self._step('connect', self.control.connect)

        if not self.probe.device_exists():
            logger.error(f"[Reset] {self.probe.device} did not appear after reset")
            raise DeviceUnavailableError(
                "Serial device did not appear after Bluetooth reset",
                context={'device': self.probe.device}
            )
        logger.info("[Reset] Reset complete, serial device ready")

    def reconnect(self) -> bool:
        """
        Lightweight recovery: one connect attempt, no unpairing or power cycle.

        Returns:
            True if the link reports connected afterwards
        """
        logger.info("[Reset] Reconnecting Bluetooth link...")
        self._step('connect', self.control.connect)
        connected = self.probe.is_bluetooth_connected()
        if connected:
            logger.info("[Reset] Link reconnected")
        else:
            logger.warning("[Reset] Link still disconnected")
        return connected
