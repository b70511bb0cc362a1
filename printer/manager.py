"""
Printer connection manager.
Single entry point for printing receipts, querying printer status and forcing
a Bluetooth reset, with a background keepalive for the link.
"""

import logging
import subprocess
import threading
from typing import Callable, Optional

from .bluetooth import BluetoothControl, create_control
from .config import build_config, load_config
from .exceptions import PrinterError
from .probe import DeviceProbe
from .reset import ResetSequencer
from .supervisor import WorkerSupervisor, build_worker_command
from .templates import render

logger = logging.getLogger(__name__)


class PrinterManager:
    """
    Orchestrates print jobs against one Bluetooth receipt printer.

    Print jobs, forced resets and keepalive reconnects share one lock so only
    one of them touches the Bluetooth radio at a time. Status queries never
    take the lock.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[dict] = None,
                 control: Optional[BluetoothControl] = None,
                 spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initialize printer manager with configuration.

        Args:
            config_path: Path to configuration file (ignored when config is given)
            config: Configuration overrides, merged over the defaults
            control: Bluetooth control backend (built from config when omitted)
            spawn: Process factory for the serial worker
            sleep: Sleep function for the reset sequencer
        """
        self.config = build_config(config) if config is not None else load_config(config_path)
        printer_config = self.config['printer']
        worker_config = self.config['worker']

        self.control = control or create_control(printer_config)
        self.probe = DeviceProbe(printer_config['device'], self.control)

        sequencer_kwargs = {'sleep': sleep} if sleep else {}
        self.sequencer = ResetSequencer(
            self.control,
            self.probe,
            str(printer_config['bluetooth_pin']),
            self.config['reset'],
            **sequencer_kwargs
        )
        self.supervisor = WorkerSupervisor(
            build_worker_command(self.config),
            self.sequencer,
            self.probe,
            startup_timeout=worker_config['startup_timeout'],
            job_timeout=worker_config['job_timeout'],
            spawn=spawn
        )

        self._lock = threading.Lock()
        self._keepalive_thread = None
        self._keepalive_stop = threading.Event()

        logger.info("[Manager] " + "=" * 60)
        logger.info("[Manager] PrinterManager Initialization")
        logger.info(f"[Manager] Device: {printer_config['device']}")
        logger.info(f"[Manager] Bluetooth address: {printer_config['bluetooth_address']} "
                    f"({printer_config['bluetooth_backend']})")
        logger.info("[Manager] " + "=" * 60)

    def print_receipt(self, data: bytes) -> int:
        """
        Print pre-rendered ESC/POS bytes.

        On failure, discards the worker, resets the link and tries exactly
        once more. A second failure is raised unchanged.

        Args:
            data: Rendered receipt bytes

        Returns:
            Byte count acknowledged by the worker

        Raises:
            PrinterError: If both attempts fail
        """
        with self._lock:
            try:
                self.supervisor.ensure_ready()
                return self.supervisor.submit(data)
            except PrinterError as e:
                logger.warning(f"[Manager] {e}, resetting...")

            self.supervisor.discard()
            self.sequencer.run()
            self.supervisor.ensure_ready()
            return self.supervisor.submit(data)

    def print_template(self, template: str, text: str) -> int:
        """
        Render a template and print it.

        Raises:
            UnknownTemplateError: If the template does not exist (nothing is printed)
            PrinterError: If printing fails
        """
        data = render(template, text, self.config['templates'])
        logger.info(f"[Manager] Printing {template} ({len(data)} bytes)")
        return self.print_receipt(data)

    def force_reset(self):
        """
        Operator-triggered full reset: drop the worker, reset the link and
        start a fresh worker.

        Raises:
            PrinterError: If the device or the worker does not come back
        """
        with self._lock:
            logger.info("[Manager] Forced reset requested")
            self.supervisor.discard()
            self.sequencer.run()
            self.supervisor.ensure_ready()

    def warm_up(self) -> bool:
        """
        Bring the worker up ahead of the first print.

        Returns:
            True if the printer is ready; failures are logged, the first print retries
        """
        try:
            with self._lock:
                self.supervisor.ensure_ready()
            logger.info("[Manager] Printer ready")
            return True
        except PrinterError as e:
            logger.warning(f"[Manager] Printer init failed: {e} (will retry on first print)")
            return False

    def get_status(self) -> dict:
        """
        Get printer status. Never starts or resets anything.

        Returns:
            Dictionary with bluetooth_connected, device_exists and worker_ready
        """
        return {
            'bluetooth_connected': self.probe.is_bluetooth_connected(),
            'device_exists': self.probe.device_exists(),
            'worker_ready': self.supervisor.is_ready,
        }

    def keepalive_tick(self) -> Optional[bool]:
        """
        One keepalive check: reconnect the link if it dropped.

        Skipped when a print or reset holds the lock.

        Returns:
            None if skipped, otherwise whether the link is connected
        """
        if not self._lock.acquire(blocking=False):
            logger.debug("[Manager] Keepalive skipped, printer busy")
            return None
        try:
            if self.probe.is_bluetooth_connected():
                return True
            logger.warning("[Manager] Keepalive: Bluetooth link down")
            return self.sequencer.reconnect()
        finally:
            self._lock.release()

    def _keepalive_loop(self, interval: float):
        while not self._keepalive_stop.wait(interval):
            try:
                self.keepalive_tick()
            except Exception as e:
                logger.exception(f"[Manager] Keepalive error: {e}")

    def start_keepalive(self, interval: Optional[float] = None):
        if self._keepalive_thread:
            return
        interval = interval or self.config['keepalive']['interval']
        self._keepalive_stop.clear()
        self._keepalive_thread = threading.Thread(
            target=self._keepalive_loop, args=(interval,), name='bt-keepalive', daemon=True
        )
        self._keepalive_thread.start()
        logger.info(f"[Manager] Keepalive started (every {interval}s)")

    def stop_keepalive(self):
        if not self._keepalive_thread:
            return
        self._keepalive_stop.set()
        self._keepalive_thread.join(timeout=1.0)
        self._keepalive_thread = None

    def shutdown(self):
        """Stop the keepalive and the worker."""
        self.stop_keepalive()
        self.supervisor.shutdown()
        logger.info("[Manager] Printer manager stopped")
