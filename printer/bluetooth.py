"""
Bluetooth control for the receipt printer.
Wraps the OS utilities used to disconnect, unpair, power-cycle, pair and
connect the printer so the rest of the package never shells out directly.
"""

import logging
import os
import re
import select
import subprocess
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .exceptions import BluetoothCommandError, InvalidConfigurationError

logger = logging.getLogger(__name__)


def validate_address(address: str) -> bool:
    """
    Validate Bluetooth hardware address format.

    Args:
        address: Address with ':' or '-' separators

    Returns:
        True if valid format
    """
    pattern = r'^([0-9A-Fa-f]{2}[:-]){5}([0-9A-Fa-f]{2})$'
    return bool(re.match(pattern, address or ''))


def run_command(args: List[str], timeout: float) -> str:
    """
    Run a Bluetooth utility and return its stdout.

    Raises:
        BluetoothCommandError: If the utility is missing, times out or exits non-zero
    """
    logger.debug(f"[Bluetooth] $ {' '.join(args)}")
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except FileNotFoundError:
        raise BluetoothCommandError(
            f"{args[0]} not found",
            context={'command': ' '.join(args)}
        )
    except subprocess.TimeoutExpired:
        raise BluetoothCommandError(
            f"{args[0]} timed out after {timeout}s",
            context={'command': ' '.join(args)}
        )

    if result.returncode != 0:
        raise BluetoothCommandError(
            f"{args[0]} exited with code {result.returncode}",
            context={'command': ' '.join(args), 'stderr': result.stderr.strip()}
        )
    return result.stdout


def read_until(process: subprocess.Popen, markers: Sequence[bytes], timeout: float) -> bytes:
    """
    Read a process' stdout until one of the markers shows up.

    Reads raw chunks rather than lines since prompts are not newline terminated.
    Stops early at EOF or when the timeout elapses.

    Returns:
        Everything read so far
    """
    fd = process.stdout.fileno()
    buffer = b''
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        ready, _, _ = select.select([fd], [], [], 0.1)
        if not ready:
            continue
        chunk = os.read(fd, 1024)
        if not chunk:
            break
        buffer += chunk
        if any(marker in buffer for marker in markers):
            break
    return buffer


class BluetoothControl(ABC):
    """Narrow interface over the OS Bluetooth stack for one fixed device."""

    def __init__(self, address: str, command_timeout: float = 5.0):
        if not validate_address(address):
            raise InvalidConfigurationError(
                f"Invalid Bluetooth address format: {address}",
                context={'address': address}
            )
        self.address = address
        self.command_timeout = command_timeout

    @abstractmethod
    def disconnect(self):
        """Drop the current link."""

    @abstractmethod
    def unpair(self):
        """Forget the pairing with the device."""

    @abstractmethod
    def power(self, on: bool):
        """Switch the Bluetooth radio on or off."""

    @abstractmethod
    def pair(self, pin: str, timeout: float = 15.0):
        """Pair with the device, answering the PIN prompt."""

    @abstractmethod
    def connect(self):
        """Open the link (and the serial channel behind it)."""

    @abstractmethod
    def is_connected(self, timeout: float = 3.0) -> bool:
        """Ask the OS whether the link is up."""


class BlueutilControl(BluetoothControl):
    """macOS control through blueutil. The serial node is /dev/cu.<name>."""

    def disconnect(self):
        run_command(['blueutil', '--disconnect', self.address], timeout=3)

    def unpair(self):
        run_command(['blueutil', '--unpair', self.address], timeout=3)

    def power(self, on: bool):
        run_command(['blueutil', '--power', '1' if on else '0'], timeout=self.command_timeout)

    def pair(self, pin: str, timeout: float = 15.0):
        """
        Pair using blueutil's interactive PIN prompt.

        Args:
            pin: Numeric PIN sent when blueutil asks for it
            timeout: Overall time allowed for pairing

        Raises:
            BluetoothCommandError: If pairing fails or times out
        """
        logger.info(f"[Bluetooth] Pairing with {self.address}...")
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                ['blueutil', '--pair', self.address],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT
            )
        except FileNotFoundError:
            raise BluetoothCommandError("blueutil not found", context={'address': self.address})

        try:
            output = read_until(process, [b'Enter'], timeout)
            if b'Enter' in output:
                logger.debug("[Bluetooth] PIN prompt received")
                process.stdin.write(f"{pin}\r\n".encode())
                process.stdin.flush()

            remaining = max(timeout - (time.monotonic() - started), 0.1)
            returncode = process.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            raise BluetoothCommandError(
                f"Pairing timed out after {timeout}s",
                context={'address': self.address}
            )
        except OSError as e:
            raise BluetoothCommandError(
                f"Pairing session with {self.address} broke off",
                context={'address': self.address, 'error': str(e)}
            )
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        if returncode != 0:
            raise BluetoothCommandError(
                f"Failed to pair with {self.address}",
                context={'address': self.address, 'code': returncode}
            )
        logger.info(f"[Bluetooth] Paired with {self.address}")

    def connect(self):
        run_command(['blueutil', '--connect', self.address], timeout=10)

    def is_connected(self, timeout: float = 3.0) -> bool:
        output = run_command(['blueutil', '--is-connected', self.address], timeout=timeout)
        return output.strip() == '1'


class BluetoothctlControl(BluetoothControl):
    """Linux control through bluetoothctl, with the serial node bound by rfcomm."""

    def __init__(self, address: str, device: str = '/dev/rfcomm0', channel: int = 1,
                 command_timeout: float = 5.0):
        super().__init__(address.replace('-', ':').upper(), command_timeout)
        match = re.search(r'rfcomm(\d+)$', device)
        self.rfcomm_index = match.group(1) if match else '0'
        self.channel = channel

    def _release_rfcomm(self):
        try:
            run_command(['sudo', 'rfcomm', 'release', self.rfcomm_index], timeout=5)
            logger.debug("[Bluetooth] Released RFCOMM binding")
        except BluetoothCommandError as e:
            logger.debug(f"[Bluetooth] Could not release RFCOMM: {e}")

    def disconnect(self):
        self._release_rfcomm()
        run_command(['bluetoothctl', 'disconnect', self.address], timeout=3)

    def unpair(self):
        run_command(['bluetoothctl', 'remove', self.address], timeout=self.command_timeout)

    def power(self, on: bool):
        run_command(['bluetoothctl', 'power', 'on' if on else 'off'], timeout=self.command_timeout)

    def pair(self, pin: str, timeout: float = 15.0):
        """
        Pair in a bluetoothctl session with a keyboard agent answering the PIN prompt.

        Raises:
            BluetoothCommandError: If pairing fails or times out
        """
        logger.info(f"[Bluetooth] Pairing with {self.address}...")
        try:
            process = subprocess.Popen(
                ['bluetoothctl'],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT
            )
        except FileNotFoundError:
            raise BluetoothCommandError("bluetoothctl not found", context={'address': self.address})

        def send(command: str):
            process.stdin.write(f"{command}\n".encode())
            process.stdin.flush()

        outcome_markers = [b'Pairing successful', b'Failed to pair', b'not available']
        try:
            send('agent KeyboardOnly')
            send('default-agent')
            send(f'pair {self.address}')

            output = read_until(process, [b'PIN code'] + outcome_markers, timeout)
            if b'PIN code' in output:
                logger.debug("[Bluetooth] PIN prompt received")
                send(pin)
                output += read_until(process, outcome_markers, timeout)

            if b'Pairing successful' not in output:
                raise BluetoothCommandError(
                    f"Failed to pair with {self.address}",
                    context={'address': self.address, 'output': output.decode(errors='replace').strip()[-200:]}
                )

            send(f'trust {self.address}')
            send('quit')
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            logger.debug("[Bluetooth] bluetoothctl did not quit in time")
        except OSError as e:
            raise BluetoothCommandError(
                f"Pairing session with {self.address} broke off",
                context={'address': self.address, 'error': str(e)}
            )
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
        logger.info(f"[Bluetooth] Paired with {self.address}")

    def connect(self):
        run_command(['bluetoothctl', 'connect', self.address], timeout=10)
        self._release_rfcomm()
        run_command(
            ['sudo', 'rfcomm', 'bind', self.rfcomm_index, self.address, str(self.channel)],
            timeout=10
        )

    def is_connected(self, timeout: float = 3.0) -> bool:
        output = run_command(['bluetoothctl', 'info', self.address], timeout=timeout)
        return 'Connected: yes' in output


def create_control(printer_config: dict, backend: Optional[str] = None) -> BluetoothControl:
    """
    Build the Bluetooth control backend named in the printer configuration.

    Args:
        printer_config: The 'printer' configuration section
        backend: Overrides printer_config['bluetooth_backend']

    Raises:
        InvalidConfigurationError: If the backend is unknown
    """
    backend = backend or printer_config.get('bluetooth_backend', 'blueutil')
    address = printer_config.get('bluetooth_address')

    if backend == 'blueutil':
        return BlueutilControl(address)
    if backend == 'bluetoothctl':
        return BluetoothctlControl(
            address,
            device=printer_config.get('device', '/dev/rfcomm0'),
            channel=printer_config.get('rfcomm_channel', 1)
        )
    raise InvalidConfigurationError(
        f"Unknown Bluetooth backend: {backend}",
        context={'backend': backend}
    )
