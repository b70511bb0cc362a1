"""
Shared fixtures: a scripted Bluetooth backend, a counting process spawner
and a manager wired to both.
"""

import subprocess
import sys
from pathlib import Path

import pytest

from printer.bluetooth import BluetoothControl
from printer.exceptions import BluetoothCommandError
from printer.manager import PrinterManager
from printer.probe import DeviceProbe
from printer.reset import ResetSequencer

FAKE_WORKER = str(Path(__file__).with_name('fake_worker.py'))
ADDRESS = '86-67-7a-6b-fb-e7'


class FakeBluetoothControl(BluetoothControl):
    """
    Records every call. The serial node (a plain file) shows up on the
    n-th connect when device_appears is set.
    """

    def __init__(self, device_path: Path, device_appears: bool = True, appear_after_connects: int = 1,
                 failing=()):
        super().__init__(ADDRESS)
        self.device_path = device_path
        self.device_appears = device_appears
        self.appear_after_connects = appear_after_connects
        self.failing = set(failing)
        self.connected = False
        self.connects = 0
        self.calls = []

    def _record(self, name):
        self.calls.append(name)
        if name.split(':')[0] in self.failing:
            raise BluetoothCommandError(f"{name} failed")

    def disconnect(self):
        self._record('disconnect')
        self.connected = False

    def unpair(self):
        self._record('unpair')

    def power(self, on: bool):
        self._record(f'power:{int(on)}')

    def pair(self, pin: str, timeout: float = 15.0):
        self._record(f'pair:{pin}')

    def connect(self):
        self._record('connect')
        self.connected = True
        self.connects += 1
        if self.device_appears and self.connects >= self.appear_after_connects:
            self.device_path.touch()

    def is_connected(self, timeout: float = 3.0) -> bool:
        if 'is_connected' in self.failing:
            raise BluetoothCommandError("query failed")
        return self.connected


class CountingSpawner:
    """
    Popen replacement that launches tests/fake_worker.py in the given modes
    (one per spawn, the last one repeats) and tracks concurrently live workers.
    """

    def __init__(self, *modes):
        self.modes = list(modes) or ['ok']
        self.processes = []
        self.max_live = 0

    @property
    def spawned(self):
        return len(self.processes)

    def live(self):
        return [p for p in self.processes if p.poll() is None]

    def __call__(self, command, **kwargs):
        mode = self.modes.pop(0) if len(self.modes) > 1 else self.modes[0]
        self.max_live = max(self.max_live, len(self.live()) + 1)
        process = subprocess.Popen([sys.executable, '-u', FAKE_WORKER, mode], **kwargs)
        self.processes.append(process)
        return process

    def cleanup(self):
        for process in self.live():
            process.kill()
            process.wait()


@pytest.fixture
def device_path(tmp_path):
    return tmp_path / 'cu.PT-280'


@pytest.fixture
def control(device_path):
    return FakeBluetoothControl(device_path)


@pytest.fixture
def probe(device_path, control):
    return DeviceProbe(str(device_path), control)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sequencer(control, probe, sleeps):
    return ResetSequencer(
        control, probe, '0000',
        {'poll_attempts': 2, 'reconnect_cycles': 2},
        sleep=sleeps.append
    )


@pytest.fixture
def test_config(device_path):
    return {
        'printer': {'device': str(device_path), 'bluetooth_address': ADDRESS},
        'reset': {'poll_attempts': 2, 'reconnect_cycles': 1},
        'worker': {'startup_timeout': 5.0, 'job_timeout': 2.0},
    }


@pytest.fixture
def make_manager(test_config, control):
    """Build a PrinterManager on the fake backend; cleans up spawned workers."""
    created = []

    def factory(*modes, job_timeout=None, startup_timeout=None, bt_control=None):
        if job_timeout is not None:
            test_config['worker']['job_timeout'] = job_timeout
        if startup_timeout is not None:
            test_config['worker']['startup_timeout'] = startup_timeout
        spawner = CountingSpawner(*modes)
        manager = PrinterManager(
            config=test_config,
            control=bt_control or control,
            spawn=spawner,
            sleep=lambda seconds: None
        )
        created.append((manager, spawner))
        return manager, spawner

    yield factory

    for manager, spawner in created:
        manager.shutdown()
        spawner.cleanup()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv('PORT', raising=False)
    monkeypatch.delenv('PRINT_SERVER_CONFIG', raising=False)
