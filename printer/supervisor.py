"""
Supervisor for the persistent serial worker process.

Owns at most one worker subprocess at a time, starts it lazily behind a full
Bluetooth reset, forwards jobs over its stdin and matches each job with the
single result line it answers with.
"""

import logging
import queue
import subprocess
import sys
import threading
import time
from typing import Callable, List, Optional

from .exceptions import (
    DeviceUnavailableError,
    PrintJobError,
    PrintTimeoutError,
    WorkerStartError,
    WorkerStateError,
)
from .probe import DeviceProbe
from .protocol import MessageKind, encode_job, parse_line
from .reset import ResetSequencer

logger = logging.getLogger(__name__)


class WorkerState:
    """Lifecycle states of the worker."""
    ABSENT = 'absent'
    STARTING = 'starting'
    READY = 'ready'
    FAILED = 'failed'


def build_worker_command(config: dict) -> List[str]:
    """
    Build the command line that launches the serial worker.

    Args:
        config: Full configuration dictionary
    """
    printer_config = config['printer']
    python = config['worker'].get('python') or sys.executable
    return [
        python, '-u', '-m', 'printer.serial_worker',
        '--device', printer_config['device'],
        '--baudrate', str(printer_config.get('baudrate', 9600)),
    ]


class WorkerChannel:
    """
    One spawned worker and the threads pumping its output.

    Only the pump threads write to the events and the queue; the supervisor
    reads them. Result lines are only queued while a job is waiting for one;
    anything the worker prints unasked is logged and dropped.
    """

    def __init__(self, process: subprocess.Popen):
        self.process = process
        self.ready = threading.Event()
        self.exited = threading.Event()
        self.booted = threading.Event()  # set on READY or on exit
        self.results = queue.Queue()
        self.lock = threading.Lock()
        self.expected = 0  # results owed by jobs already sent, guarded by lock
        self.exit_code = None

        self._stdout_thread = threading.Thread(target=self._pump_stdout, name='worker-stdout', daemon=True)
        self._stderr_thread = threading.Thread(target=self._pump_stderr, name='worker-stderr', daemon=True)

    @property
    def pid(self):
        return getattr(self.process, 'pid', None)

    @property
    def is_ready(self) -> bool:
        return self.ready.is_set() and not self.exited.is_set()

    def start(self):
        self._stdout_thread.start()
        if self.process.stderr is not None:
            self._stderr_thread.start()

    def wait_booted(self, timeout: float) -> bool:
        """Wait for READY. False on timeout or if the worker exited first."""
        self.booted.wait(timeout)
        return self.is_ready

    def _pump_stdout(self):
        try:
            for line in self.process.stdout:
                message = parse_line(line)
                if message.kind == MessageKind.READY and not self.ready.is_set():
                    logger.info(f"[Worker] Ready (pid={self.pid})")
                    self.ready.set()
                    self.booted.set()
                elif message.is_result and self.ready.is_set():
                    self._accept_result(message)
                else:
                    logger.debug(f"[Worker] stdout: {line.strip()}")
        except (OSError, ValueError) as e:
            logger.debug(f"[Worker] stdout closed: {e}")
        finally:
            self.exit_code = self.process.wait()
            logger.info(f"[Worker] Exited (pid={self.pid}, code={self.exit_code})")
            self.exited.set()
            self.booted.set()
            # Wakes a submit() waiting on this worker
            self.results.put(None)

    def _accept_result(self, message):
        with self.lock:
            if self.expected > 0:
                self.expected -= 1
                self.results.put(message)
                return
        logger.warning(f"[Worker] Unsolicited result ignored: {message.kind} {message.text}")

    def _pump_stderr(self):
        try:
            for line in self.process.stderr:
                logger.debug(f"[Worker] stderr: {line.rstrip()}")
        except (OSError, ValueError) as e:
            logger.debug(f"[Worker] stderr closed: {e}")

    def close(self, timeout: float = 5.0):
        """Kill the worker if still running and wait for it to go away."""
        if self.process.poll() is None:
            logger.info(f"[Worker] Killing worker (pid={self.pid})")
            self.process.kill()
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"[Worker] Worker pid={self.pid} did not exit after kill")
        try:
            if self.process.stdin:
                self.process.stdin.close()
        except OSError:
            pass


class WorkerSupervisor:
    """Keeps a single serial worker alive and feeds it jobs."""

    def __init__(self, command: List[str], sequencer: ResetSequencer, probe: DeviceProbe,
                 startup_timeout: float = 20.0, job_timeout: float = 10.0,
                 spawn: Callable[..., subprocess.Popen] = subprocess.Popen):
        """
        Args:
            command: Worker command line
            sequencer: Reset sequencer run before every worker start
            probe: Device probe used to confirm the serial node exists
            startup_timeout: Seconds to wait for the worker's READY line
            job_timeout: Seconds to wait for a job's OK/ERR line
            spawn: Process factory with the subprocess.Popen signature
        """
        self.command = list(command)
        self.sequencer = sequencer
        self.probe = probe
        self.startup_timeout = startup_timeout
        self.job_timeout = job_timeout
        self._spawn = spawn

        self._lock = threading.RLock()
        self._job_lock = threading.Lock()
        self._channel: Optional[WorkerChannel] = None
        self._start_failed = False
        self.spawn_count = 0

    @property
    def state(self) -> str:
        channel = self._channel
        if channel is None:
            return WorkerState.FAILED if self._start_failed else WorkerState.ABSENT
        if channel.exited.is_set():
            return WorkerState.ABSENT
        if channel.ready.is_set():
            return WorkerState.READY
        return WorkerState.STARTING

    @property
    def is_ready(self) -> bool:
        return self.state == WorkerState.READY

    def ensure_ready(self):
        """
        Make sure a ready worker is running.

        A no-op when the worker is already ready. Otherwise the old worker is
        terminated, the Bluetooth link is reset and a fresh worker is started.

        Raises:
            DeviceUnavailableError: If the serial device is missing after the reset
            WorkerStartError: If the worker cannot be spawned or does not report READY
        """
        with self._lock:
            if self.is_ready:
                return

            self._terminate()
            self.sequencer.run()
            if not self.probe.device_exists():
                raise DeviceUnavailableError(
                    "Serial device not available",
                    context={'device': self.probe.device}
                )
            self._start()

    def _start(self):
        logger.info("[Worker] Starting...")
        self._start_failed = False
        try:
            process = self._spawn(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1
            )
        except OSError as e:
            self._start_failed = True
            logger.error(f"[Worker] Spawn failed: {e}")
            raise WorkerStartError(
                "Print worker could not be spawned",
                context={'command': ' '.join(self.command), 'error': str(e)}
            )

        self.spawn_count += 1
        channel = WorkerChannel(process)
        channel.start()
        self._channel = channel

        if not channel.wait_booted(self.startup_timeout):
            reason = f"exited with code {channel.exit_code}" if channel.exited.is_set() else 'timeout'
            logger.error(f"[Worker] Did not start ({reason})")
            self._terminate()
            self._start_failed = True
            raise WorkerStartError(
                "Print worker did not start",
                context={'reason': reason, 'timeout': self.startup_timeout}
            )

    def _terminate(self):
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.close()

    def discard(self):
        """Forcibly terminate the worker and forget it."""
        with self._lock:
            self._terminate()
            self._start_failed = False

    def shutdown(self):
        logger.info("[Worker] Shutting down")
        self.discard()

    def submit(self, data: bytes) -> int:
        """
        Send one job to the ready worker and wait for its acknowledgement.

        Args:
            data: Rendered ESC/POS bytes

        Returns:
            Byte count reported by the worker

        Raises:
            WorkerStateError: If no ready worker exists (caller bug)
            PrintTimeoutError: If no result line arrives within job_timeout
            PrintJobError: If the worker reports ERR or exits mid-job
        """
        with self._job_lock:
            channel = self._channel
            if channel is None or not channel.ready.is_set():
                raise WorkerStateError(f"Job submitted while worker is {self.state}")
            if channel.exited.is_set():
                raise PrintJobError(
                    "Print worker exited",
                    context={'code': channel.exit_code}
                )

            with channel.lock:
                self._drain_stale(channel)
                # Results still owed to earlier, timed out jobs arrive first
                skip = channel.expected
                channel.expected += 1

            try:
                channel.process.stdin.write(encode_job(data))
                channel.process.stdin.flush()
            except (OSError, ValueError) as e:
                with channel.lock:
                    channel.expected -= 1
                raise PrintJobError(
                    "Could not send job to print worker",
                    context={'error': str(e)}
                )

            deadline = time.monotonic() + self.job_timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PrintTimeoutError("Print timeout", context={'timeout': self.job_timeout})
                try:
                    message = channel.results.get(timeout=remaining)
                except queue.Empty:
                    continue

                if message is None:
                    raise PrintJobError(
                        "Print worker exited mid-job",
                        context={'code': channel.exit_code}
                    )
                if skip > 0:
                    skip -= 1
                    logger.warning(f"[Worker] Discarding late result of an earlier job: {message.kind} {message.text}")
                    continue
                if message.kind == MessageKind.OK:
                    if message.byte_count is not None and message.byte_count != len(data):
                        # An OK for some other payload, keep waiting for ours
                        logger.warning(f"[Worker] Ignoring OK {message.text}, job has {len(data)} bytes")
                        with channel.lock:
                            channel.expected += 1
                        continue
                    logger.info(f"[Worker] Job acknowledged: OK {message.text}")
                    return len(data)
                raise PrintJobError(f"ERR {message.text}")

    def _drain_stale(self, channel: WorkerChannel):
        """Drop queued results of earlier jobs. Called with channel.lock held."""
        while True:
            try:
                message = channel.results.get_nowait()
            except queue.Empty:
                return
            if message is None:
                raise PrintJobError(
                    "Print worker exited",
                    context={'code': channel.exit_code}
                )
            logger.warning(f"[Worker] Discarding stale result: {message.kind} {message.text}")
