"""
Persistent serial worker.

Keeps the printer's serial port open for its whole lifetime: on this class
of Bluetooth serial devices, closing the port tears down the RFCOMM data
channel. Jobs arrive on stdin, acknowledgements leave on stdout.

Run as: python -u -m printer.serial_worker --device /dev/cu.PT-280
"""

import argparse
import logging
import sys
import time

import serial  # type: ignore

from .protocol import MessageKind, decode_job, format_err, format_ok

logger = logging.getLogger(__name__)

WARMUP = b'\x1b@'  # ESC @, printer init


def open_port(device: str, baudrate: int, timeout: float = 2) -> serial.Serial:
    """
    Open the serial port without dropping the line on close.

    Raises:
        serial.SerialException: If the port cannot be opened
    """
    port = serial.Serial()
    port.port = device
    port.baudrate = baudrate
    port.timeout = timeout
    port.hupcl = False
    port.open()
    return port


def warm_up(port, settle: float = 2.0, drain: float = 1.0):
    """Send ESC @ to confirm the channel really delivers data."""
    time.sleep(settle)
    port.write(WARMUP)
    port.flush()
    time.sleep(drain)


def serve(port, stdin, stdout, drain: float = 1.0) -> int:
    """
    Forward jobs from stdin to the port until stdin closes.

    Returns:
        Number of jobs handled
    """
    jobs = 0
    for line in stdin:
        try:
            data = decode_job(line)
            if data is None:
                continue
            port.write(data)
            port.flush()
            time.sleep(drain)
            response = format_ok(len(data))
            logger.debug(f"[Worker] Wrote {len(data)} bytes")
        except Exception as e:
            logger.error(f"[Worker] Job failed: {e}")
            response = format_err(e)
        jobs += 1
        stdout.write(response + '\n')
        stdout.flush()
    return jobs


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Persistent ESC/POS serial worker")
    parser.add_argument('--device', required=True, help="Serial device path")
    parser.add_argument('--baudrate', type=int, default=9600)
    parser.add_argument('--settle', type=float, default=2.0, help="Seconds to wait after opening the port")
    parser.add_argument('--drain', type=float, default=1.0, help="Seconds to wait after each write")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG,
        stream=sys.stderr,
        format='%(name)s - %(levelname)s - %(message)s'
    )

    try:
        port = open_port(args.device, args.baudrate)
    except serial.SerialException as e:
        logger.error(f"[Worker] Could not open {args.device}: {e}")
        return 1

    try:
        warm_up(port, settle=args.settle, drain=args.drain)
        sys.stdout.write(MessageKind.READY + '\n')
        sys.stdout.flush()
        jobs = serve(port, sys.stdin, sys.stdout, drain=args.drain)
        logger.info(f"[Worker] stdin closed after {jobs} jobs")
    finally:
        port.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
