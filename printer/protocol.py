"""
Line protocol between the worker supervisor and the serial worker.

Supervisor -> worker: one job per line, the ESC/POS payload hex encoded.
Worker -> supervisor: ``READY`` once after boot, then ``OK <bytes>`` or
``ERR <reason>`` for every job. Any other line is diagnostic noise.
"""

from dataclasses import dataclass
from typing import Optional


class MessageKind:
    """Kinds of lines the worker emits."""
    READY = 'READY'
    OK = 'OK'
    ERR = 'ERR'
    NOISE = 'NOISE'


@dataclass
class WorkerMessage:
    kind: str
    text: str = ''
    byte_count: Optional[int] = None

    @property
    def is_result(self) -> bool:
        return self.kind in (MessageKind.OK, MessageKind.ERR)


def parse_line(line: str) -> WorkerMessage:
    """
    Classify one line of worker output.

    Args:
        line: Raw line, with or without its trailing newline

    Returns:
        WorkerMessage tagged READY, OK, ERR or NOISE
    """
    stripped = line.strip()
    tag, _, rest = stripped.partition(' ')
    rest = rest.strip()

    if tag == MessageKind.READY and not rest:
        return WorkerMessage(MessageKind.READY)
    if tag == MessageKind.OK:
        try:
            count = int(rest) if rest else None
        except ValueError:
            return WorkerMessage(MessageKind.NOISE, stripped)
        return WorkerMessage(MessageKind.OK, rest, count)
    if tag == MessageKind.ERR:
        return WorkerMessage(MessageKind.ERR, rest or 'unknown error')
    return WorkerMessage(MessageKind.NOISE, stripped)


def encode_job(data: bytes) -> str:
    """Encode a payload as a single job line (newline included)."""
    return data.hex() + '\n'


def decode_job(line: str) -> Optional[bytes]:
    """
    Decode a job line back into bytes.

    Returns:
        The payload, or None for a blank line

    Raises:
        ValueError: If the line is not valid hex
    """
    hex_data = line.strip()
    if not hex_data:
        return None
    return bytes.fromhex(hex_data)


def format_ok(byte_count: int) -> str:
    return f"{MessageKind.OK} {byte_count}"


def format_err(reason) -> str:
    # One line only, the supervisor reads line by line
    text = ' '.join(str(reason).split())
    return f"{MessageKind.ERR} {text}"
