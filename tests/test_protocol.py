"""
Tests for the supervisor/worker line protocol and the serial worker.
"""

import io
from unittest.mock import MagicMock, patch

import pytest
import serial  # type: ignore

from printer import serial_worker
from printer.protocol import MessageKind, decode_job, encode_job, format_err, parse_line


class TestParseLine:

    def test_ready(self):
        assert parse_line('READY\n').kind == MessageKind.READY

    def test_ok_with_byte_count(self):
        message = parse_line('OK 42\n')
        assert message.kind == MessageKind.OK
        assert message.byte_count == 42
        assert message.is_result

    def test_err_keeps_reason(self):
        message = parse_line('ERR [Errno 5] Input/output error')
        assert message.kind == MessageKind.ERR
        assert message.text == '[Errno 5] Input/output error'
        assert message.is_result

    @pytest.mark.parametrize('line', ['', 'READY now', 'OKAY', 'OK abc', 'warming up', 'ready'])
    def test_everything_else_is_noise(self, line):
        message = parse_line(line)
        assert message.kind == MessageKind.NOISE
        assert not message.is_result


class TestJobEncoding:

    def test_one_line_per_job(self):
        line = encode_job(b'\x1b@\nhi\n')
        assert line == '1b400a68690a\n'
        assert line.count('\n') == 1

    def test_decode(self):
        assert decode_job('1b40\n') == b'\x1b@'
        assert decode_job('   \n') is None

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            decode_job('not hex')

    def test_error_reason_is_single_line(self):
        assert format_err('line one\nline two') == 'ERR line one line two'


class TestSerialWorker:

    @patch('printer.serial_worker.time.sleep')
    def test_serve_acknowledges_each_job(self, mock_sleep):
        port = MagicMock()
        stdin = io.StringIO('1b40\n\n68690a\n')
        stdout = io.StringIO()

        jobs = serial_worker.serve(port, stdin, stdout)

        assert jobs == 2
        assert stdout.getvalue() == 'OK 2\nOK 3\n'
        port.write.assert_any_call(b'\x1b@')
        port.write.assert_any_call(b'hi\n')
        assert port.flush.call_count == 2

    @patch('printer.serial_worker.time.sleep')
    def test_serve_reports_errors_and_continues(self, mock_sleep):
        port = MagicMock()
        port.write.side_effect = [serial.SerialTimeoutException('Write timeout'), 2]
        stdin = io.StringIO('zz\n1b40\n1b40\n')
        stdout = io.StringIO()

        serial_worker.serve(port, stdin, stdout)

        lines = stdout.getvalue().splitlines()
        assert lines[0].startswith('ERR ')
        assert lines[1] == 'ERR Write timeout'
        assert lines[2] == 'OK 2'

    @patch('printer.serial_worker.serial.Serial')
    def test_open_port_keeps_line_up(self, mock_serial):
        port = serial_worker.open_port('/dev/cu.PT-280', 9600)

        assert port is mock_serial.return_value
        assert port.port == '/dev/cu.PT-280'
        assert port.baudrate == 9600
        assert port.hupcl is False
        port.open.assert_called_once()

    @patch('printer.serial_worker.time.sleep')
    def test_warm_up_sends_init(self, mock_sleep):
        port = MagicMock()
        serial_worker.warm_up(port)
        port.write.assert_called_once_with(b'\x1b@')

    @patch('printer.serial_worker.time.sleep')
    @patch('printer.serial_worker.open_port')
    def test_main_prints_ready_then_serves(self, mock_open_port, mock_sleep, capsys, monkeypatch):
        monkeypatch.setattr('sys.stdin', io.StringIO('1b40\n'))

        code = serial_worker.main(['--device', '/dev/cu.PT-280'])

        assert code == 0
        assert capsys.readouterr().out == 'READY\nOK 2\n'
        mock_open_port.return_value.close.assert_called_once()

    @patch('printer.serial_worker.open_port', side_effect=serial.SerialException('could not open port'))
    def test_main_without_port_never_reports_ready(self, mock_open_port, capsys):
        code = serial_worker.main(['--device', '/dev/cu.PT-280'])

        assert code == 1
        assert 'READY' not in capsys.readouterr().out
