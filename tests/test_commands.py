"""Tests for storage/commands.py - external command execution."""

import io
import subprocess
from unittest.mock import Mock, patch

import pytest

from picore_baker.storage.commands import CommandRunner, parse_progress_line
from picore_baker.storage.exceptions import CommandError


class TestParseProgressLine:
    """Tests for parse_progress_line()."""

    def test_dd_progress_line(self):
        update = parse_progress_line(
            "104857600 bytes (105 MB, 100 MiB) copied, 2 s, 52.4 MB/s\n"
        )

        assert update.bytes_copied == 104857600
        assert update.rate == pytest.approx(52.4e6)
        assert update.line.endswith("52.4 MB/s")

    def test_line_without_rate(self):
        update = parse_progress_line("512 bytes copied")

        assert update.bytes_copied == 512
        assert update.rate is None

    def test_unrelated_line(self):
        assert parse_progress_line("1+0 records in") is None


class TestRun:
    """Tests for CommandRunner.run()."""

    @patch("picore_baker.storage.commands.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(
            ["losetup", "-a"], 0, stdout="/dev/loop0\n", stderr=""
        )

        result = CommandRunner().run(["losetup", "-a"])

        assert result.stdout == "/dev/loop0\n"
        args, kwargs = mock_run.call_args
        assert args[0] == ["losetup", "-a"]
        assert kwargs["capture_output"] is True
        assert kwargs["start_new_session"] is True

    @patch("picore_baker.storage.commands.subprocess.run")
    def test_input_text(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 0, stdout="", stderr="")

        CommandRunner().run(["sfdisk", "/dev/loop0"], input_text="start=2048\n")

        assert mock_run.call_args.kwargs["input"] == "start=2048\n"

    @patch("picore_baker.storage.commands.subprocess.run")
    def test_failure_raises(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(
            ["kpartx"], 1, stdout="", stderr="device busy\n"
        )

        with pytest.raises(CommandError) as exc_info:
            CommandRunner().run(["kpartx", "-d", "/dev/loop0"])

        assert exc_info.value.returncode == 1
        assert exc_info.value.stderr == "device busy"
        assert "kpartx -d /dev/loop0" in str(exc_info.value)

    @patch("picore_baker.storage.commands.subprocess.run")
    def test_failure_without_check(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 1, stdout="", stderr="no such")

        result = CommandRunner().run(["dmsetup", "remove", "loop0p2"], check=False)

        assert result.returncode == 1

    @patch("picore_baker.storage.commands.subprocess.run")
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("No such file: kpartx")

        with pytest.raises(CommandError) as exc_info:
            CommandRunner().run(["kpartx", "-a", "/dev/loop0"])

        assert exc_info.value.returncode == 127


class TestStream:
    """Tests for CommandRunner.stream()."""

    def _process(self, stderr_text, returncode=0):
        process = Mock()
        process.stderr = io.StringIO(stderr_text)
        process.stdout = io.StringIO("")
        process.returncode = returncode
        return process

    @patch("picore_baker.storage.commands.subprocess.Popen")
    def test_progress_callback(self, mock_popen):
        mock_popen.return_value = self._process(
            "1048576 bytes (1.0 MB, 1.0 MiB) copied, 1 s, 1.0 MB/s\n"
            "2097152 bytes (2.1 MB, 2.0 MiB) copied, 2 s, 1.0 MB/s\n"
            "2+0 records in\n"
        )
        updates = []

        CommandRunner().stream(["dd", "if=/dev/loop0", "of=out.img"], updates.append)

        assert [update.bytes_copied for update in updates] == [1048576, 2097152]

    @patch("picore_baker.storage.commands.subprocess.Popen")
    def test_failure_raises(self, mock_popen):
        mock_popen.return_value = self._process("dd: error writing: No space left\n", 1)

        with pytest.raises(CommandError, match="No space left"):
            CommandRunner().stream(["dd", "if=/dev/loop0", "of=out.img"])


class TestWhich:
    @patch("picore_baker.storage.commands.shutil.which", return_value="/usr/sbin/kpartx")
    def test_which(self, mock_which):
        assert CommandRunner().which("kpartx") == "/usr/sbin/kpartx"
        mock_which.assert_called_once_with("kpartx")
