"""External command execution for the bake pipeline.

Every tool the pipeline drives (losetup, kpartx, sfdisk, mkfs.ext4, blkid,
dd, ...) goes through a :class:`CommandRunner`. Components receive the runner
as a constructor argument, so tests substitute a recording fake and nothing
needs root.

Commands are always argument lists, never shell strings. Children start in a
new session: a Ctrl-C on the terminal reaches only this process, which then
stops at the next step boundary instead of killing a half-finished mkfs or
partition table write.
"""

from __future__ import annotations

import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from picore_baker.logging import get_logger

from .exceptions import CommandError


log = get_logger(source="command", tags=["command"])

_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
_RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([kMG]B)/s")
_RATE_UNITS = {"kB": 1000, "MB": 1000**2, "GB": 1000**3}


@dataclass(frozen=True)
class ProgressUpdate:
    """A parsed dd progress line."""

    bytes_copied: int
    rate: Optional[float] = None  # bytes per second
    line: str = ""


def parse_progress_line(line: str) -> Optional[ProgressUpdate]:
    """Parse a ``dd status=progress`` line into a :class:`ProgressUpdate`."""
    bytes_match = _BYTES_PATTERN.search(line)
    if not bytes_match:
        return None
    rate = None
    rate_match = _RATE_PATTERN.search(line)
    if rate_match:
        rate = float(rate_match.group(1)) * _RATE_UNITS[rate_match.group(2)]
    return ProgressUpdate(
        bytes_copied=int(bytes_match.group(1)), rate=rate, line=line.strip()
    )


class CommandRunner:
    """Synchronous external-process capability."""

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        command: Sequence[str],
        input_text: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a command and raise CommandError if it fails (when check is set)."""
        command = list(command)
        log.debug(f"Running command: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                input=input_text,
                text=True,
                capture_output=True,
                start_new_session=True,
            )
        except OSError as error:
            raise CommandError(command, 127, str(error)) from error
        if result.stdout:
            log.trace(f"stdout: {result.stdout.strip()}")
        if result.stderr:
            log.trace(f"stderr: {result.stderr.strip()}")
        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            stdout = (result.stdout or "").strip()
            raise CommandError(command, result.returncode, stderr or stdout)
        log.debug(f"Command completed with return code {result.returncode}")
        return result

    def stream(
        self,
        command: Sequence[str],
        progress_callback: Optional[Callable[[ProgressUpdate], None]] = None,
    ) -> subprocess.CompletedProcess:
        """Run a long command, feeding parsed stderr progress lines to a callback."""
        command = list(command)
        log.debug(f"Running command: {' '.join(command)}")
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as error:
            raise CommandError(command, 127, str(error)) from error

        stderr_lines = []
        # Text mode splits dd's carriage-return updates into separate lines
        for line in process.stderr:
            stderr_lines.append(line)
            log.bind(tags=["progress"]).trace(f"stderr: {line.strip()}")
            update = parse_progress_line(line)
            if update and progress_callback:
                progress_callback(update)
        stdout_data = process.stdout.read() if process.stdout else ""
        process.wait()
        stderr_output = "".join(stderr_lines)
        if process.returncode != 0:
            raise CommandError(
                command, process.returncode, stderr_output or stdout_data
            )
        log.debug(f"Command completed with return code {process.returncode}")
        return subprocess.CompletedProcess(
            command, process.returncode, stdout=stdout_data, stderr=stderr_output
        )
