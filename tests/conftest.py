"""
Pytest configuration and shared fixtures for picore-baker tests.

Nothing here needs root: kernel interaction goes through a recording fake
command runner, and "mounted" partitions are plain directories.
"""

import stat
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from picore_baker.app.context import BakeOptions
from picore_baker.domain.models import ArchiveEntry
from picore_baker.storage.archive import cpio
from picore_baker.storage.commands import parse_progress_line
from picore_baker.storage.exceptions import CommandError
from picore_baker.storage.lifecycle import ResourceLifecycleManager


# ==============================================================================
# Fake Command Runner
# ==============================================================================


class FakeRunner:
    """Records commands and answers them from prefix-matched canned responses."""

    def __init__(self) -> None:
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.responses: Dict[tuple, dict] = {}
        self.missing_tools: set = set()
        self.progress_lines: List[str] = []

    def on(
        self,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        effect: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        self.responses[tuple(prefix)] = {
            "stdout": stdout,
            "stderr": stderr,
            "returncode": returncode,
            "effect": effect,
        }

    def _respond(self, command: List[str]) -> subprocess.CompletedProcess:
        best = None
        for prefix, response in self.responses.items():
            if tuple(command[: len(prefix)]) == prefix:
                if best is None or len(prefix) > len(best[0]):
                    best = (prefix, response)
        if best is None:
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")
        response = best[1]
        if response["effect"] is not None:
            response["effect"](command)
        return subprocess.CompletedProcess(
            command, response["returncode"], stdout=response["stdout"], stderr=response["stderr"]
        )

    def which(self, name: str) -> Optional[str]:
        if name in self.missing_tools:
            return None
        return f"/usr/sbin/{name}"

    def run(self, command, input_text=None, check=True) -> subprocess.CompletedProcess:
        command = list(command)
        self.commands.append(command)
        self.inputs.append(input_text)
        result = self._respond(command)
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stderr)
        return result

    def stream(self, command, progress_callback=None) -> subprocess.CompletedProcess:
        command = list(command)
        self.commands.append(command)
        self.inputs.append(None)
        result = self._respond(command)
        for line in self.progress_lines:
            update = parse_progress_line(line)
            if update and progress_callback:
                progress_callback(update)
        if result.returncode != 0:
            raise CommandError(command, result.returncode, result.stderr)
        return result

    def ran(self, *prefix: str) -> bool:
        return any(tuple(command[: len(prefix)]) == prefix for command in self.commands)

    def index_of(self, *prefix: str) -> int:
        for index, command in enumerate(self.commands):
            if tuple(command[: len(prefix)]) == prefix:
                return index
        raise AssertionError(f"Command {prefix} was not run")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Fake runner that hands out /dev/loop7 on attach."""
    runner = FakeRunner()
    runner.on("losetup", "--find", stdout="/dev/loop7\n")
    return runner


@pytest.fixture
def lifecycle(fake_runner) -> ResourceLifecycleManager:
    """Lifecycle manager whose partition nodes always exist and never sleeps."""
    return ResourceLifecycleManager(
        fake_runner,
        sleep=lambda seconds: None,
        node_exists=lambda path: True,
    )


# ==============================================================================
# Partition Table Fixtures
# ==============================================================================


SFDISK_DUMP = """label: dos
label-id: 0x5452574f
device: /dev/loop7
unit: sectors
sector-size: 512

/dev/loop7p1 : start=        8192, size=      198656, type=c
/dev/loop7p2 : start=      206848, size=       90112, type=83
"""

# Small layout used by the pipeline tests (4 MiB backing file)
SMALL_SFDISK_DUMP = """label: dos
device: /dev/loop7
unit: sectors
sector-size: 512

/dev/loop7p1 : start=        2048, size=        2048, type=c
/dev/loop7p2 : start=        4096, size=        2048, type=83
"""


@pytest.fixture
def sfdisk_dump() -> str:
    return SFDISK_DUMP


@pytest.fixture
def small_sfdisk_dump() -> str:
    return SMALL_SFDISK_DUMP


# ==============================================================================
# Archive Fixtures
# ==============================================================================


@pytest.fixture
def sample_entries() -> List[ArchiveEntry]:
    """
    Fixture providing a small rootfs with a hard-link pair, device nodes,
    a symlink and a FIFO, laid out the way ``find . | cpio`` writes it.
    """
    return [
        ArchiveEntry(path=".", mode=stat.S_IFDIR | 0o755, ino=100, nlink=6, mtime=1700000000),
        ArchiveEntry(path="bin", mode=stat.S_IFDIR | 0o755, ino=101, nlink=2, mtime=1700000000),
        ArchiveEntry(
            path="bin/busybox",
            mode=stat.S_IFREG | 0o4755,
            content=b"\x7fELF busybox",
            ino=102,
            nlink=2,
            mtime=1700000000,
        ),
        ArchiveEntry(
            path="bin/sh",
            mode=stat.S_IFREG | 0o4755,
            content=b"\x7fELF busybox",
            ino=102,
            nlink=2,
            mtime=1700000000,
        ),
        ArchiveEntry(path="dev", mode=stat.S_IFDIR | 0o755, ino=103, nlink=2, mtime=1700000000),
        ArchiveEntry(
            path="dev/console",
            mode=stat.S_IFCHR | 0o600,
            ino=104,
            rdev_major=5,
            rdev_minor=1,
            mtime=1700000000,
        ),
        ArchiveEntry(
            path="dev/loop0",
            mode=stat.S_IFBLK | 0o660,
            ino=105,
            gid=6,
            rdev_major=7,
            rdev_minor=0,
            mtime=1700000000,
        ),
        ArchiveEntry(path="dev/initctl", mode=stat.S_IFIFO | 0o600, ino=106, mtime=1700000000),
        ArchiveEntry(path="etc", mode=stat.S_IFDIR | 0o755, ino=107, nlink=2, mtime=1700000000),
        ArchiveEntry(
            path="etc/motd",
            mode=stat.S_IFREG | 0o644,
            content=b"Welcome to piCore\n",
            ino=108,
            mtime=1700000000,
        ),
        ArchiveEntry(
            path="lib",
            mode=stat.S_IFLNK | 0o777,
            content=b"usr/lib",
            ino=109,
            mtime=1700000000,
        ),
    ]


@pytest.fixture
def sample_archive(sample_entries) -> bytes:
    """Gzip-compressed newc archive of ``sample_entries``."""
    return cpio.dump(sample_entries)


@pytest.fixture
def boot_dir(tmp_path, sample_archive) -> Path:
    """A directory standing in for the mounted boot partition."""
    boot = tmp_path / "boot"
    boot.mkdir()
    (boot / "cmdline.txt").write_text(
        "console=tty1 root=/dev/ram0 elevator=deadline tce=mmcblk0p2 nortc\n",
        encoding="utf-8",
    )
    (boot / "rootfs-piCore-15.0.gz").write_bytes(sample_archive)
    return boot


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """A directory standing in for the mounted data partition."""
    data = tmp_path / "data"
    data.mkdir()
    return data


# ==============================================================================
# Options
# ==============================================================================


@pytest.fixture
def make_options(tmp_path):
    """Factory for BakeOptions with a 1 MiB source image grown to 4 MiB."""

    def factory(**overrides) -> BakeOptions:
        image = tmp_path / "piCore-15.0.0.img"
        if not image.exists():
            image.write_bytes(b"\0" * (1024 * 1024))
        out_dir = tmp_path / "out"
        out_dir.mkdir(exist_ok=True)
        values = dict(
            image=image,
            output=out_dir / "customized-piCore.img",
            target_bytes=4 * 1024 * 1024,
            sector_size=512,
            alignment=2048,
            archive_name="rootfs-piCore-15.0.gz",
            cmdline_file="cmdline.txt",
            locator_key="tce",
            data_fs_type="ext4",
            data_label=None,
            output_mode="duplicate",
            normalize_mtime=False,
            normalize_owner=False,
            map_retry_attempts=3,
            map_retry_delay=0.0,
            map_retry_max_delay=0.0,
            hostname="piCoreCustom",
            packages=("openssh.tcz", "openssl.tcz"),
            network=None,
            ssh_access="none",
            ssh_public_key=None,
            ssh_password=None,
            generate_host_keys=False,
            archive_changes=(),
        )
        values.update(overrides)
        return BakeOptions(**values)

    return factory
