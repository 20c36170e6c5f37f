"""Data partition formatting and layout.

After the partition table is rewritten the data partition is formatted,
mounted, given the directory skeleton piCore expects for persistence, and
its UUID is recorded on the boot command line so the target finds its
extensions (``tce=UUID=...``).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from picore_baker.domain.models import PartitionMapping
from picore_baker.logging import LoggerFactory

from .commands import CommandRunner
from .exceptions import CommandError, ConfigInjectionError, FormatError
from .lifecycle import ResourceLifecycleManager


log = LoggerFactory.for_provision()

# piCore's default user "tc" and group "staff"
TC_UID = 1001
STAFF_GID = 50

# (relative path, mode, owned by tc)
SKELETON = (
    ("home/tc", 0o755, True),
    ("opt", 0o755, False),
    ("etc", 0o755, False),
    ("tmp", 0o1777, False),
    ("tce/optional", 0o755, False),
)


def rewrite_locator_tokens(cmdline: str, key: str, value: str) -> str:
    """Return ``cmdline`` with exactly one ``key=value`` token.

    Existing ``key=`` tokens collapse into one at the position of the first;
    without any, the token is appended.
    """
    prefix = f"{key}="
    tokens = cmdline.split()
    positions = [index for index, token in enumerate(tokens) if token.startswith(prefix)]
    replacement = f"{prefix}{value}"
    if not positions:
        tokens.append(replacement)
    else:
        first = positions[0]
        tokens = [
            token
            for index, token in enumerate(tokens)
            if index == first or not token.startswith(prefix)
        ]
        tokens[first] = replacement
    return " ".join(tokens)


class FilesystemProvisioner:
    """Formats and lays out the data partition."""

    def __init__(
        self,
        runner: CommandRunner,
        lifecycle: ResourceLifecycleManager,
        *,
        fs_type: str = "ext4",
        label: Optional[str] = None,
        cmdline_file: str = "cmdline.txt",
        locator_key: str = "tce",
    ) -> None:
        self.runner = runner
        self.lifecycle = lifecycle
        self.fs_type = fs_type
        self.label = label
        self.cmdline_file = cmdline_file
        self.locator_key = locator_key

    def format(self, mapping: PartitionMapping) -> None:
        """Create a fresh filesystem on ``mapping``. Destructive; never retried."""
        if mapping.mounted:
            raise FormatError(
                f"Refusing to format mounted partition {mapping.device}",
                device=mapping.device,
            )
        command = [f"mkfs.{self.fs_type}", "-F"]
        if self.label:
            command.extend(["-L", self.label])
        command.append(mapping.device)
        log.info(f"Formatting {mapping.device} as {self.fs_type}")
        try:
            self.runner.run(command)
        except CommandError as error:
            raise FormatError(
                f"mkfs.{self.fs_type} failed on {mapping.device}: {error.stderr}",
                device=mapping.device,
            ) from error

    def mount(self, mapping: PartitionMapping, target: Path) -> PartitionMapping:
        return self.lifecycle.mount(mapping, target)

    def read_uuid(self, mapping: PartitionMapping) -> str:
        try:
            result = self.runner.run(
                ["blkid", "-s", "UUID", "-o", "value", mapping.device]
            )
        except CommandError as error:
            raise FormatError(
                f"blkid failed on {mapping.device}: {error.stderr}", device=mapping.device
            ) from error
        uuid = result.stdout.strip()
        if not uuid:
            raise FormatError(f"No filesystem UUID on {mapping.device}", device=mapping.device)
        log.debug(f"{mapping.device} has UUID {uuid}")
        return uuid

    def ensure_skeleton(self, target: Path) -> list[Path]:
        """Create the persistence directory layout. Existing directories are left alone.

        Returns:
            Directories that were created
        """
        target = Path(target)
        created = []
        for relative, mode, owned_by_tc in SKELETON:
            path = target / relative
            if path.is_dir():
                continue
            try:
                path.mkdir(parents=True)
                # chmod after mkdir: the umask would strip the sticky and write bits
                os.chmod(path, mode)
                if owned_by_tc:
                    os.chown(path, TC_UID, STAFF_GID)
            except OSError as error:
                raise ConfigInjectionError(f"Cannot create {relative}: {error}") from error
            created.append(path)
        if created:
            log.debug(
                "Created skeleton directories: "
                + ", ".join(str(path.relative_to(target)) for path in created)
            )
        return created

    def record_device_locator(self, boot_target: Path, uuid: str) -> str:
        """Point the boot command line at the data partition by UUID."""
        cmdline_path = Path(boot_target) / self.cmdline_file
        try:
            current = cmdline_path.read_text(encoding="utf-8")
        except OSError as error:
            raise ConfigInjectionError(
                f"Cannot read boot command line {cmdline_path}: {error}"
            ) from error
        updated = rewrite_locator_tokens(current, self.locator_key, f"UUID={uuid}")
        try:
            cmdline_path.write_text(updated + "\n", encoding="utf-8")
        except OSError as error:
            raise ConfigInjectionError(
                f"Cannot write boot command line {cmdline_path}: {error}"
            ) from error
        log.info(f"Recorded {self.locator_key}=UUID={uuid} in {self.cmdline_file}")
        return updated
