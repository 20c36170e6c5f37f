"""Domain model for offline image baking.

These objects replace the loose shell variables (LOOP_DEV, BOOT_MNT, ...) of
a scripted bake with explicit, typed values owned by one pipeline run.
"""

from __future__ import annotations

import stat
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Optional


# ==============================================================================
# Block Device Domain
# ==============================================================================


class PartitionRole(Enum):
    """Role of a partition in the fixed two-partition layout."""

    BOOT = "boot"
    DATA = "data"

    @property
    def number(self) -> int:
        return 1 if self is PartitionRole.BOOT else 2


@dataclass
class BlockImageHandle:
    """A backing image file attached to a loop device."""

    backing_file: Path
    device: str  # e.g., "/dev/loop7"
    attached: bool = True

    @property
    def name(self) -> str:
        """Kernel name of the loop device (e.g., "loop7")."""
        return Path(self.device).name

    def mapper_path(self, role: PartitionRole) -> str:
        """Device-mapper node kpartx creates for a partition."""
        return f"/dev/mapper/{self.name}p{role.number}"


@dataclass
class PartitionMapping:
    """A partition sub-device exposed for a role, and where it is mounted."""

    role: PartitionRole
    device: str  # e.g., "/dev/mapper/loop7p2"
    mount_point: Optional[Path] = None
    mounted: bool = False


# ==============================================================================
# Partition Layout Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionExtent:
    """One partition table entry in sectors. ``end`` is inclusive."""

    number: int
    start: int
    size: int
    type_code: str = ""

    @property
    def end(self) -> int:
        return self.start + self.size - 1


@dataclass(frozen=True)
class PartitionPlan:
    """Computed layout: boot stays as-is, data fills the rest of the file.

    ``data_end`` is exclusive, so a data partition that consumes the whole
    file has ``data_end == total_sectors``.
    """

    boot_start: int
    boot_end: int
    data_start: int
    data_end: int
    total_sectors: int
    alignment: int

    @property
    def data_size(self) -> int:
        return self.data_end - self.data_start

    def violations(self) -> list[str]:
        """Return every broken layout invariant (empty when the plan is valid)."""
        problems = []
        if self.boot_start < 0 or self.boot_end < self.boot_start:
            problems.append(
                f"boot partition bounds are invalid ({self.boot_start}-{self.boot_end})"
            )
        if self.alignment <= 0:
            problems.append(f"alignment unit must be positive, got {self.alignment}")
        elif self.data_start % self.alignment:
            problems.append(
                f"data start {self.data_start} is not aligned to {self.alignment} sectors"
            )
        if self.data_start <= self.boot_end:
            problems.append(
                f"data start {self.data_start} overlaps boot partition ending at {self.boot_end}"
            )
        if self.data_start >= self.data_end:
            problems.append(
                f"data start {self.data_start} is not below data end {self.data_end}"
            )
        if self.data_end > self.total_sectors:
            problems.append(
                f"data end {self.data_end} exceeds total sectors {self.total_sectors}"
            )
        return problems


# ==============================================================================
# Archive Domain
# ==============================================================================


class EntryType(Enum):
    """File type of an archive member, derived from its mode bits."""

    REGULAR = "regular"
    DIRECTORY = "dir"
    SYMLINK = "symlink"
    CHAR_DEVICE = "chardev"
    BLOCK_DEVICE = "blockdev"
    FIFO = "fifo"
    SOCKET = "socket"

    @classmethod
    def from_mode(cls, mode: int) -> EntryType:
        fmt = stat.S_IFMT(mode)
        for mask, entry_type in _MODE_TYPES:
            if fmt == mask:
                return entry_type
        raise ValueError(f"Unknown file type in mode {mode:o}")


_MODE_TYPES = (
    (stat.S_IFREG, EntryType.REGULAR),
    (stat.S_IFDIR, EntryType.DIRECTORY),
    (stat.S_IFLNK, EntryType.SYMLINK),
    (stat.S_IFCHR, EntryType.CHAR_DEVICE),
    (stat.S_IFBLK, EntryType.BLOCK_DEVICE),
    (stat.S_IFIFO, EntryType.FIFO),
    (stat.S_IFSOCK, EntryType.SOCKET),
)


@dataclass
class ArchiveEntry:
    """One member of a newc cpio archive.

    Hard links share ``ino``; in the archive only one member of a link group
    carries the data, but after decoding every member holds the content.
    """

    path: str
    mode: int
    content: bytes = b""
    uid: int = 0
    gid: int = 0
    mtime: int = 0
    ino: int = 0
    nlink: int = 1
    rdev_major: int = 0
    rdev_minor: int = 0
    dev_major: int = 0
    dev_minor: int = 0

    @property
    def type(self) -> EntryType:
        return EntryType.from_mode(self.mode)

    @property
    def is_device(self) -> bool:
        return self.type in (EntryType.CHAR_DEVICE, EntryType.BLOCK_DEVICE)

    @property
    def is_hardlinked(self) -> bool:
        return self.type is not EntryType.DIRECTORY and self.nlink > 1

    @property
    def link_key(self) -> tuple[int, int, int]:
        """Identity of the inode this entry refers to inside the archive."""
        return (self.dev_major, self.dev_minor, self.ino)

    @property
    def permissions(self) -> int:
        return stat.S_IMODE(self.mode)

    def copy(self, **changes) -> ArchiveEntry:
        return replace(self, **changes)


@dataclass(frozen=True)
class ArchiveChange:
    """A requested modification of the embedded rootfs archive."""

    path: str
    content: Optional[bytes] = None
    mode: int = 0o644
    uid: int = 0
    gid: int = 0
    remove: bool = False


# ==============================================================================
# Pipeline State
# ==============================================================================


class PipelineState(Enum):
    """Lifecycle states of one bake run."""

    INIT = "init"
    IMAGE_ATTACHED = "image_attached"
    PARTITIONS_MAPPED = "partitions_mapped"
    BOOT_MOUNTED = "boot_mounted"
    MUTATING = "mutating"
    REMAPPED = "remapped"
    DATA_MOUNTED = "data_mounted"
    PROVISIONED = "provisioned"
    FINALIZING = "finalizing"
    ABORTING = "aborting"
    RELEASED = "released"


@dataclass
class NetworkConfig:
    """Network setup injected into the data partition."""

    kind: str = "ethernet"  # "wifi" or "ethernet"
    addressing: str = "dhcp"  # "dhcp" or "static"
    ssid: Optional[str] = None
    psk: Optional[str] = None
    country: str = "US"
    static_ip: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    dns: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> NetworkConfig:
        """Build from a settings dict, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__)
        return cls(**{key: value for key, value in data.items() if key in known})
