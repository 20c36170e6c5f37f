"""newc cpio codec.

Each member is a 110-byte ASCII header (magic ``070701`` followed by thirteen
8-digit hex fields), the NUL-terminated name padded to 4 bytes, then the data
padded to 4 bytes. The archive ends with a ``TRAILER!!!`` member and is
padded to a 512-byte block like GNU cpio output.

Hard-linked files share an inode number; only one member of a link group
carries the data (the last one, as GNU cpio writes it).
"""

from __future__ import annotations

import gzip
import zlib
from typing import Iterable

from picore_baker.domain.models import ArchiveEntry, EntryType

from ..exceptions import ArchiveError


NEWC_MAGIC = b"070701"
NEWC_CRC_MAGIC = b"070702"
HEADER_SIZE = 110
TRAILER_NAME = "TRAILER!!!"
BLOCK_SIZE = 512

_FIELDS = (
    "ino",
    "mode",
    "uid",
    "gid",
    "nlink",
    "mtime",
    "filesize",
    "devmajor",
    "devminor",
    "rdevmajor",
    "rdevminor",
    "namesize",
    "check",
)


def _pad4(buffer: bytearray) -> None:
    padding = (-len(buffer)) % 4
    if padding:
        buffer.extend(b"\0" * padding)


def _align4(offset: int) -> int:
    return (offset + 3) & ~3


def normalize_path(name: str) -> str:
    """Canonical member name: no leading ``./`` or ``/``; the root is ``.``."""
    while name.startswith("./"):
        name = name[2:]
    name = name.lstrip("/").rstrip("/")
    return name or "."


def _encode_header(name: bytes, **values: int) -> bytes:
    values.setdefault("check", 0)
    values["namesize"] = len(name) + 1
    fields = []
    for field in _FIELDS:
        value = values.get(field, 0)
        if value < 0 or value > 0xFFFFFFFF:
            raise ArchiveError(f"Field {field}={value} out of range for {name!r}")
        fields.append(f"{value:08x}")
    return NEWC_MAGIC + "".join(fields).encode("ascii")


def _decode_header(data: bytes, offset: int) -> dict[str, int]:
    header = data[offset : offset + HEADER_SIZE]
    if len(header) < HEADER_SIZE:
        raise ArchiveError(f"Truncated cpio header at offset {offset}")
    magic = header[:6]
    if magic not in (NEWC_MAGIC, NEWC_CRC_MAGIC):
        raise ArchiveError(f"Bad cpio magic {magic!r} at offset {offset}")
    values = {}
    for index, field in enumerate(_FIELDS):
        start = 6 + index * 8
        try:
            values[field] = int(header[start : start + 8], 16)
        except ValueError as error:
            raise ArchiveError(
                f"Invalid cpio header field {field} at offset {offset}"
            ) from error
    return values


def decode(data: bytes) -> list[ArchiveEntry]:
    """Decode an uncompressed newc archive.

    Archives concatenated one after another, as the kernel accepts them for an
    initramfs, are decoded in order and NUL padding between them is skipped.
    Inode numbers of later archives are shifted past those of earlier ones so
    hard-link groups never merge across archive boundaries.
    """
    entries: list[ArchiveEntry] = []
    offset = 0
    ino_base = 0
    while True:
        segment, offset = _decode_segment(data, offset, ino_base)
        entries.extend(segment)
        ino_base = max([ino_base] + [entry.ino + 1 for entry in segment])
        offset = len(data) - len(data[offset:].lstrip(b"\0"))
        if offset >= len(data):
            return entries


def _decode_segment(
    data: bytes, offset: int, ino_base: int
) -> tuple[list[ArchiveEntry], int]:
    """Decode one archive up to and including its trailer."""
    entries: list[ArchiveEntry] = []
    while True:
        values = _decode_header(data, offset)
        name_start = offset + HEADER_SIZE
        name_end = name_start + values["namesize"]
        if values["namesize"] == 0 or name_end > len(data):
            raise ArchiveError(f"Truncated cpio member name at offset {offset}")
        name = data[name_start : name_end - 1].decode("utf-8", errors="surrogateescape")
        data_start = _align4(name_end)
        data_end = data_start + values["filesize"]
        if data_end > len(data):
            raise ArchiveError(f"Truncated data for cpio member {name}")
        member_offset = offset
        offset = _align4(data_end)

        if name == TRAILER_NAME:
            break
        try:
            EntryType.from_mode(values["mode"])
        except ValueError as error:
            raise ArchiveError(
                f"Unknown file type {values['mode']:o} for cpio member {name} "
                f"at offset {member_offset}"
            ) from error
        entries.append(
            ArchiveEntry(
                path=name,
                mode=values["mode"],
                content=bytes(data[data_start:data_end]),
                uid=values["uid"],
                gid=values["gid"],
                mtime=values["mtime"],
                ino=values["ino"] + ino_base,
                nlink=values["nlink"],
                rdev_major=values["rdevmajor"],
                rdev_minor=values["rdevminor"],
                dev_major=values["devmajor"],
                dev_minor=values["devminor"],
            )
        )

    _share_link_content(entries)
    return entries, offset


def _share_link_content(entries: list[ArchiveEntry]) -> None:
    """Give every member of a hard-link group the group's data."""
    content: dict[tuple[int, int, int], bytes] = {}
    for entry in entries:
        if entry.is_hardlinked and entry.content:
            content[entry.link_key] = entry.content
    for entry in entries:
        if entry.is_hardlinked and entry.link_key in content:
            entry.content = content[entry.link_key]


def link_groups(entries: Iterable[ArchiveEntry]) -> list[list[str]]:
    """Paths of each hard-link group with more than one member, in archive order."""
    groups: dict[tuple[int, int, int], list[str]] = {}
    for entry in entries:
        if entry.is_hardlinked:
            groups.setdefault(entry.link_key, []).append(normalize_path(entry.path))
    return [paths for paths in groups.values() if len(paths) > 1]


def encode(
    entries: Iterable[ArchiveEntry],
    *,
    normalize_mtime: bool = False,
    normalize_owner: bool = False,
) -> bytes:
    """Encode entries as a deterministic newc archive.

    Inodes are renumbered from 1 in order of first appearance, keeping
    hard-link groups together, and the containing filesystem's device numbers
    are zeroed; the output depends only on the entries.
    """
    entries = list(entries)
    inodes: dict[tuple, int] = {}
    group_sizes: dict[tuple[int, int, int], int] = {}
    last_member: dict[tuple[int, int, int], int] = {}
    for index, entry in enumerate(entries):
        if entry.is_hardlinked:
            group_sizes[entry.link_key] = group_sizes.get(entry.link_key, 0) + 1
            last_member[entry.link_key] = index

    archive = bytearray()
    next_ino = 1
    for index, entry in enumerate(entries):
        key = entry.link_key if entry.is_hardlinked else ("entry", index)
        if key not in inodes:
            inodes[key] = next_ino
            next_ino += 1

        nlink = entry.nlink
        data = entry.content
        if entry.is_hardlinked:
            nlink = group_sizes[entry.link_key]
            if last_member[entry.link_key] != index:
                data = b""
        elif entry.type is not EntryType.DIRECTORY:
            nlink = 1
        if entry.type not in (EntryType.REGULAR, EntryType.SYMLINK):
            data = b""

        name = entry.path.encode("utf-8", errors="surrogateescape")
        archive.extend(
            _encode_header(
                name,
                ino=inodes[key],
                mode=entry.mode,
                uid=0 if normalize_owner else entry.uid,
                gid=0 if normalize_owner else entry.gid,
                nlink=nlink,
                mtime=0 if normalize_mtime else entry.mtime,
                filesize=len(data),
                rdevmajor=entry.rdev_major,
                rdevminor=entry.rdev_minor,
            )
        )
        archive.extend(name + b"\0")
        _pad4(archive)
        archive.extend(data)
        _pad4(archive)

    trailer = TRAILER_NAME.encode("ascii")
    archive.extend(_encode_header(trailer, nlink=1))
    archive.extend(trailer + b"\0")
    _pad4(archive)
    padding = (-len(archive)) % BLOCK_SIZE
    archive.extend(b"\0" * padding)
    return bytes(archive)


def decompress(data: bytes) -> bytes:
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as error:
        raise ArchiveError(f"Archive is not valid gzip data: {error}") from error


def compress(data: bytes) -> bytes:
    """gzip at level 9 with a zero header mtime so output is reproducible."""
    return gzip.compress(data, compresslevel=9, mtime=0)


def load(data: bytes) -> list[ArchiveEntry]:
    """Decode a gzip-compressed newc archive."""
    return decode(decompress(data))


def dump(entries: Iterable[ArchiveEntry], **options: bool) -> bytes:
    """Encode and gzip ``entries``."""
    return compress(encode(entries, **options))
