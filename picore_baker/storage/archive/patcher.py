"""In-place patching of the rootfs archive on the boot partition.

The archive is decoded in memory, modified, re-encoded deterministically and
verified before it replaces the original. The original file is only touched
by a final atomic rename, so any failure leaves it exactly as it was.
"""

from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from picore_baker.domain.models import ArchiveChange, ArchiveEntry, EntryType
from picore_baker.logging import LoggerFactory

from ..exceptions import ArchiveError
from . import cpio


log = LoggerFactory.for_archive()

EntriesOrBytes = Union[Sequence[ArchiveEntry], bytes]


def _resolve_inside(root: Path, name: str) -> Path:
    """Path of archive member ``name`` below ``root``, refusing to escape it."""
    relative = cpio.normalize_path(name)
    if relative == ".":
        return root
    parts = relative.split("/")
    if ".." in parts:
        raise ArchiveError(f"Archive member escapes extraction root: {name}")
    return root.joinpath(*parts)


def materialize(entries: Iterable[ArchiveEntry], root: Path) -> None:
    """Write decoded entries as a real directory tree below ``root``."""
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    as_root = os.geteuid() == 0
    linked: dict[tuple[int, int, int], Path] = {}
    directories: list[tuple[Path, ArchiveEntry]] = []

    for entry in entries:
        path = _resolve_inside(root, entry.path)
        entry_type = entry.type
        path.parent.mkdir(parents=True, exist_ok=True)

        if entry_type is EntryType.DIRECTORY:
            path.mkdir(exist_ok=True)
            directories.append((path, entry))
            continue
        if entry.is_hardlinked and entry.link_key in linked:
            os.link(linked[entry.link_key], path)
            continue

        if entry_type is EntryType.REGULAR:
            path.write_bytes(entry.content)
            os.chmod(path, entry.permissions)
        elif entry_type is EntryType.SYMLINK:
            os.symlink(os.fsdecode(entry.content), path)
        else:
            os.mknod(path, entry.mode, os.makedev(entry.rdev_major, entry.rdev_minor))
        if as_root:
            os.lchown(path, entry.uid, entry.gid)
        if entry_type is not EntryType.SYMLINK:
            os.utime(path, (entry.mtime, entry.mtime))
        if entry.is_hardlinked:
            linked[entry.link_key] = path

    # Deepest first so setting a child's times does not disturb its parent
    for path, entry in reversed(directories):
        os.chmod(path, entry.permissions)
        if as_root:
            os.lchown(path, entry.uid, entry.gid)
        os.utime(path, (entry.mtime, entry.mtime))


def scan_tree(root: Path) -> list[ArchiveEntry]:
    """Read a directory tree into entries, root first, then sorted depth-first."""
    root = Path(root)
    entries = [_entry_from_path(root, ".")]
    for current, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current_path = Path(current)
        names = sorted(dirnames + filenames)
        for name in names:
            path = current_path / name
            entries.append(_entry_from_path(path, path.relative_to(root).as_posix()))
    # os.walk visits directories after listing their parent; restore path order
    entries[1:] = sorted(entries[1:], key=lambda entry: entry.path.split("/"))
    return entries


def _apply_layout(scanned: Sequence[ArchiveEntry], names: Sequence[str]) -> list[ArchiveEntry]:
    """Order scanned entries by the original member names."""
    remaining = {entry.path: entry for entry in scanned}
    prefix = "./" if any(name.startswith("./") for name in names) else ""
    ordered = []
    for name in names:
        entry = remaining.pop(cpio.normalize_path(name), None)
        if entry is not None:
            ordered.append(entry.copy(path=name))
    # The root is only a member when the archive had one
    remaining.pop(".", None)
    ordered.extend(entry.copy(path=prefix + path) for path, entry in remaining.items())
    return ordered


def _entry_from_path(path: Path, name: str) -> ArchiveEntry:
    info = os.lstat(path)
    content = b""
    if stat.S_ISREG(info.st_mode):
        content = path.read_bytes()
    elif stat.S_ISLNK(info.st_mode):
        content = os.fsencode(os.readlink(path))
    is_device = stat.S_ISCHR(info.st_mode) or stat.S_ISBLK(info.st_mode)
    return ArchiveEntry(
        path=name,
        mode=info.st_mode,
        content=content,
        uid=info.st_uid,
        gid=info.st_gid,
        mtime=int(info.st_mtime),
        ino=info.st_ino,
        nlink=info.st_nlink,
        rdev_major=os.major(info.st_rdev) if is_device else 0,
        rdev_minor=os.minor(info.st_rdev) if is_device else 0,
        dev_major=os.major(info.st_dev),
        dev_minor=os.minor(info.st_dev),
    )


def _summarize(entries: Sequence[ArchiveEntry]) -> dict[str, tuple]:
    summary = {}
    for entry in entries:
        device = (entry.rdev_major, entry.rdev_minor) if entry.is_device else None
        summary[cpio.normalize_path(entry.path)] = (entry.type, device)
    return summary


def _link_group_set(entries: Sequence[ArchiveEntry]) -> set[frozenset[str]]:
    return {frozenset(group) for group in cpio.link_groups(entries)}


class ArchivePatcher:
    """Extracts, modifies, repacks and replaces the embedded rootfs archive."""

    def __init__(self, *, normalize_mtime: bool = False, normalize_owner: bool = False):
        self.normalize_mtime = normalize_mtime
        self.normalize_owner = normalize_owner
        # Member names per unpacked tree, in archive order
        self._layouts: dict[Path, list[str]] = {}

    def extract(self, path: Path, work_dir: Optional[Path] = None) -> list[ArchiveEntry]:
        """Decode the archive at ``path``; optionally also unpack it to ``work_dir``."""
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as error:
            raise ArchiveError(f"Cannot read archive: {error}", path=str(path)) from error
        entries = cpio.load(data)
        log.info(f"Extracted {len(entries)} entries from {path.name}")
        if work_dir is not None:
            try:
                materialize(entries, work_dir)
            except OSError as error:
                raise ArchiveError(
                    f"Cannot unpack archive into {work_dir}: {error}", path=str(path)
                ) from error
            self._layouts[Path(work_dir).resolve()] = [entry.path for entry in entries]
        return entries

    def inject_or_modify(
        self, entries: Sequence[ArchiveEntry], changes: Iterable[ArchiveChange]
    ) -> list[ArchiveEntry]:
        """Apply ``changes`` to a copy of ``entries``.

        Modified files keep their position and leave any hard-link group they
        belonged to. New files and missing parent directories are appended.
        """
        result = [entry.copy() for entry in entries]
        prefix = "./" if any(entry.path.startswith("./") for entry in result) else ""

        for change in changes:
            target = cpio.normalize_path(change.path)
            if target == ".":
                raise ArchiveError("Cannot modify the archive root")

            if change.remove:
                before = len(result)
                result = [
                    entry
                    for entry in result
                    if not self._within(cpio.normalize_path(entry.path), target)
                ]
                log.debug(f"Removed {before - len(result)} entries under {target}")
                continue
            if change.content is None:
                raise ArchiveError(f"Change for {target} has neither content nor removal")

            existing = self._find(result, target)
            if existing is not None:
                entry = result[existing]
                if entry.type is EntryType.DIRECTORY:
                    raise ArchiveError(f"Cannot replace directory {target} with a file")
                result[existing] = entry.copy(
                    mode=stat.S_IFREG | change.mode,
                    content=change.content,
                    uid=change.uid,
                    gid=change.gid,
                    nlink=1,
                    rdev_major=0,
                    rdev_minor=0,
                )
                log.debug(f"Modified {target}")
                continue

            parts = target.split("/")
            for depth in range(1, len(parts)):
                parent = "/".join(parts[:depth])
                found = self._find(result, parent)
                if found is None:
                    result.append(
                        ArchiveEntry(path=prefix + parent, mode=stat.S_IFDIR | 0o755, nlink=2)
                    )
                elif result[found].type is not EntryType.DIRECTORY:
                    raise ArchiveError(f"Parent {parent} of {target} is not a directory")
            result.append(
                ArchiveEntry(
                    path=prefix + target,
                    mode=stat.S_IFREG | change.mode,
                    content=change.content,
                    uid=change.uid,
                    gid=change.gid,
                )
            )
            log.debug(f"Added {target}")
        return result

    def repack(self, entries: Sequence[ArchiveEntry]) -> bytes:
        """Deterministically encode and compress ``entries``."""
        return cpio.dump(
            entries,
            normalize_mtime=self.normalize_mtime,
            normalize_owner=self.normalize_owner,
        )

    def repack_tree(self, work_dir: Path) -> bytes:
        """Repack an unpacked tree, as ``find . | cpio -o -H newc | gzip -9`` would.

        A tree this patcher unpacked keeps the archive's member names and order;
        files added since are appended and removed ones are dropped.
        """
        try:
            entries = scan_tree(work_dir)
        except OSError as error:
            raise ArchiveError(f"Cannot read tree {work_dir}: {error}") from error
        names = self._layouts.get(Path(work_dir).resolve())
        if names is not None:
            entries = _apply_layout(entries, names)
        return self.repack(entries)

    def replace(self, boot_mount: Path, old_path: Union[Path, str], new_bytes: bytes) -> Path:
        """Atomically swap in ``new_bytes`` for the archive at ``old_path``."""
        target = Path(boot_mount) / old_path
        if not new_bytes:
            raise ArchiveError("Refusing to replace archive with empty data", path=str(target))
        cpio.load(new_bytes)

        staging = target.with_name(target.name + ".new")
        try:
            with staging.open("wb") as handle:
                handle.write(new_bytes)
                handle.flush()
                os.fsync(handle.fileno())
            if staging.stat().st_size == 0:
                raise ArchiveError("Staged archive is empty", path=str(staging))
            os.replace(staging, target)
            self._fsync_dir(target.parent)
        except Exception as error:
            staging.unlink(missing_ok=True)
            if isinstance(error, OSError):
                raise ArchiveError(
                    f"Failed to replace archive: {error}", path=str(target)
                ) from error
            raise
        log.info(f"Replaced {target.name} ({len(new_bytes)} bytes)")
        return target

    def patch(
        self, boot_mount: Path, archive_name: str, changes: Iterable[ArchiveChange]
    ) -> Path:
        """Extract, modify, repack, verify and replace the archive."""
        archive_path = Path(boot_mount) / archive_name
        if not archive_path.is_file():
            raise ArchiveError(f"Archive {archive_name} not found", path=str(archive_path))
        entries = self.extract(archive_path)
        patched = self.inject_or_modify(entries, list(changes))
        new_bytes = self.repack(patched)
        differences = self.verify_roundtrip(patched, new_bytes)
        if differences:
            raise ArchiveError(
                "Repacked archive does not match: " + "; ".join(differences[:5]),
                path=str(archive_path),
            )
        return self.replace(boot_mount, archive_name, new_bytes)

    def verify_roundtrip(self, original: EntriesOrBytes, repacked: EntriesOrBytes) -> list[str]:
        """Compare paths, types, device numbers and hard-link groups.

        Returns:
            Human-readable differences; empty when the archives agree
        """
        left = cpio.load(original) if isinstance(original, bytes) else list(original)
        right = cpio.load(repacked) if isinstance(repacked, bytes) else list(repacked)
        left_summary = _summarize(left)
        right_summary = _summarize(right)

        differences = []
        for path in sorted(left_summary.keys() - right_summary.keys()):
            differences.append(f"missing {path}")
        for path in sorted(right_summary.keys() - left_summary.keys()):
            differences.append(f"unexpected {path}")
        for path in sorted(left_summary.keys() & right_summary.keys()):
            left_type, left_device = left_summary[path]
            right_type, right_device = right_summary[path]
            if left_type is not right_type:
                differences.append(f"{path}: type {left_type.value} != {right_type.value}")
            elif left_device != right_device:
                differences.append(f"{path}: device {left_device} != {right_device}")
        if _link_group_set(left) != _link_group_set(right):
            differences.append("hard-link groups differ")
        return differences

    @staticmethod
    def _within(path: str, target: str) -> bool:
        return path == target or path.startswith(target + "/")

    @staticmethod
    def _find(entries: Sequence[ArchiveEntry], target: str) -> Optional[int]:
        for index, entry in enumerate(entries):
            if cpio.normalize_path(entry.path) == target:
                return index
        return None

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
