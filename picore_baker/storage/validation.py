"""Precondition checks run before any kernel resource is acquired.

Every check raises :class:`PreconditionError` rather than returning a
boolean, so the pipeline fails before anything irreversible happens.

Example:
    from picore_baker.storage.validation import validate_bake_operation

    validate_bake_operation(options, runner)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from .commands import CommandRunner
from .exceptions import PreconditionError


BASE_TOOLS = ("losetup", "kpartx", "dmsetup", "sfdisk", "blkid", "mount", "umount", "sync")
REREAD_TOOLS = ("partprobe", "blockdev")


def required_tools(fs_type: str = "ext4", mode: str = "duplicate", host_keys: bool = False) -> list[str]:
    """Host tools a bake needs; ``host_keys`` adds ssh-keygen."""
    tools = list(BASE_TOOLS)
    tools.append(f"mkfs.{fs_type}")
    if mode == "duplicate":
        tools.append("dd")
    if host_keys:
        tools.append("ssh-keygen")
    return tools


def validate_root(geteuid: Optional[Callable[[], int]] = None) -> None:
    """Loop devices, device-mapper and mounts all need root."""
    geteuid = geteuid or os.geteuid
    if geteuid() != 0:
        raise PreconditionError("Root privileges are required (run with sudo)")


def validate_tools(runner: CommandRunner, tools: Iterable[str]) -> None:
    missing = [tool for tool in tools if not runner.which(tool)]
    if not any(runner.which(tool) for tool in REREAD_TOOLS):
        missing.append(" or ".join(REREAD_TOOLS))
    if missing:
        raise PreconditionError(f"Required tools not found: {', '.join(missing)}")


def validate_input_image(image: Path) -> None:
    image = Path(image)
    if not image.is_file():
        raise PreconditionError(f"Image file not found: {image}")
    if image.stat().st_size == 0:
        raise PreconditionError(f"Image file is empty: {image}")


def validate_output_absent(output: Path) -> None:
    if Path(output).exists():
        raise PreconditionError(f"Output already exists: {output}")


def validate_target_size(image: Path, target_bytes: int, sector_size: int = 512) -> None:
    """The data partition only grows: the target may not be below the source size."""
    current = Path(image).stat().st_size
    if target_bytes < current:
        raise PreconditionError(
            f"Target size {target_bytes} bytes is smaller than the image ({current} bytes)"
        )
    if target_bytes % sector_size:
        raise PreconditionError(
            f"Target size {target_bytes} is not a multiple of the sector size {sector_size}"
        )


def validate_boot_contents(boot_mount: Path, required: Sequence[str]) -> None:
    """Check the mounted boot partition holds the files the bake edits."""
    missing = [name for name in required if not (Path(boot_mount) / name).is_file()]
    if missing:
        raise PreconditionError(
            f"Boot partition is missing: {', '.join(missing)}"
        )


def validate_bake_operation(options, runner: CommandRunner) -> None:
    """Run every check that does not need the image attached."""
    validate_root()
    validate_tools(
        runner,
        required_tools(
            options.data_fs_type,
            options.output_mode,
            host_keys=options.generate_host_keys or options.access_key_output is not None,
        ),
    )
    validate_input_image(options.image)
    validate_output_absent(options.output)
    if options.access_key_output is not None:
        validate_output_absent(options.access_key_output)
    validate_target_size(options.image, options.target_bytes, options.sector_size)
