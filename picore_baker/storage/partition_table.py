"""Partition table planning and rewriting for the data partition.

The image carries a fixed two-partition MBR layout: a boot partition that is
left untouched and a data partition that is recreated to fill every sector
after it. Layout is read with ``sfdisk --dump`` and written back with
non-interactive sfdisk scripts.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from picore_baker.config.settings import DEFAULT_ALIGNMENT_SECTORS, DEFAULT_SECTOR_SIZE
from picore_baker.domain.models import (
    BlockImageHandle,
    PartitionExtent,
    PartitionMapping,
    PartitionPlan,
    PartitionRole,
    PipelineState,
)
from picore_baker.logging import LoggerFactory

from .commands import CommandRunner
from .exceptions import CommandError, PartitionPlanError, ResourceError
from .lifecycle import ResourceLifecycleManager


log = LoggerFactory.for_partition()

LINUX_PARTITION_TYPE = "83"

_PARTITION_NUMBER = re.compile(r"(\d+)$")


def parse_sfdisk_fields(rest: str) -> list[tuple[str, str]]:
    """Parse the ``key=value, ...`` part of an sfdisk dump line."""
    fields: list[tuple[str, str]] = []
    for entry in rest.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            key, value = entry.split("=", 1)
            fields.append((key.strip(), value.strip()))
        else:
            fields.append((entry, ""))
    return fields


def get_sfdisk_int_field(fields: list[tuple[str, str]], key: str) -> Optional[int]:
    """Extract an integer field value from sfdisk fields."""
    for field_key, value in fields:
        if field_key != key:
            continue
        match = re.match(r"^(\d+)s?$", value)
        if match:
            return int(match.group(1))
    return None


def get_sfdisk_field(fields: list[tuple[str, str]], key: str) -> str:
    for field_key, value in fields:
        if field_key == key:
            return value
    return ""


def parse_sfdisk_dump(contents: str) -> tuple[int, list[PartitionExtent]]:
    """Parse ``sfdisk --dump`` output.

    Returns:
        Tuple of (sector size, partition extents ordered by number)

    Raises:
        PartitionPlanError: If a partition line has unparsable boundaries
    """
    sector_size = DEFAULT_SECTOR_SIZE
    extents: list[PartitionExtent] = []

    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("sector-size:"):
            match = re.search(r"sector-size:\s*(\d+)", stripped)
            if match:
                sector_size = int(match.group(1))
            continue
        if not stripped.startswith("/dev/") or ":" not in stripped:
            continue

        prefix, rest = stripped.split(":", 1)
        number_match = _PARTITION_NUMBER.search(prefix.strip())
        if not number_match:
            raise PartitionPlanError(f"Cannot determine partition number: {prefix.strip()}")
        fields = parse_sfdisk_fields(rest)
        start = get_sfdisk_int_field(fields, "start")
        size = get_sfdisk_int_field(fields, "size")
        if start is None or size is None:
            raise PartitionPlanError(f"Unparsable partition boundaries: {stripped}")
        extents.append(
            PartitionExtent(
                number=int(number_match.group(1)),
                start=start,
                size=size,
                type_code=get_sfdisk_field(fields, "type"),
            )
        )

    return sector_size, sorted(extents, key=lambda extent: extent.number)


def align_up(value: int, unit: int) -> int:
    """Smallest multiple of ``unit`` that is >= ``value``."""
    return -(-value // unit) * unit


def compute_plan(
    extents: list[PartitionExtent],
    total_sectors: int,
    alignment: int = DEFAULT_ALIGNMENT_SECTORS,
) -> PartitionPlan:
    """Compute a layout where the data partition consumes all space after boot.

    The data partition starts at the first alignment boundary at least one
    full unit past the boot partition's last sector and ends at the end of
    the backing file (exclusive).

    Raises:
        PartitionPlanError: If the table is not the expected two-partition
            layout or the resulting bounds are invalid
    """
    by_number = {extent.number: extent for extent in extents}
    boot = by_number.get(PartitionRole.BOOT.number)
    if boot is None:
        raise PartitionPlanError("Boot partition (1) not found in partition table")
    if PartitionRole.DATA.number not in by_number:
        raise PartitionPlanError("Data partition (2) not found in partition table")
    if len(by_number) != 2:
        raise PartitionPlanError(
            f"Expected exactly two partitions, found {len(by_number)}"
        )
    if boot.size <= 0:
        raise PartitionPlanError("Boot partition has no sectors")
    if alignment <= 0:
        raise PartitionPlanError(f"Alignment must be positive, got {alignment}")

    data_start = align_up(boot.end + alignment, alignment)
    plan = PartitionPlan(
        boot_start=boot.start,
        boot_end=boot.end,
        data_start=data_start,
        data_end=total_sectors,
        total_sectors=total_sectors,
        alignment=alignment,
    )
    problems = plan.violations()
    if problems:
        raise PartitionPlanError("Invalid partition plan: " + "; ".join(problems))
    return plan


def format_data_partition_script(plan: PartitionPlan) -> str:
    """sfdisk script line recreating the data partition."""
    return (
        f"start={plan.data_start}, size={plan.data_size}, "
        f"type={LINUX_PARTITION_TYPE}\n"
    )


class PartitionTableMutator:
    """Recreates the data partition of an attached image."""

    def __init__(
        self,
        runner: CommandRunner,
        lifecycle: ResourceLifecycleManager,
        alignment: int = DEFAULT_ALIGNMENT_SECTORS,
    ) -> None:
        self.runner = runner
        self.lifecycle = lifecycle
        self.alignment = alignment

    def read_table(self, device: str) -> tuple[int, list[PartitionExtent]]:
        try:
            result = self.runner.run(["sfdisk", "--dump", device])
        except CommandError as error:
            raise PartitionPlanError(
                f"Failed to read partition table of {device}: {error.stderr}"
            ) from error
        return parse_sfdisk_dump(result.stdout)

    def plan(self, handle: BlockImageHandle) -> PartitionPlan:
        """Read the current table and compute the enlarged layout."""
        sector_size, extents = self.read_table(handle.device)
        file_size = Path(handle.backing_file).stat().st_size
        total_sectors = file_size // sector_size
        plan = compute_plan(extents, total_sectors, self.alignment)
        log.info(
            f"Planned data partition {plan.data_start}-{plan.data_end} "
            f"({plan.data_size} sectors) after boot ending at {plan.boot_end}"
        )
        return plan

    def apply(self, handle: BlockImageHandle, plan: PartitionPlan) -> PartitionMapping:
        """Write ``plan`` to the table and return the fresh data mapping."""
        self.lifecycle.transition(PipelineState.MUTATING)
        device = handle.device
        number = str(PartitionRole.DATA.number)
        try:
            self.runner.run(["sfdisk", "--no-reread", "--delete", device, number])
            self.runner.run(
                ["sfdisk", "--no-reread", "-N", number, device],
                input_text=format_data_partition_script(plan),
            )
        except CommandError as error:
            raise ResourceError(
                f"Failed to rewrite data partition of {device}: {error.stderr}",
                device=device,
            ) from error
        log.info(f"Rewrote data partition of {device}")

        self._reread(device)
        return self.lifecycle.remap_data_partition(handle)

    def resize_data_partition(self, handle: BlockImageHandle) -> PartitionMapping:
        """Plan and apply in one step; nothing is written if planning fails."""
        return self.apply(handle, self.plan(handle))

    def _reread(self, device: str) -> None:
        try:
            self.runner.run(["partprobe", device])
            return
        except CommandError as error:
            log.debug(f"partprobe failed ({error.stderr}); trying blockdev --rereadpt")
        try:
            self.runner.run(["blockdev", "--rereadpt", device])
        except CommandError as error:
            # Mappings are rebuilt from the on-disk table by kpartx regardless
            log.warning(f"Kernel did not re-read partition table of {device}: {error.stderr}")
