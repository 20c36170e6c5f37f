"""Loop device, partition mapping and mount lifecycle.

Every kernel resource the pipeline acquires is pushed onto a
:class:`ResourceStack` together with the capability that releases it. The
stack is drained in strict reverse order, so whatever happened (success,
a failing step, an interruption) the host is left without stale mounts,
device-mapper entries or loop devices.

Acquisition order:
    work dir -> loop device -> partition mappings -> mounts

Teardown is best-effort: a release that fails is logged as a warning and the
remaining releases still run. Teardown never raises.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from picore_baker.config.settings import (
    DEFAULT_MAP_RETRY_ATTEMPTS,
    DEFAULT_MAP_RETRY_DELAY,
    DEFAULT_MAP_RETRY_MAX_DELAY,
)
from picore_baker.domain.models import (
    BlockImageHandle,
    PartitionMapping,
    PartitionRole,
    PipelineState,
)
from picore_baker.logging import LoggerFactory

from .commands import CommandRunner
from .exceptions import (
    CommandError,
    MappingTimeoutError,
    MountError,
    ResourceError,
    StateTransitionError,
)
from .interrupts import CancellationToken


log = LoggerFactory.for_lifecycle()

KIND_WORK_DIR = "work_dir"
KIND_LOOP = "loop"
KIND_MAPPINGS = "mappings"
KIND_MOUNT = "mount"

_DEVICE_KINDS = frozenset({KIND_LOOP, KIND_MAPPINGS, KIND_MOUNT})

_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.INIT: frozenset({PipelineState.IMAGE_ATTACHED}),
    PipelineState.IMAGE_ATTACHED: frozenset({PipelineState.PARTITIONS_MAPPED}),
    PipelineState.PARTITIONS_MAPPED: frozenset(
        {PipelineState.BOOT_MOUNTED, PipelineState.DATA_MOUNTED}
    ),
    PipelineState.BOOT_MOUNTED: frozenset(
        {PipelineState.DATA_MOUNTED, PipelineState.MUTATING}
    ),
    PipelineState.MUTATING: frozenset({PipelineState.REMAPPED}),
    PipelineState.REMAPPED: frozenset({PipelineState.DATA_MOUNTED}),
    PipelineState.DATA_MOUNTED: frozenset(
        {PipelineState.BOOT_MOUNTED, PipelineState.PROVISIONED}
    ),
    PipelineState.PROVISIONED: frozenset({PipelineState.FINALIZING}),
    PipelineState.FINALIZING: frozenset({PipelineState.RELEASED}),
    PipelineState.ABORTING: frozenset({PipelineState.RELEASED}),
    PipelineState.RELEASED: frozenset(),
}


@dataclass
class Release:
    """A one-shot release capability for an acquired resource."""

    kind: str
    description: str
    action: Callable[[], None]
    released: bool = False

    def __call__(self) -> None:
        if self.released:
            return
        # Marked first so a failing release is never attempted twice
        self.released = True
        self.action()


class ResourceStack:
    """Ordered acquisition history, drained in reverse."""

    def __init__(self) -> None:
        self._entries: list[Release] = []

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, kind: str, description: str, action: Callable[[], None]) -> Release:
        entry = Release(kind=kind, description=description, action=action)
        self._entries.append(entry)
        return entry

    def kinds(self) -> list[str]:
        return [entry.kind for entry in self._entries]

    def drain(self, kinds: Optional[Iterable[str]] = None) -> list[str]:
        """Release entries from the top of the stack.

        With ``kinds`` set, draining stops at the first entry of another kind,
        so lower resources are never released ahead of the ones above them.

        Returns:
            Descriptions of the releases that failed.
        """
        allowed = frozenset(kinds) if kinds is not None else None
        failures = []
        while self._entries:
            entry = self._entries[-1]
            if allowed is not None and entry.kind not in allowed:
                break
            self._entries.pop()
            try:
                entry()
            except Exception as error:
                log.warning(f"Release failed ({entry.description}): {error}")
                failures.append(entry.description)
            else:
                log.debug(f"Released {entry.description}")
        return failures


class ResourceLifecycleManager:
    """Acquires and releases the kernel resources of one bake run."""

    def __init__(
        self,
        runner: CommandRunner,
        token: Optional[CancellationToken] = None,
        *,
        retry_attempts: int = DEFAULT_MAP_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_MAP_RETRY_DELAY,
        retry_max_delay: float = DEFAULT_MAP_RETRY_MAX_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        node_exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        self.runner = runner
        self.token = token or CancellationToken()
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._node_exists = node_exists
        self.stack = ResourceStack()
        self.state = PipelineState.INIT
        self.mappings: dict[PartitionRole, PartitionMapping] = {}
        self._mappings_pushed = False

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(self, new_state: PipelineState) -> None:
        """Move to ``new_state``, rejecting transitions the lifecycle forbids."""
        current = self.state
        if current is new_state:
            return
        if current is PipelineState.RELEASED:
            raise StateTransitionError(
                f"Cannot leave terminal state {current.value} for {new_state.value}"
            )
        allowed = new_state is PipelineState.ABORTING or new_state in _TRANSITIONS[current]
        if not allowed:
            raise StateTransitionError(
                f"Invalid transition {current.value} -> {new_state.value}"
            )
        log.debug(f"State {current.value} -> {new_state.value}")
        self.state = new_state

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def create_work_dir(self, parent: Optional[Path] = None) -> Path:
        """Create a private working directory removed by :meth:`release_all`."""
        if parent is not None:
            parent.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=".picore-baker-", dir=parent))
        log.debug(f"Created work directory {work_dir}")
        self.stack.push(
            KIND_WORK_DIR,
            f"work directory {work_dir}",
            lambda: shutil.rmtree(work_dir),
        )
        return work_dir

    def acquire_loop(self, image_file: Path) -> BlockImageHandle:
        """Attach ``image_file`` to a free loop device."""
        image_file = Path(image_file)
        if not image_file.is_file():
            raise ResourceError(f"Image file not found: {image_file}")
        try:
            result = self.runner.run(
                ["losetup", "--find", "--show", "--partscan", str(image_file)]
            )
        except CommandError as error:
            raise ResourceError(
                f"Failed to attach {image_file} to a loop device: {error.stderr}"
            ) from error
        device = result.stdout.strip()
        if not device:
            raise ResourceError(f"losetup returned no device for {image_file}")

        handle = BlockImageHandle(backing_file=image_file, device=device)
        self.stack.push(KIND_LOOP, f"loop device {device}", lambda: self._detach(handle))
        log.info(f"Attached {image_file.name} to {device}")
        self.transition(PipelineState.IMAGE_ATTACHED)
        return handle

    def map_partitions(
        self, handle: BlockImageHandle
    ) -> dict[PartitionRole, PartitionMapping]:
        """Expose both partitions as device-mapper nodes and wait for them."""
        try:
            self.runner.run(["kpartx", "-a", "-s", handle.device])
        except CommandError as error:
            raise ResourceError(
                f"Failed to map partitions of {handle.device}: {error.stderr}",
                device=handle.device,
            ) from error
        if not self._mappings_pushed:
            self.stack.push(
                KIND_MAPPINGS,
                f"partition mappings of {handle.device}",
                lambda: self.runner.run(["kpartx", "-d", handle.device]),
            )
            self._mappings_pushed = True

        self._wait_for_nodes(handle, PartitionRole)
        self.mappings = {
            role: PartitionMapping(role=role, device=handle.mapper_path(role))
            for role in PartitionRole
        }
        log.info(
            f"Mapped partitions of {handle.device}: "
            + ", ".join(mapping.device for mapping in self.mappings.values())
        )
        self.transition(PipelineState.PARTITIONS_MAPPED)
        return self.mappings

    def remap_data_partition(self, handle: BlockImageHandle) -> PartitionMapping:
        """Recreate the data mapping after the partition table changed."""
        stale = f"{handle.name}p{PartitionRole.DATA.number}"
        result = self.runner.run(["dmsetup", "remove", stale], check=False)
        if result.returncode != 0:
            log.debug(f"No stale mapping {stale} to remove")
        try:
            self.runner.run(["kpartx", "-a", "-s", handle.device])
        except CommandError as error:
            raise ResourceError(
                f"Failed to remap partitions of {handle.device}: {error.stderr}",
                device=handle.device,
            ) from error
        self._wait_for_nodes(handle, PartitionRole)

        mapping = PartitionMapping(
            role=PartitionRole.DATA, device=handle.mapper_path(PartitionRole.DATA)
        )
        self.mappings[PartitionRole.DATA] = mapping
        log.info(f"Remapped data partition as {mapping.device}")
        self.transition(PipelineState.REMAPPED)
        return mapping

    def mount(self, mapping: PartitionMapping, target: Path) -> PartitionMapping:
        """Mount ``mapping`` on ``target`` (created if needed)."""
        target = Path(target)
        try:
            target.mkdir(parents=True, exist_ok=True)
            self.runner.run(["mount", mapping.device, str(target)])
        except (OSError, CommandError) as error:
            reason = error.stderr if isinstance(error, CommandError) else str(error)
            raise MountError(mapping.device, str(target), reason) from error

        mapping.mount_point = target
        mapping.mounted = True
        self.stack.push(
            KIND_MOUNT,
            f"mount {target}",
            lambda: self._unmount(mapping),
        )
        log.info(f"Mounted {mapping.role.value} partition {mapping.device} on {target}")
        if mapping.role is PartitionRole.BOOT:
            self.transition(PipelineState.BOOT_MOUNTED)
        else:
            self.transition(PipelineState.DATA_MOUNTED)
        return mapping

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def unmount_all(self) -> list[str]:
        """Unmount every mounted partition, keeping mappings and the loop device."""
        return self.stack.drain({KIND_MOUNT})

    def release_devices(self) -> list[str]:
        """Release mounts, mappings and the loop device, keeping the work dir."""
        return self.stack.drain(_DEVICE_KINDS)

    def release_all(self) -> list[str]:
        """Release everything in reverse acquisition order. Never raises."""
        if self.state is not PipelineState.RELEASED:
            if len(self.stack):
                log.info(f"Releasing {len(self.stack)} resource(s)")
            failures = self.stack.drain()
            if failures:
                log.warning(f"Teardown left {len(failures)} resource(s) behind")
            self.state = PipelineState.RELEASED
            return failures
        return self.stack.drain()

    def _unmount(self, mapping: PartitionMapping) -> None:
        if not mapping.mounted or mapping.mount_point is None:
            return
        target = str(mapping.mount_point)
        try:
            self.runner.run(["umount", target])
        except CommandError as error:
            if self.token.forced:
                raise
            log.warning(f"Unmount of {target} failed ({error.stderr}); trying lazy unmount")
            self.runner.run(["umount", "-l", target])
        mapping.mounted = False

    def _detach(self, handle: BlockImageHandle) -> None:
        if not handle.attached:
            return
        self.runner.run(["losetup", "-d", handle.device])
        handle.attached = False

    def _wait_for_nodes(
        self, handle: BlockImageHandle, roles: Iterable[PartitionRole]
    ) -> None:
        nodes = [handle.mapper_path(role) for role in roles]
        if self.runner.which("udevadm"):
            self.runner.run(["udevadm", "settle", "--timeout=5"], check=False)

        delay = self.retry_delay
        missing = nodes
        for attempt in range(1, self.retry_attempts + 1):
            missing = [node for node in nodes if not self._node_exists(node)]
            if not missing:
                log.debug(f"Partition nodes present after {attempt} attempt(s)")
                return
            log.trace(
                f"Waiting for {', '.join(missing)} "
                f"(attempt {attempt}/{self.retry_attempts})"
            )
            if attempt < self.retry_attempts:
                self._sleep(delay)
                delay = min(delay * 2, self.retry_max_delay)
        raise MappingTimeoutError(handle.device, missing, self.retry_attempts)
