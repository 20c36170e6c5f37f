"""Tests for storage/lifecycle.py - resource acquisition and teardown.

This test suite covers:
- Reverse-order, one-shot release of the resource stack
- Loop attach, partition mapping and mount bookkeeping
- Bounded polling for partition nodes
- Lazy unmount retries and forced teardown
- State machine transitions
"""

from unittest.mock import Mock

import pytest

from picore_baker.domain.models import (
    BlockImageHandle,
    PartitionMapping,
    PartitionRole,
    PipelineState,
)
from picore_baker.storage.exceptions import (
    MappingTimeoutError,
    MountError,
    ResourceError,
    StateTransitionError,
)
from picore_baker.storage.interrupts import CancellationToken
from picore_baker.storage.lifecycle import ResourceLifecycleManager, ResourceStack


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "image.img"
    path.write_bytes(b"\0" * 4096)
    return path


@pytest.fixture
def mounted(lifecycle, image, tmp_path):
    """Lifecycle with a work dir, the loop device, mappings and the boot mount."""
    work_dir = lifecycle.create_work_dir(tmp_path / "out")
    handle = lifecycle.acquire_loop(image)
    mappings = lifecycle.map_partitions(handle)
    lifecycle.mount(mappings[PartitionRole.BOOT], work_dir / "mnt_boot")
    return work_dir, handle, mappings


class TestResourceStack:
    """Tests for ResourceStack."""

    def test_drains_in_reverse_order(self):
        stack = ResourceStack()
        calls = []
        for name in ("first", "second", "third"):
            stack.push("kind", name, lambda name=name: calls.append(name))

        assert stack.drain() == []
        assert calls == ["third", "second", "first"]
        assert len(stack) == 0

    def test_release_runs_at_most_once(self):
        stack = ResourceStack()
        action = Mock()
        release = stack.push("kind", "once", action)

        release()
        release()
        stack.drain()

        action.assert_called_once()

    def test_failed_release_does_not_stop_teardown(self):
        stack = ResourceStack()
        calls = []
        stack.push("kind", "bottom", lambda: calls.append("bottom"))
        stack.push("kind", "broken", Mock(side_effect=OSError("busy")))
        stack.push("kind", "top", lambda: calls.append("top"))

        failures = stack.drain()

        assert failures == ["broken"]
        assert calls == ["top", "bottom"]

    def test_drain_by_kind_stops_at_other_kind(self):
        stack = ResourceStack()
        calls = []
        stack.push("loop", "loop", lambda: calls.append("loop"))
        stack.push("mount", "boot", lambda: calls.append("boot"))
        stack.push("mount", "data", lambda: calls.append("data"))

        stack.drain({"mount"})

        assert calls == ["data", "boot"]
        assert stack.kinds() == ["loop"]


class TestAcquire:
    """Tests for acquisition of loop devices, mappings and mounts."""

    def test_acquire_loop(self, lifecycle, fake_runner, image):
        handle = lifecycle.acquire_loop(image)

        assert handle.device == "/dev/loop7"
        assert handle.name == "loop7"
        assert fake_runner.commands[0] == [
            "losetup", "--find", "--show", "--partscan", str(image)
        ]
        assert lifecycle.state is PipelineState.IMAGE_ATTACHED

    def test_acquire_loop_missing_file(self, lifecycle, fake_runner, tmp_path):
        with pytest.raises(ResourceError, match="not found"):
            lifecycle.acquire_loop(tmp_path / "missing.img")

        assert fake_runner.commands == []

    def test_acquire_loop_failure(self, lifecycle, fake_runner, image):
        fake_runner.on("losetup", "--find", returncode=1, stderr="no free loop devices")

        with pytest.raises(ResourceError, match="no free loop devices"):
            lifecycle.acquire_loop(image)

        assert len(lifecycle.stack) == 0

    def test_acquire_loop_empty_output(self, lifecycle, fake_runner, image):
        fake_runner.on("losetup", "--find", stdout="\n")

        with pytest.raises(ResourceError, match="no device"):
            lifecycle.acquire_loop(image)

    def test_map_partitions(self, lifecycle, fake_runner, image):
        handle = lifecycle.acquire_loop(image)

        mappings = lifecycle.map_partitions(handle)

        assert mappings[PartitionRole.BOOT].device == "/dev/mapper/loop7p1"
        assert mappings[PartitionRole.DATA].device == "/dev/mapper/loop7p2"
        assert fake_runner.ran("kpartx", "-a", "-s", "/dev/loop7")
        assert lifecycle.state is PipelineState.PARTITIONS_MAPPED

    def test_mapping_timeout(self, fake_runner, image):
        sleeps = []
        lifecycle = ResourceLifecycleManager(
            fake_runner,
            retry_attempts=4,
            retry_delay=0.1,
            retry_max_delay=0.25,
            sleep=sleeps.append,
            node_exists=lambda path: path.endswith("p1"),
        )
        handle = lifecycle.acquire_loop(image)

        with pytest.raises(MappingTimeoutError) as exc_info:
            lifecycle.map_partitions(handle)

        assert exc_info.value.missing == ["/dev/mapper/loop7p2"]
        assert exc_info.value.attempts == 4
        assert sleeps == [0.1, 0.2, 0.25]

        # The mapping release was registered before polling, so teardown removes it
        lifecycle.release_all()
        assert fake_runner.ran("kpartx", "-d", "/dev/loop7")
        assert fake_runner.ran("losetup", "-d", "/dev/loop7")

    def test_nodes_appearing_late(self, fake_runner, image):
        polls = iter([False, False, True, True])
        lifecycle = ResourceLifecycleManager(
            fake_runner,
            retry_attempts=5,
            retry_delay=0,
            sleep=lambda seconds: None,
            node_exists=lambda path: next(polls),
        )
        handle = lifecycle.acquire_loop(image)

        mappings = lifecycle.map_partitions(handle)

        assert len(mappings) == 2

    def test_mount_failure(self, lifecycle, fake_runner, image, tmp_path):
        handle = lifecycle.acquire_loop(image)
        mappings = lifecycle.map_partitions(handle)
        fake_runner.on("mount", returncode=32, stderr="wrong fs type")

        with pytest.raises(MountError, match="wrong fs type"):
            lifecycle.mount(mappings[PartitionRole.BOOT], tmp_path / "mnt")

        assert lifecycle.stack.kinds() == ["loop", "mappings"]
        assert not mappings[PartitionRole.BOOT].mounted

    def test_remap_data_partition(self, lifecycle, fake_runner, mounted):
        _, handle, _ = mounted
        lifecycle.transition(PipelineState.MUTATING)

        mapping = lifecycle.remap_data_partition(handle)

        assert fake_runner.ran("dmsetup", "remove", "loop7p2")
        assert not fake_runner.ran("kpartx", "-d")
        assert mapping.device == "/dev/mapper/loop7p2"
        assert lifecycle.mappings[PartitionRole.DATA] is mapping
        assert lifecycle.state is PipelineState.REMAPPED
        assert lifecycle.stack.kinds().count("mappings") == 1


class TestRelease:
    """Tests for teardown."""

    def test_release_all_in_reverse_order(self, lifecycle, fake_runner, mounted):
        work_dir, _, _ = mounted
        start = len(fake_runner.commands)

        assert lifecycle.release_all() == []

        teardown = [command[:2] for command in fake_runner.commands[start:]]
        assert teardown == [
            ["umount", str(work_dir / "mnt_boot")],
            ["kpartx", "-d"],
            ["losetup", "-d"],
        ]
        assert not work_dir.exists()
        assert lifecycle.state is PipelineState.RELEASED

    def test_release_all_is_idempotent(self, lifecycle, fake_runner, mounted):
        lifecycle.release_all()
        count = len(fake_runner.commands)

        assert lifecycle.release_all() == []
        assert len(fake_runner.commands) == count

    def test_unmount_all_keeps_devices(self, lifecycle, fake_runner, mounted):
        _, handle, mappings = mounted

        lifecycle.unmount_all()

        assert not mappings[PartitionRole.BOOT].mounted
        assert handle.attached
        assert lifecycle.stack.kinds() == ["work_dir", "loop", "mappings"]

    def test_release_devices_keeps_work_dir(self, lifecycle, mounted):
        work_dir, handle, _ = mounted

        lifecycle.release_devices()

        assert not handle.attached
        assert work_dir.exists()
        assert lifecycle.stack.kinds() == ["work_dir"]

    def test_failed_unmount_retries_lazily(self, lifecycle, fake_runner, mounted):
        work_dir, _, mappings = mounted
        target = str(work_dir / "mnt_boot")
        fake_runner.on("umount", returncode=32, stderr="target is busy")
        fake_runner.on("umount", "-l", returncode=0)

        assert lifecycle.release_all() == []

        assert fake_runner.ran("umount", "-l", target)
        assert fake_runner.ran("losetup", "-d")
        assert not mappings[PartitionRole.BOOT].mounted

    def test_forced_teardown_skips_lazy_retry(self, fake_runner, image, tmp_path):
        token = CancellationToken()
        token.cancel("SIGINT")
        token.cancel("SIGINT")
        lifecycle = ResourceLifecycleManager(
            fake_runner, token, sleep=lambda seconds: None, node_exists=lambda path: True
        )
        handle = lifecycle.acquire_loop(image)
        mappings = lifecycle.map_partitions(handle)
        lifecycle.mount(mappings[PartitionRole.BOOT], tmp_path / "mnt")
        fake_runner.on("umount", returncode=32, stderr="target is busy")

        failures = lifecycle.release_all()

        assert failures == [f"mount {tmp_path / 'mnt'}"]
        assert not fake_runner.ran("umount", "-l")
        assert fake_runner.ran("losetup", "-d", "/dev/loop7")

    def test_teardown_failure_never_raises(self, lifecycle, fake_runner, mounted):
        fake_runner.on("kpartx", "-d", returncode=1, stderr="device busy")
        fake_runner.on("losetup", "-d", returncode=1, stderr="device busy")

        failures = lifecycle.release_all()

        assert failures == ["partition mappings of /dev/loop7", "loop device /dev/loop7"]
        assert lifecycle.state is PipelineState.RELEASED

    def test_unmount_of_unmounted_mapping_is_noop(self, lifecycle, fake_runner):
        mapping = PartitionMapping(role=PartitionRole.DATA, device="/dev/mapper/loop7p2")

        lifecycle._unmount(mapping)

        assert fake_runner.commands == []

    def test_detach_of_detached_handle_is_noop(self, lifecycle, fake_runner, image):
        handle = BlockImageHandle(backing_file=image, device="/dev/loop7", attached=False)

        lifecycle._detach(handle)

        assert fake_runner.commands == []


class TestTransitions:
    """Tests for the lifecycle state machine."""

    def test_happy_path(self, lifecycle):
        for state in (
            PipelineState.IMAGE_ATTACHED,
            PipelineState.PARTITIONS_MAPPED,
            PipelineState.BOOT_MOUNTED,
            PipelineState.MUTATING,
            PipelineState.REMAPPED,
            PipelineState.DATA_MOUNTED,
            PipelineState.PROVISIONED,
            PipelineState.FINALIZING,
            PipelineState.RELEASED,
        ):
            lifecycle.transition(state)

        assert lifecycle.state is PipelineState.RELEASED

    def test_skipping_states_is_rejected(self, lifecycle):
        with pytest.raises(StateTransitionError, match="init -> boot_mounted"):
            lifecycle.transition(PipelineState.BOOT_MOUNTED)

    def test_abort_from_any_live_state(self, lifecycle):
        lifecycle.transition(PipelineState.IMAGE_ATTACHED)

        lifecycle.transition(PipelineState.ABORTING)
        lifecycle.transition(PipelineState.RELEASED)

        assert lifecycle.state is PipelineState.RELEASED

    def test_released_is_terminal(self, lifecycle):
        lifecycle.release_all()

        with pytest.raises(StateTransitionError):
            lifecycle.transition(PipelineState.ABORTING)
