"""Bake pipeline orchestration.

Steps run strictly in sequence. Before each step the cancellation token is
checked, each step is wrapped in :func:`operation_context` for timing and
failure logging, and whatever happens the resource stack is drained in a
``finally`` block.

Step order:
    prepare -> attach -> map -> mount_boot -> partition -> format ->
    configure -> archive -> finalize
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable, Optional

from picore_baker.domain.models import PartitionRole, PipelineState
from picore_baker.logging import LoggerFactory, operation_context
from picore_baker.storage import validation
from picore_baker.storage.archive.patcher import ArchivePatcher
from picore_baker.storage.boot_config import BootConfigInjector
from picore_baker.storage.commands import CommandRunner
from picore_baker.storage.exceptions import BakeError, PipelineInterrupted, ResourceError
from picore_baker.storage.finalize import ImageFinalizer, export_private_key
from picore_baker.storage.interrupts import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    CancellationToken,
    handle_interrupts,
)
from picore_baker.storage.lifecycle import ResourceLifecycleManager
from picore_baker.storage.partition_table import PartitionTableMutator
from picore_baker.storage.provision import FilesystemProvisioner

from .context import DEFAULT_KEY_NAME, BakeOptions, PipelineContext


log = LoggerFactory.for_system()

BACKING_FILE_NAME = "image.img"


class BakePipeline:
    """Runs one bake of one image."""

    def __init__(
        self,
        options: BakeOptions,
        runner: Optional[CommandRunner] = None,
        token: Optional[CancellationToken] = None,
        lifecycle: Optional[ResourceLifecycleManager] = None,
    ) -> None:
        self.options = options
        self.runner = runner or CommandRunner()
        token = token or CancellationToken()
        lifecycle = lifecycle or ResourceLifecycleManager(
            self.runner,
            token,
            retry_attempts=options.map_retry_attempts,
            retry_delay=options.map_retry_delay,
            retry_max_delay=options.map_retry_max_delay,
        )
        self.context = PipelineContext(options=options, lifecycle=lifecycle, token=token)
        self.mutator = PartitionTableMutator(self.runner, lifecycle, options.alignment)
        self.provisioner = FilesystemProvisioner(
            self.runner,
            lifecycle,
            fs_type=options.data_fs_type,
            label=options.data_label,
            cmdline_file=options.cmdline_file,
            locator_key=options.locator_key,
        )
        self.patcher = ArchivePatcher(
            normalize_mtime=options.normalize_mtime,
            normalize_owner=options.normalize_owner,
        )
        self.finalizer = ImageFinalizer(self.runner, lifecycle, options.output_mode)

    @property
    def lifecycle(self) -> ResourceLifecycleManager:
        return self.context.lifecycle

    def steps(self) -> list[tuple[str, Callable[[], None]]]:
        return [
            ("prepare", self.prepare),
            ("attach", self.attach),
            ("map", self.map),
            ("mount_boot", self.mount_boot),
            ("partition", self.partition),
            ("format", self.format),
            ("configure", self.configure),
            ("archive", self.patch_archive),
            ("finalize", self.finalize),
        ]

    def run(self) -> Path:
        """Validate, run every step, and release all resources.

        Raises:
            PreconditionError: Before anything is acquired
            PipelineInterrupted: When a signal stopped the run at a step boundary
            BakeError: When a step failed
        """
        validation.validate_bake_operation(self.options, self.runner)
        try:
            for name, step in self.steps():
                self._run_step(name, step)
        except Exception:
            self.lifecycle.transition(PipelineState.ABORTING)
            raise
        finally:
            self.teardown()
        return self.options.output

    def teardown(self) -> None:
        self.report_signals()
        with operation_context("teardown", resources=len(self.context.stack)):
            failures = self.lifecycle.release_all()
        self.report_signals()
        if failures:
            log.warning("Resources left behind: " + ", ".join(failures))

    def report_signals(self) -> None:
        notice = self.context.token.pending_notice()
        if notice:
            log.warning(notice)

    def _run_step(self, name: str, step: Callable[[], None]) -> None:
        self.report_signals()
        self.context.token.raise_if_cancelled()
        try:
            with operation_context(name, image=str(self.options.image)):
                step()
        except Exception:
            self.context.failed_step = name
            raise
        self.context.completed_steps.append(name)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def prepare(self) -> None:
        """Copy the source image into a private work dir and grow it."""
        context = self.context
        context.work_dir = self.lifecycle.create_work_dir(self.options.output.parent)
        backing = context.work_dir / BACKING_FILE_NAME
        try:
            shutil.copyfile(self.options.image, backing)
            os.truncate(backing, self.options.target_bytes)
        except OSError as error:
            raise ResourceError(f"Failed to prepare backing file {backing}: {error}") from error
        context.backing_file = backing
        log.info(f"Prepared {self.options.target_bytes // (1024 * 1024)} MiB backing file")

    def attach(self) -> None:
        self.context.handle = self.lifecycle.acquire_loop(self.context.backing_file)

    def map(self) -> None:
        self.context.mappings = self.lifecycle.map_partitions(self.context.handle)

    def mount_boot(self) -> None:
        context = self.context
        target = context.mount_point(PartitionRole.BOOT)
        self.lifecycle.mount(context.mappings[PartitionRole.BOOT], target)
        validation.validate_boot_contents(
            target, [self.options.cmdline_file, self.options.archive_name]
        )

    def partition(self) -> None:
        context = self.context
        context.mappings[PartitionRole.DATA] = self.mutator.resize_data_partition(
            context.handle
        )

    def format(self) -> None:
        context = self.context
        data = context.mappings[PartitionRole.DATA]
        self.provisioner.format(data)
        data_root = context.mount_point(PartitionRole.DATA)
        self.provisioner.mount(data, data_root)
        self.provisioner.ensure_skeleton(data_root)
        uuid = self.provisioner.read_uuid(data)
        self.provisioner.record_device_locator(context.mount_point(PartitionRole.BOOT), uuid)

    def configure(self) -> None:
        options = self.options
        injector = BootConfigInjector(
            self.context.mount_point(PartitionRole.DATA),
            self.context.mount_point(PartitionRole.BOOT),
            self.runner,
        )
        if options.hostname:
            injector.set_hostname(options.hostname)
        if options.network is not None:
            injector.configure_network(options.network)
        if options.ssh_access == "key":
            if options.ssh_public_key:
                injector.install_ssh_key(options.ssh_public_key)
            else:
                self.context.access_key = injector.generate_access_key(
                    self.context.work_dir, options.hostname or DEFAULT_KEY_NAME
                )
        elif options.ssh_access == "password":
            injector.set_password(options.ssh_password)
        if options.generate_host_keys:
            injector.generate_host_keys()
        injector.write_package_list(options.packages)
        injector.finalize()
        self.lifecycle.transition(PipelineState.PROVISIONED)

    def patch_archive(self) -> None:
        if not self.options.archive_changes:
            log.info(f"No changes for {self.options.archive_name}; archive left as is")
            return
        self.patcher.patch(
            self.context.mount_point(PartitionRole.BOOT),
            self.options.archive_name,
            self.options.archive_changes,
        )

    def finalize(self) -> None:
        self.lifecycle.transition(PipelineState.FINALIZING)
        self.finalizer.finalize(self.context.handle, self.options.output)
        if self.context.access_key is not None:
            export_private_key(self.context.access_key, self.options.access_key_output)


def run_bake(options: BakeOptions, runner: Optional[CommandRunner] = None) -> int:
    """Run a bake with signal handling and map the outcome to an exit code."""
    token = CancellationToken()
    with handle_interrupts(token):
        pipeline = BakePipeline(options, runner=runner, token=token)
        try:
            output = pipeline.run()
        except PipelineInterrupted as interrupted:
            log.warning(
                f"Bake interrupted by {interrupted.signal_name}; "
                f"completed steps: {', '.join(pipeline.context.completed_steps) or 'none'}"
            )
            return token.exit_code
        except BakeError as error:
            step = pipeline.context.failed_step or "validation"
            log.error(f"Bake failed during {step}: {error}")
            return token.exit_code if token.cancelled else EXIT_FAILURE
        finally:
            pipeline.report_signals()

    if pipeline.context.access_key is not None:
        log.info(f"Log in with: ssh -i {options.access_key_output} tc@<address>")
    elif options.ssh_access == "password":
        log.info(f"Log in as tc with password {options.ssh_password} (set at every boot)")
    if token.cancelled:
        # The finished image is kept; the exit code still reports the interruption
        log.warning(f"Interrupted during the last step; keeping the finished image {output}")
        return token.exit_code
    log.success(f"Baked image: {output}")
    return EXIT_SUCCESS
