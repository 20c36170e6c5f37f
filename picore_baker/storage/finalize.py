"""Output image production.

``duplicate`` copies the whole loop device to a fresh file with dd while the
device is still attached (filesystems unmounted). ``in_place`` releases the
devices and moves the mutated backing file to the output path.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

from picore_baker.domain.models import BlockImageHandle
from picore_baker.logging import LoggerFactory, ThrottledLogger

from .commands import CommandRunner, ProgressUpdate
from .exceptions import CommandError, FinalizeError
from .lifecycle import ResourceLifecycleManager
from .validation import validate_output_absent


MODE_DUPLICATE = "duplicate"
MODE_IN_PLACE = "in_place"
MODES = (MODE_DUPLICATE, MODE_IN_PLACE)

DD_BLOCK_SIZE = "4M"


def human_size(size_bytes: Optional[float]) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def hand_off_ownership(path: Path, environ: Optional[dict] = None) -> bool:
    """Give ``path`` to the user who invoked sudo, else make it world-readable.

    Returns:
        True if ownership was transferred
    """
    environ = os.environ if environ is None else environ
    log = LoggerFactory.for_finalize()
    uid = environ.get("SUDO_UID")
    gid = environ.get("SUDO_GID")
    if uid and gid and uid.isdigit() and gid.isdigit():
        try:
            os.chown(path, int(uid), int(gid))
            log.debug(f"Transferred ownership of {path} to {uid}:{gid}")
            return True
        except OSError as error:
            log.warning(f"Could not chown {path} to {uid}:{gid}: {error}")
    current = os.stat(path).st_mode
    os.chmod(path, current | 0o444)
    log.debug(f"Made {path} world-readable")
    return False


def export_private_key(source: Path, destination: Path, environ: Optional[dict] = None) -> Path:
    """Move a generated private key out of the work directory.

    The key is left readable by its owner only, and owned by the sudo caller
    when there is one.
    """
    environ = os.environ if environ is None else environ
    log = LoggerFactory.for_finalize()
    destination = Path(destination)
    if destination.exists():
        raise FinalizeError(f"Refusing to overwrite {destination}", output=str(destination))
    try:
        shutil.move(str(source), str(destination))
        os.chmod(destination, 0o600)
    except OSError as error:
        raise FinalizeError(
            f"Failed to export private key: {error}", output=str(destination)
        ) from error
    uid = environ.get("SUDO_UID")
    gid = environ.get("SUDO_GID")
    if uid and gid and uid.isdigit() and gid.isdigit():
        try:
            os.chown(destination, int(uid), int(gid))
        except OSError as error:
            log.warning(f"Could not chown {destination} to {uid}:{gid}: {error}")
    log.info(f"Private key for tc saved to {destination}")
    return destination


class ImageFinalizer:
    """Produces the final image in duplicate or in-place mode."""

    def __init__(
        self,
        runner: CommandRunner,
        lifecycle: ResourceLifecycleManager,
        mode: str = MODE_DUPLICATE,
        job_id: Optional[str] = None,
    ) -> None:
        if mode not in MODES:
            raise ValueError(f"Unknown finalize mode: {mode}")
        self.runner = runner
        self.lifecycle = lifecycle
        self.mode = mode
        self.log = LoggerFactory.for_finalize(job_id)

    def finalize(self, handle: BlockImageHandle, output: Path) -> Path:
        output = Path(output)
        validate_output_absent(output)
        if self.mode == MODE_DUPLICATE:
            self._duplicate(handle, output)
        else:
            self._move(handle, output)
        hand_off_ownership(output)
        self.log.success(f"Final image written to {output}")
        return output

    def _duplicate(self, handle: BlockImageHandle, output: Path) -> None:
        failures = self.lifecycle.unmount_all()
        if failures:
            raise FinalizeError(
                f"Cannot copy image while still mounted: {', '.join(failures)}",
                output=str(output),
            )
        # Flush twice: the first sync can return before device-mapper writes land
        for _ in range(2):
            self.runner.run(["sync"], check=False)

        total = Path(handle.backing_file).stat().st_size
        progress = ThrottledLogger(self.log, interval_seconds=5.0)

        def report(update: ProgressUpdate) -> None:
            percent = update.bytes_copied * 100 / total if total else 0.0
            rate = f" at {human_size(update.rate)}/s" if update.rate else ""
            progress.info(
                "dd",
                f"Copied {human_size(update.bytes_copied)} of {human_size(total)} "
                f"({percent:.0f}%){rate}",
            )

        self.log.info(f"Copying {handle.device} to {output} ({human_size(total)})")
        try:
            self.runner.stream(
                [
                    "dd",
                    f"if={handle.device}",
                    f"of={output}",
                    f"bs={DD_BLOCK_SIZE}",
                    "conv=fsync",
                    "status=progress",
                ],
                progress_callback=report,
            )
        except CommandError as error:
            self._remove_partial(output)
            raise FinalizeError(
                f"Copying {handle.device} to {output} failed: {error.stderr.strip()}",
                output=str(output),
            ) from error

    def _move(self, handle: BlockImageHandle, output: Path) -> None:
        failures = self.lifecycle.release_devices()
        if failures:
            raise FinalizeError(
                f"Cannot move image while devices are held: {', '.join(failures)}",
                output=str(output),
            )
        self.log.info(f"Moving {handle.backing_file} to {output}")
        try:
            shutil.move(str(handle.backing_file), str(output))
        except OSError as error:
            self._remove_partial(output)
            raise FinalizeError(
                f"Moving image to {output} failed: {error}", output=str(output)
            ) from error

    def _remove_partial(self, output: Path) -> None:
        try:
            output.unlink(missing_ok=True)
            self.log.info(f"Removed partial output {output}")
        except OSError as error:
            self.log.warning(f"Could not remove partial output {output}: {error}")
