"""Custom exceptions for image baking operations.

This module defines a hierarchy of exceptions so every failing step of the
bake pipeline maps to one category with a readable message.

Exception Hierarchy:
    BakeError (base)
        ├── PreconditionError
        ├── CommandError
        ├── ResourceError
        │   ├── MountError
        │   └── MappingTimeoutError
        ├── PartitionPlanError
        ├── FormatError
        ├── ConfigInjectionError
        ├── ArchiveError
        ├── FinalizeError
        ├── StateTransitionError
        └── PipelineInterrupted

Usage:
    from picore_baker.storage.exceptions import PreconditionError

    if not image_path.is_file():
        raise PreconditionError(f"Image file not found: {image_path}")
"""

from __future__ import annotations

from typing import Sequence


class BakeError(Exception):
    """Base exception for all bake operations."""


class PreconditionError(BakeError):
    """Missing input, privilege or tool. Raised before any resource is held."""


class CommandError(BakeError):
    """An external tool exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = stderr.strip() or "Command failed"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) rc={returncode}: {message}"
        )


class ResourceError(BakeError):
    """Failed to attach, map or mount a kernel block-device resource."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class MountError(ResourceError):
    """Failed to mount a partition."""

    def __init__(self, device: str, target: str, reason: str = ""):
        self.target = target
        self.reason = reason
        msg = f"Failed to mount {device} on {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, device=device)


class MappingTimeoutError(ResourceError, TimeoutError):
    """Partition device nodes did not appear within the retry budget."""

    def __init__(self, device: str, missing: Sequence[str], attempts: int):
        self.missing = list(missing)
        self.attempts = attempts
        super().__init__(
            f"Partition nodes for {device} did not appear after {attempts} "
            f"attempts: {', '.join(self.missing)}",
            device=device,
        )


class PartitionPlanError(BakeError):
    """Partition table could not be parsed or the computed layout is invalid."""


class FormatError(BakeError):
    """Formatting the data partition failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class ConfigInjectionError(BakeError):
    """Writing boot-time configuration onto a mounted partition failed."""


class ArchiveError(BakeError):
    """Extracting, patching or replacing the embedded rootfs archive failed."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class FinalizeError(BakeError):
    """Producing the output image failed."""

    def __init__(self, message: str, output: str | None = None):
        self.output = output
        super().__init__(message)


class StateTransitionError(BakeError):
    """A lifecycle transition that the state machine does not allow."""


class PipelineInterrupted(BakeError):
    """An interruption signal was received; the pipeline stopped at a step boundary."""

    def __init__(self, signal_name: str, forced: bool = False):
        self.signal_name = signal_name
        self.forced = forced
        super().__init__(f"Interrupted by {signal_name}")
