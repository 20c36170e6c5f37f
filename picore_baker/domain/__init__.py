"""Domain models for offline image baking."""

from __future__ import annotations

from .models import (
    ArchiveChange,
    ArchiveEntry,
    BlockImageHandle,
    EntryType,
    NetworkConfig,
    PartitionExtent,
    PartitionMapping,
    PartitionPlan,
    PartitionRole,
    PipelineState,
)


__all__ = [
    "ArchiveChange",
    "ArchiveEntry",
    "BlockImageHandle",
    "EntryType",
    "NetworkConfig",
    "PartitionExtent",
    "PartitionMapping",
    "PartitionPlan",
    "PartitionRole",
    "PipelineState",
]
