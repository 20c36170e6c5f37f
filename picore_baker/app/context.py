from __future__ import annotations

import secrets
import stat
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

from picore_baker.config.settings import get_bool, get_setting
from picore_baker.domain.models import (
    ArchiveChange,
    BlockImageHandle,
    NetworkConfig,
    PartitionMapping,
    PartitionRole,
)
from picore_baker.storage.exceptions import PreconditionError
from picore_baker.storage.interrupts import CancellationToken
from picore_baker.storage.lifecycle import ResourceLifecycleManager


MIB = 1024 * 1024

SSH_ACCESS_MODES = ("key", "password", "none")
PASSWORD_ALPHABET = string.ascii_letters + string.digits
PASSWORD_LENGTH = 16
DEFAULT_KEY_NAME = "picore"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def parse_inject_spec(spec: str) -> Tuple[Path, str]:
    """Split a ``SRC:DEST`` injection argument."""
    source, separator, destination = spec.rpartition(":")
    if not separator or not source or not destination:
        raise PreconditionError(f"Invalid injection {spec!r}, expected SRC:DEST")
    return Path(source), destination


def load_archive_change(source: Path, destination: str) -> ArchiveChange:
    """Read a host file into a change for the rootfs archive."""
    try:
        content = source.read_bytes()
        mode = stat.S_IMODE(source.stat().st_mode)
    except OSError as error:
        raise PreconditionError(f"Cannot read file to inject {source}: {error}") from error
    return ArchiveChange(path=destination, content=content, mode=mode)


@dataclass(frozen=True)
class BakeOptions:
    image: Path
    output: Path
    target_bytes: int
    sector_size: int
    alignment: int
    archive_name: str
    cmdline_file: str
    locator_key: str
    data_fs_type: str
    data_label: Optional[str]
    output_mode: str
    normalize_mtime: bool
    normalize_owner: bool
    map_retry_attempts: int
    map_retry_delay: float
    map_retry_max_delay: float
    hostname: Optional[str]
    packages: Tuple[str, ...]
    network: Optional[NetworkConfig]
    ssh_access: str
    ssh_public_key: Optional[str]
    ssh_password: Optional[str]
    generate_host_keys: bool
    archive_changes: Tuple[ArchiveChange, ...]

    @classmethod
    def from_settings(
        cls,
        image: Path,
        *,
        output: Optional[Path] = None,
        size_mb: Optional[int] = None,
        mode: Optional[str] = None,
        archive_name: Optional[str] = None,
        hostname: Optional[str] = None,
        packages: Sequence[str] = (),
        injections: Sequence[str] = (),
    ) -> BakeOptions:
        """Combine the settings file with command-line overrides."""
        image = Path(image)
        if output is None:
            output = image.with_name(f"{get_setting('output_basename')}.img")

        network_settings = get_setting("network")
        network = NetworkConfig.from_dict(network_settings) if network_settings else None

        all_packages = list(get_setting("packages") or [])
        if network is not None and network.kind == "wifi":
            all_packages.extend(get_setting("wifi_packages") or [])
        all_packages.extend(packages)

        ssh_access = get_setting("ssh_access") or "none"
        if ssh_access not in SSH_ACCESS_MODES:
            raise PreconditionError(
                f"Unknown SSH access mode {ssh_access!r}, expected one of {', '.join(SSH_ACCESS_MODES)}"
            )
        ssh_key = None
        key_file = get_setting("ssh_public_key_file")
        if key_file:
            try:
                ssh_key = Path(key_file).expanduser().read_text(encoding="utf-8")
            except OSError as error:
                raise PreconditionError(f"Cannot read SSH public key {key_file}: {error}") from error
        ssh_password = None
        if ssh_access == "password":
            ssh_password = get_setting("ssh_password") or generate_password()

        changes = [
            load_archive_change(Path(source).expanduser(), destination)
            for destination, source in sorted((get_setting("archive_files") or {}).items())
        ]
        for spec in injections:
            changes.append(load_archive_change(*parse_inject_spec(spec)))

        size = size_mb if size_mb is not None else int(get_setting("image_size_mb"))
        return cls(
            image=image,
            output=Path(output),
            target_bytes=size * MIB,
            sector_size=int(get_setting("sector_size")),
            alignment=int(get_setting("alignment_sectors")),
            archive_name=archive_name or get_setting("archive_name"),
            cmdline_file=get_setting("cmdline_file"),
            locator_key=get_setting("locator_key"),
            data_fs_type=get_setting("data_fs_type"),
            data_label=get_setting("data_label"),
            output_mode=mode or get_setting("output_mode"),
            normalize_mtime=get_bool("normalize_mtime"),
            normalize_owner=get_bool("normalize_owner"),
            map_retry_attempts=int(get_setting("map_retry_attempts")),
            map_retry_delay=float(get_setting("map_retry_delay")),
            map_retry_max_delay=float(get_setting("map_retry_max_delay")),
            hostname=hostname or get_setting("hostname"),
            packages=tuple(all_packages),
            network=network,
            ssh_access=ssh_access,
            ssh_public_key=ssh_key,
            ssh_password=ssh_password,
            generate_host_keys=get_bool("generate_host_keys"),
            archive_changes=tuple(changes),
        )

    @property
    def access_key_output(self) -> Optional[Path]:
        """Where a generated private key is exported, if one is generated."""
        if self.ssh_access != "key" or self.ssh_public_key:
            return None
        return self.output.parent / f"{self.hostname or DEFAULT_KEY_NAME}_id_rsa"


@dataclass
class PipelineContext:
    options: BakeOptions
    lifecycle: ResourceLifecycleManager
    token: CancellationToken = field(default_factory=CancellationToken)
    work_dir: Optional[Path] = None
    backing_file: Optional[Path] = None
    handle: Optional[BlockImageHandle] = None
    mappings: Dict[PartitionRole, PartitionMapping] = field(default_factory=dict)
    completed_steps: list = field(default_factory=list)
    failed_step: Optional[str] = None
    access_key: Optional[Path] = None

    @property
    def stack(self):
        return self.lifecycle.stack

    def mount_point(self, role: PartitionRole) -> Path:
        if self.work_dir is None:
            raise RuntimeError("Work directory not created yet")
        return self.work_dir / f"mnt_{role.value}"
