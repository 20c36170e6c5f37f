"""Settings storage for bake configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "PICORE_BAKER_SETTINGS_PATH",
        Path.home() / ".config" / "picore-baker" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SECTOR_SIZE = 512
DEFAULT_ALIGNMENT_SECTORS = 2048
DEFAULT_IMAGE_SIZE_MB = 1024
DEFAULT_ARCHIVE_NAME = "rootfs-piCore-15.0.gz"
DEFAULT_MAP_RETRY_ATTEMPTS = 10
DEFAULT_MAP_RETRY_DELAY = 0.25
DEFAULT_MAP_RETRY_MAX_DELAY = 2.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "image_size_mb": DEFAULT_IMAGE_SIZE_MB,
    "sector_size": DEFAULT_SECTOR_SIZE,
    "alignment_sectors": DEFAULT_ALIGNMENT_SECTORS,
    "archive_name": DEFAULT_ARCHIVE_NAME,
    "cmdline_file": "cmdline.txt",
    "locator_key": "tce",
    "data_fs_type": "ext4",
    "data_label": None,
    "output_mode": "duplicate",
    "output_basename": "customized-piCore",
    "normalize_mtime": False,
    "normalize_owner": False,
    "map_retry_attempts": DEFAULT_MAP_RETRY_ATTEMPTS,
    "map_retry_delay": DEFAULT_MAP_RETRY_DELAY,
    "map_retry_max_delay": DEFAULT_MAP_RETRY_MAX_DELAY,
    "hostname": "piCoreCustom",
    "packages": ["openssh.tcz", "openssl.tcz"],
    "wifi_packages": [
        "ca-certificates.tcz",
        "wifi.tcz",
        "wireless_tools.tcz",
        "wpa_supplicant.tcz",
        "libnl.tcz",
        "ncurses.tcz",
        "readline.tcz",
        "firmware-rpi-wifi.tcz",
        "ethtool.tcz",
    ],
    "network": None,
    "ssh_access": "key",
    "ssh_public_key_file": None,
    "ssh_password": None,
    "generate_host_keys": True,
    "archive_files": {},
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


load_settings()
