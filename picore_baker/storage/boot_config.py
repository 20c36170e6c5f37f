"""Boot-time configuration written onto the mounted partitions.

piCore runs from RAM and only restores what is listed in its persistence
manifest (``opt/.filetool.lst``) and loads the extensions named in
``tce/onboot.lst``. Everything injected here is therefore also registered in
one of those two lists.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional

from picore_baker.domain.models import NetworkConfig
from picore_baker.logging import LoggerFactory

from .commands import CommandRunner
from .exceptions import CommandError, ConfigInjectionError
from .provision import STAFF_GID, TC_UID


log = LoggerFactory.for_provision()

MANIFEST_PATH = "opt/.filetool.lst"
BOOTLOCAL_PATH = "opt/bootlocal.sh"
PACKAGE_LIST_PATH = "tce/onboot.lst"
WPA_CONF_PATH = "opt/wpa_supplicant/wpa_supplicant.conf"
WIFI_SCRIPT_PATH = "opt/wifi-connect.sh"
ETH0_STATIC_SCRIPT_PATH = "opt/eth0-static.sh"
SSH_DIR_PATH = "home/tc/.ssh"

SSHD_START_LINE = "sudo /usr/local/etc/init.d/openssh start # Start SSHD"
ETH0_DHCP_LINE = "sudo udhcpc -i eth0 -q -b # Ethernet DHCP"

_PASSWORD_FORBIDDEN = frozenset("\"\\$`:\n")

_WIFI_SCRIPT = """#!/bin/sh
WLAN_IFACE="wlan0"
MAX_RETRIES=10
RETRY_COUNT=0

while [ $RETRY_COUNT -lt $MAX_RETRIES ]; do
    if ip link show $WLAN_IFACE > /dev/null 2>&1; then
        sudo ip link set $WLAN_IFACE up
        break
    fi
    sleep 3
    RETRY_COUNT=$((RETRY_COUNT+1))
done

if ! iwgetid -r $WLAN_IFACE > /dev/null 2>&1; then
    sudo wpa_supplicant -B -i $WLAN_IFACE -c /{wpa_conf} -D nl80211,wext
    sleep 8
fi
{addressing}
"""

_STATIC_ADDRESSING = """sudo ip addr flush dev {iface}
sudo ip addr add {ip}/{netmask} dev {iface}
sudo ip route add default via {gateway}
echo "nameserver {dns}" | sudo tee /etc/resolv.conf > /dev/null"""


def read_list(path: Path) -> list[str]:
    if not path.exists():
        return []
    return [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def write_sorted_list(path: Path, items: Iterable[str]) -> list[str]:
    """Write ``items`` one per line, deduplicated and sorted."""
    entries = sorted({item.strip() for item in items if item.strip()})
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{entry}\n" for entry in entries), encoding="utf-8")
    return entries


class BootConfigInjector:
    """Writes hostname, startup, network and SSH configuration for first boot."""

    def __init__(self, data_root: Path, boot_root: Path, runner: Optional[CommandRunner] = None):
        self.data_root = Path(data_root)
        self.boot_root = Path(boot_root)
        self.runner = runner
        self._manifest: list[str] = []

    # ------------------------------------------------------------------
    # Persistence manifest and package list
    # ------------------------------------------------------------------

    def persist(self, *relative_paths: str) -> None:
        """Register data-partition paths in the persistence manifest."""
        for relative in relative_paths:
            relative = relative.strip().lstrip("/")
            if relative and relative not in self._manifest:
                self._manifest.append(relative)

    def finalize_manifest(self) -> list[str]:
        path = self.data_root / MANIFEST_PATH
        entries = write_sorted_list(path, read_list(path) + self._manifest)
        log.debug(f"Persistence manifest has {len(entries)} entries")
        return entries

    def write_package_list(self, packages: Iterable[str]) -> list[str]:
        """Merge ``packages`` into onboot.lst on boot and mirror it on data."""
        boot_list = self.boot_root / PACKAGE_LIST_PATH
        entries = write_sorted_list(boot_list, read_list(boot_list) + list(packages))
        write_sorted_list(self.data_root / PACKAGE_LIST_PATH, entries)
        log.info(f"Boot package list: {', '.join(entries) if entries else '(empty)'}")
        return entries

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def set_hostname(self, hostname: str) -> None:
        hostname = hostname.strip()
        if not hostname or any(char.isspace() for char in hostname):
            raise ConfigInjectionError(f"Invalid hostname: {hostname!r}")
        self._write("etc/hostname", hostname + "\n")
        self.persist("etc/hostname")
        log.info(f"Hostname set to {hostname}")

    def append_bootlocal(self, line: str) -> None:
        """Append ``line`` to bootlocal.sh unless it is already there."""
        path = self.data_root / BOOTLOCAL_PATH
        text = self._ensure_bootlocal()
        if line in text.splitlines():
            return
        separator = "" if not text or text.endswith("\n") else "\n"
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"{separator}{line}\n")

    def configure_network(self, network: NetworkConfig) -> None:
        if network.kind == "wifi":
            self._configure_wifi(network)
        elif network.kind == "ethernet":
            self._configure_ethernet(network)
        else:
            raise ConfigInjectionError(f"Unknown network kind: {network.kind!r}")

    def install_ssh_key(self, public_key: str) -> None:
        """Install an authorized key for the tc user."""
        key = public_key.strip()
        if not key:
            raise ConfigInjectionError("SSH public key is empty")
        ssh_dir = self.data_root / SSH_DIR_PATH
        keys_file = ssh_dir / "authorized_keys"
        try:
            ssh_dir.mkdir(parents=True, exist_ok=True)
            keys_file.write_text(key + "\n", encoding="utf-8")
            os.chmod(ssh_dir, 0o700)
            os.chmod(keys_file, 0o600)
            os.chown(ssh_dir, TC_UID, STAFF_GID)
            os.chown(keys_file, TC_UID, STAFF_GID)
        except OSError as error:
            raise ConfigInjectionError(f"Failed to install SSH key: {error}") from error
        self.persist(SSH_DIR_PATH)
        log.info("Installed SSH authorized key for tc")

    def generate_access_key(self, key_dir: Path, hostname: str) -> Path:
        """Generate an RSA key pair for logging in as tc and install its public half.

        Returns:
            Path of the private key, which stays in ``key_dir``
        """
        if self.runner is None:
            raise ConfigInjectionError("Generating an access key needs a command runner")
        private_key = Path(key_dir) / f"{hostname}_id_rsa"
        try:
            self.runner.run(
                [
                    "ssh-keygen",
                    "-q",
                    "-t",
                    "rsa",
                    "-b",
                    "4096",
                    "-N",
                    "",
                    "-C",
                    f"piCoreAccessKey@{hostname}",
                    "-f",
                    str(private_key),
                ]
            )
            public_key = private_key.with_name(private_key.name + ".pub").read_text(encoding="utf-8")
        except CommandError as error:
            raise ConfigInjectionError(f"ssh-keygen failed: {error.stderr}") from error
        except OSError as error:
            raise ConfigInjectionError(f"Generated public key is unreadable: {error}") from error
        self.install_ssh_key(public_key)
        log.info(f"Generated access key pair {private_key.name}")
        return private_key

    def set_password(self, password: str) -> None:
        """Set the tc password on every boot from bootlocal.sh."""
        if not password or any(char in password for char in _PASSWORD_FORBIDDEN):
            raise ConfigInjectionError("Password is empty or contains shell or chpasswd metacharacters")
        self.append_bootlocal(f'echo "tc:{password}" | sudo chpasswd')
        log.info("Password login for tc configured in bootlocal.sh")

    def generate_host_keys(self) -> None:
        """Pre-generate SSH host keys so first boot does not have to."""
        if self.runner is None:
            raise ConfigInjectionError("Generating host keys needs a command runner")
        (self.data_root / "etc/ssh").mkdir(parents=True, exist_ok=True)
        try:
            self.runner.run(["ssh-keygen", "-A", "-f", str(self.data_root)])
        except CommandError as error:
            raise ConfigInjectionError(f"ssh-keygen failed: {error.stderr}") from error
        self.persist("etc/ssh")

    def finalize(self) -> list[str]:
        """Ensure SSHD starts at boot, then write the sorted manifest."""
        self.append_bootlocal(SSHD_START_LINE)
        os.chmod(self.data_root / BOOTLOCAL_PATH, 0o755)
        self.persist(BOOTLOCAL_PATH)
        return self.finalize_manifest()

    def _configure_wifi(self, network: NetworkConfig) -> None:
        if not network.ssid:
            raise ConfigInjectionError("Wi-Fi configuration needs an SSID")
        psk_line = f'    psk="{network.psk}"\n' if network.psk else "    key_mgmt=NONE\n"
        self._write(
            WPA_CONF_PATH,
            "ctrl_interface=DIR=/var/run/wpa_supplicant GROUP=staff\n"
            "update_config=1\n"
            f"country={network.country}\n"
            "\n"
            "network={\n"
            f'    ssid="{network.ssid}"\n'
            f"{psk_line}"
            "}\n",
        )
        if network.addressing == "static":
            addressing = self._static_addressing(network, "$WLAN_IFACE")
        else:
            addressing = "sudo udhcpc -i $WLAN_IFACE -q -b"
        self._write(
            WIFI_SCRIPT_PATH,
            _WIFI_SCRIPT.format(wpa_conf=WPA_CONF_PATH, addressing=addressing),
            mode=0o755,
        )
        self.append_bootlocal(f"/{WIFI_SCRIPT_PATH} &")
        self.persist(WPA_CONF_PATH, WIFI_SCRIPT_PATH)
        log.info(f"Configured Wi-Fi for SSID {network.ssid} ({network.addressing})")

    def _configure_ethernet(self, network: NetworkConfig) -> None:
        if network.addressing == "static":
            self._write(
                ETH0_STATIC_SCRIPT_PATH,
                "#!/bin/sh\n"
                "sudo ip link set eth0 up\n"
                "sleep 2\n" + self._static_addressing(network, "eth0") + "\n",
                mode=0o755,
            )
            self.append_bootlocal(f"/{ETH0_STATIC_SCRIPT_PATH}")
            self.persist(ETH0_STATIC_SCRIPT_PATH)
        else:
            self.append_bootlocal(ETH0_DHCP_LINE)
        log.info(f"Configured ethernet ({network.addressing})")

    @staticmethod
    def _static_addressing(network: NetworkConfig, iface: str) -> str:
        missing = [
            name
            for name in ("static_ip", "netmask", "gateway")
            if not getattr(network, name)
        ]
        if missing:
            raise ConfigInjectionError(
                f"Static addressing needs {', '.join(missing)}"
            )
        return _STATIC_ADDRESSING.format(
            iface=iface,
            ip=network.static_ip,
            netmask=network.netmask,
            gateway=network.gateway,
            dns=network.dns or network.gateway,
        )

    def _ensure_bootlocal(self) -> str:
        path = self.data_root / BOOTLOCAL_PATH
        if not path.exists():
            self._write(BOOTLOCAL_PATH, f"#!/bin/sh\n{SSHD_START_LINE}\n", mode=0o755)
        return path.read_text(encoding="utf-8")

    def _write(self, relative: str, content: str, mode: Optional[int] = None) -> Path:
        path = self.data_root / relative
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            if mode is not None:
                os.chmod(path, mode)
        except OSError as error:
            raise ConfigInjectionError(f"Failed to write {relative}: {error}") from error
        return path
