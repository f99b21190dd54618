# src/wg_registry/netstack.py
from __future__ import annotations

import ipaddress
import logging
import shutil
import subprocess
import urllib.error
import urllib.request
from typing import List

from .errors import DependencyFailure
from .settings import Settings

logger = logging.getLogger(__name__)


# -----------------------------
# Low-level helpers
# -----------------------------

def _which(cmd: str) -> str:
    path = shutil.which(cmd)
    if path is None:
        raise DependencyFailure(f"'{cmd}' not found in PATH")
    return path


def run_cmd(cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
    logger.debug("Running %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        raise DependencyFailure(f"'{cmd[0]}' not found in PATH")
    if check and proc.returncode != 0:
        err = (proc.stderr or proc.stdout or "").strip()
        raise DependencyFailure(f"{' '.join(cmd)} failed ({proc.returncode}): {err}")
    return proc


def detect_service_manager() -> str:
    if shutil.which("systemctl"):
        return "systemd"
    if shutil.which("sysrc"):
        return "rc"
    return "none"


# -----------------------------
# Endpoint
# -----------------------------

def discover_public_ip(url: str, timeout: float = 5.0) -> str:
    logger.debug("Fetching public address from %s", url)
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            body = response.read().decode().strip()
    except (urllib.error.URLError, OSError) as e:
        raise DependencyFailure(f"Cannot determine public address from {url}: {e}")
    try:
        ipaddress.ip_address(body)
    except ValueError:
        raise DependencyFailure(f"{url} returned an invalid address: {body[:60]!r}")
    return body


def format_endpoint(host: str, port: int) -> str:
    try:
        if ipaddress.ip_address(host).version == 6:
            return f"[{host}]:{port}"
    except ValueError:
        pass  # nom d'hôte
    return f"{host}:{port}"


def resolve_endpoint(settings: Settings, port: int) -> str:
    host = settings.endpoint or discover_public_ip(settings.public_ip_url)
    return format_endpoint(host, port)


# -----------------------------
# Public API
# -----------------------------

class NetworkStackControl:
    """wg / wg-quick / service manager wrappers for one host."""

    def __init__(self, settings: Settings):
        self.settings = settings
        manager = settings.service_manager
        self.service_manager = detect_service_manager() if manager == "auto" else manager

    def _conf(self, interface: str) -> str:
        return str(self.settings.context(interface).conf_path)

    def is_up(self, interface: str) -> bool:
        if shutil.which("wg") is None:
            return False
        return run_cmd(["wg", "show", interface], check=False).returncode == 0

    def show(self, interface: str) -> str:
        _which("wg")
        return run_cmd(["wg", "show", interface]).stdout

    def set_peer(self, interface: str, public_key: str, allowed: str) -> None:
        _which("wg")
        run_cmd(["wg", "set", interface, "peer", public_key, "allowed-ips", allowed])

    def remove_peer(self, interface: str, public_key: str) -> None:
        _which("wg")
        run_cmd(["wg", "set", interface, "peer", public_key, "remove"])

    def bring_up(self, interface: str) -> None:
        _which("wg-quick")
        run_cmd(["wg-quick", "up", self._conf(interface)])

    def bring_down(self, interface: str) -> None:
        _which("wg-quick")
        run_cmd(["wg-quick", "down", self._conf(interface)])

    def register_persistent(self, interface: str) -> None:
        if self.service_manager == "systemd":
            _which("systemctl")
            if self.settings.wg_dir.as_posix() != "/etc/wireguard":
                logger.warning(
                    "wg-quick@%s reads /etc/wireguard, but WG_DIR is %s",
                    interface, self.settings.wg_dir,
                )
            run_cmd(["systemctl", "enable", f"wg-quick@{interface}"])
        elif self.service_manager == "rc":
            _which("sysrc")
            run_cmd(["sysrc", "wireguard_enable=YES"])
            run_cmd(["sysrc", f"wireguard_interfaces+={interface}"])
        else:
            logger.info("No service manager, %s will not start at boot", interface)

    def deregister_persistent(self, interface: str) -> None:
        if self.service_manager == "systemd":
            _which("systemctl")
            run_cmd(["systemctl", "disable", f"wg-quick@{interface}"])
        elif self.service_manager == "rc":
            _which("sysrc")
            run_cmd(["sysrc", f"wireguard_interfaces-={interface}"])
        else:
            logger.info("No service manager, nothing to deregister for %s", interface)
