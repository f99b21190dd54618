# src/wg_registry/settings.py
from __future__ import annotations
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .errors import InvalidArgument
from .models import InterfaceContext

logger = logging.getLogger(__name__)


DEFAULT_CONF_PATH = Path("/usr/local/etc/wg-config.conf")
CONF_ENV_VAR = "WG_CONFIG_CONF"

SERVICE_MANAGERS = ("auto", "systemd", "rc", "none")


def default_wg_dir() -> Path:
    if sys.platform.startswith("linux"):
        return Path("/etc/wireguard")
    return Path("/usr/local/etc/wireguard")


@dataclass
class Settings:
    wg_dir: Path = field(default_factory=default_wg_dir)
    peers_dir: Optional[Path] = None           # défaut: <wg_dir>/peers
    endpoint: Optional[str] = None             # IP/nom public, sinon découverte
    public_ip_url: str = "https://ifconfig.me/ip"
    dns: List[str] = field(default_factory=lambda: ["1.1.1.1"])
    allowed_ips: List[str] = field(default_factory=lambda: ["0.0.0.0/0", "::/0"])
    persistent_keepalive: int = 25
    service_manager: str = "auto"
    log_level: str = "WARNING"

    @property
    def peers_root(self) -> Path:
        return self.peers_dir if self.peers_dir is not None else self.wg_dir / "peers"

    def context(self, interface: str) -> InterfaceContext:
        return InterfaceContext(
            name=interface,
            conf_path=self.wg_dir / f"{interface}.conf",
            peer_dir=self.peers_root / interface,
            lock_path=self.wg_dir / f".{interface}.lock",
        )


def split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply(settings: Settings, key: str, value: str) -> None:
    if key == "WG_DIR":
        settings.wg_dir = Path(value)
    elif key == "PEERS_DIR":
        settings.peers_dir = Path(value) if value else None
    elif key == "ENDPOINT":
        settings.endpoint = value or None
    elif key == "PUBLIC_IP_URL":
        settings.public_ip_url = value
    elif key == "DNS":
        settings.dns = split_list(value)
    elif key == "ALLOWED_IPS":
        settings.allowed_ips = split_list(value)
    elif key == "PERSISTENT_KEEPALIVE":
        try:
            settings.persistent_keepalive = int(value)
        except ValueError:
            raise InvalidArgument(f"PERSISTENT_KEEPALIVE must be an integer, got '{value}'")
    elif key == "SERVICE_MANAGER":
        if value not in SERVICE_MANAGERS:
            raise InvalidArgument(
                f"SERVICE_MANAGER must be one of {', '.join(SERVICE_MANAGERS)}, got '{value}'"
            )
        settings.service_manager = value
    elif key == "LOG_LEVEL":
        if not isinstance(logging.getLevelName(value.upper()), int):
            raise InvalidArgument(f"Unknown LOG_LEVEL '{value}'")
        settings.log_level = value.upper()
    else:
        logger.warning("Ignoring unknown setting %s", key)


def parse_settings(text: str) -> Settings:
    """
    Lit un fichier KEY=value compatible sh (commentaires '#', guillemets).
    """
    settings = Settings()
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logger.warning("Ignoring malformed setting line: %s", line)
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        _apply(settings, key, value)
    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    if path is None:
        env = os.environ.get(CONF_ENV_VAR)
        path = Path(env) if env else DEFAULT_CONF_PATH
    if not path.exists():
        logger.debug("No settings file at %s, using defaults", path)
        return Settings()
    with path.open("r", encoding="utf-8") as f:
        return parse_settings(f.read())
