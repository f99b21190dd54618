# src/wg_registry/interfaces.py

from __future__ import annotations
import ipaddress
import logging
import re
from typing import List, Optional

from wg_core.config_builder import generate_interface_config

from .errors import InvalidArgument, NotFound, WgConfigError
from .models import InterfaceConfig, Outcome
from .peers import run_each
from .store import ConfigStore

logger = logging.getLogger(__name__)

# Même règle que wg-quick
INTERFACE_NAME_RE = re.compile(r"^[a-zA-Z0-9_=+.-]{1,15}$")


def validate_interface_name(name: str) -> None:
    if not INTERFACE_NAME_RE.match(name) or name in (".", ".."):
        raise InvalidArgument(f"Invalid interface name '{name}'")


def normalize_address(address: str) -> str:
    """
    Toujours .1 pour l'interface, quel que soit l'octet hôte donné.
    '192.168.250.42' -> '192.168.250.1/24'
    """
    try:
        ip = ipaddress.IPv4Address(address.split("/")[0].strip())
    except ValueError:
        raise InvalidArgument(f"Invalid IPv4 address '{address}'")
    net = ipaddress.IPv4Network(f"{ip}/24", strict=False)
    return f"{net.network_address + 1}/24"


def validate_port(port) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid port '{port}'")
    if not 1 <= value <= 65535:
        raise InvalidArgument(f"Port {value} out of range 1-65535")
    return value


class InterfaceRegistry:
    def __init__(self, store: ConfigStore, keys, net):
        self.store = store
        self.keys = keys
        self.net = net

    def add_interface(
        self,
        name: str,
        address: str,
        port,
        private_key: Optional[str] = None,
    ) -> InterfaceConfig:
        validate_interface_name(name)
        if not address:
            raise InvalidArgument("An address is required (-a)")
        if port is None or port == "":
            raise InvalidArgument("A listen port is required (-p)")
        address = normalize_address(address)
        listen_port = validate_port(port)

        if private_key:
            private_key = private_key.strip()
            self.keys.derive_public_key(private_key)  # rejette une clé invalide
        else:
            private_key = self.keys.generate_private_key()

        text = generate_interface_config(address, private_key, listen_port)
        with self.store.lock(name):
            path = self.store.create_interface(name, text)
        logger.info("Wrote %s", path)

        self.net.register_persistent(name)
        self.net.bring_up(name)
        return self.store.read_interface(name)

    def remove_interface(self, name: str) -> None:
        validate_interface_name(name)
        if not self.store.exists(name):
            raise NotFound(f"Interface '{name}' does not exist")
        with self.store.lock(name):
            if self.net.is_up(name):
                self.net.bring_down(name)
            self.net.deregister_persistent(name)
            self.store.delete_interface(name)
        logger.info("Removed interface %s", name)

    def remove_interfaces(self, names: List[str]) -> List[Outcome]:
        for name in names:
            validate_interface_name(name)
        return run_each(names, self.remove_interface)

    def list_interfaces(self) -> List[Outcome]:
        # Un fichier illisible est signalé pour lui seul
        outcomes = []
        for name in self.store.list_interfaces():
            try:
                outcomes.append(Outcome(name=name, result=self.store.read_interface(name)))
            except WgConfigError as e:
                outcomes.append(Outcome(name=name, error=e))
        return outcomes

    def public_key(self, config: InterfaceConfig) -> Optional[str]:
        if not config.private_key:
            return None
        return self.keys.derive_public_key(config.private_key)
