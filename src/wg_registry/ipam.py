# src/wg_registry/ipam.py
from __future__ import annotations
import ipaddress
import logging
from typing import Optional

from .errors import AddressSpaceExhausted
from .models import InterfaceConfig

logger = logging.getLogger(__name__)

FIRST_PEER_HOST = 2     # .1 est réservé à l'interface
MAX_HOST = 255


def host_octet(address: str) -> int:
    return int(ipaddress.IPv4Interface(address).ip) & 0xFF


def highest_host(config: InterfaceConfig) -> Optional[int]:
    """
    Plus haut octet hôte déjà attribué : peers présents + marque persistée.
    """
    net = config.subnet
    hosts = []
    for p in config.peers:
        if p.ip not in net:
            logger.warning("Peer %s has address %s outside %s", p.name, p.address, net)
            continue
        hosts.append(host_octet(p.address))
    if config.last_host is not None:
        hosts.append(config.last_host)
    return max(hosts) if hosts else None


def next_host(config: InterfaceConfig) -> int:
    highest = highest_host(config)
    host = FIRST_PEER_HOST if highest is None else max(highest + 1, FIRST_PEER_HOST)
    if host > MAX_HOST:
        raise AddressSpaceExhausted(f"No free address left in {config.subnet} on {config.name}")
    return host


def next_address(config: InterfaceConfig) -> str:
    """
    Retourne la prochaine IP /32 sous forme '10.0.0.X/32'.
    Les adresses libérées ne sont jamais réutilisées.
    """
    host = next_host(config)
    ip = config.subnet.network_address + host
    return f"{ip}/32"
