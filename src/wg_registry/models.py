# src/wg_registry/models.py
from __future__ import annotations
import ipaddress
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union


@dataclass
class PeerEntry:
    name: str
    public_key: str
    address: str           # ex "10.0.0.2/32"
    raw: str = ""          # texte exact du bloc, séparateur vide compris

    @property
    def ip(self) -> ipaddress.IPv4Address:
        return ipaddress.IPv4Interface(self.address).ip


@dataclass
class InterfaceConfig:
    name: str                          # ex: "wg0"
    address: str                       # ex: "10.0.0.1/24"
    listen_port: Optional[int] = None
    private_key: Optional[str] = None
    last_host: Optional[int] = None    # plus haut octet hôte jamais alloué
    segments: List[Union[str, PeerEntry]] = field(default_factory=list)

    @property
    def peers(self) -> List[PeerEntry]:
        return [s for s in self.segments if isinstance(s, PeerEntry)]

    @property
    def subnet(self) -> ipaddress.IPv4Network:
        ip = ipaddress.IPv4Interface(self.address).ip
        return ipaddress.IPv4Network(f"{ip}/24", strict=False)

    def find_peer(self, name: str) -> Optional[PeerEntry]:
        wanted = name.lower()
        for p in self.peers:
            if p.name.lower() == wanted:
                return p
        return None

    def has_peer(self, name: str) -> bool:
        return self.find_peer(name) is not None


@dataclass
class InterfaceContext:
    """Resolved paths for one interface."""
    name: str
    conf_path: Path
    peer_dir: Path
    lock_path: Path


@dataclass
class AddedPeer:
    name: str
    address: str
    config_path: Path


@dataclass
class Outcome:
    name: str
    result: object = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None
