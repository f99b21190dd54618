# src/wg_registry/peers.py
from __future__ import annotations
import logging
import re
from typing import Callable, List, Optional

from wg_core.config_builder import generate_client_config

from .errors import (
    FATAL_ERRORS,
    AlreadyExists,
    DependencyFailure,
    InvalidArgument,
    MalformedConfig,
    NotFound,
    WgConfigError,
)
from .ipam import next_address
from .models import AddedPeer, InterfaceConfig, Outcome, PeerEntry
from .netstack import resolve_endpoint
from .settings import Settings
from .store import ConfigStore

logger = logging.getLogger(__name__)

# Le nom sert de marqueur BEGIN/END et de nom de fichier
PEER_NAME_RE = re.compile(r"^[A-Za-z0-9_.@+-]{1,64}$")


def validate_peer_name(name: str) -> None:
    if not PEER_NAME_RE.match(name) or name in (".", ".."):
        raise InvalidArgument(
            f"Invalid peer name '{name}' (letters, digits and _ . @ + - only)"
        )


def run_each(names: List[str], op: Callable[[str], object]) -> List[Outcome]:
    """
    Applique op à chaque nom ; une erreur par nom n'interrompt pas la boucle,
    sauf InvalidArgument / PermissionDenied.
    """
    outcomes = []
    for name in names:
        try:
            outcomes.append(Outcome(name=name, result=op(name)))
        except FATAL_ERRORS:
            raise
        except WgConfigError as e:
            logger.debug("%s failed: %s", name, e)
            outcomes.append(Outcome(name=name, error=e))
    return outcomes


class PeerRegistry:
    def __init__(self, store: ConfigStore, keys, net, settings: Settings):
        self.store = store
        self.keys = keys
        self.net = net
        self.settings = settings

    # ---------- Ajout ----------

    def add_peer(
        self,
        interface: str,
        name: str,
        dns: Optional[List[str]] = None,
        endpoint: Optional[str] = None,
    ) -> AddedPeer:
        validate_peer_name(name)
        self._require_interface(interface)
        with self.store.lock(interface):
            config = self.store.read_interface(interface)
            if config.has_peer(name):
                raise AlreadyExists(f"Peer '{name}' already exists on {interface}")
            return self._add_locked(config, name, dns, endpoint)

    def _add_locked(
        self,
        config: InterfaceConfig,
        name: str,
        dns: Optional[List[str]],
        endpoint: Optional[str],
    ) -> AddedPeer:
        interface = config.name
        if endpoint is None:
            endpoint = self._endpoint(config)
        server_public = self._server_public_key(config)

        priv, pub = self.keys.generate_keypair()
        address = next_address(config)

        conf = generate_client_config(
            client={
                "private_key": priv,
                "address": address,
                "dns": self.settings.dns if dns is None else dns,
            },
            server={
                "public_key": server_public,
                "endpoint": endpoint,
                "allowed_ips": self.settings.allowed_ips,
                "keepalive": self.settings.persistent_keepalive,
            },
        )

        # Fichier du peer d'abord, puis le bloc : jamais de bloc sans clé privée
        path = self.store.write_peer_file(interface, name, conf)
        try:
            self.store.append_peer_block(config, name, pub, address)
        except BaseException:
            self.store.delete_peer_file(interface, name)
            raise

        # Notification en dernier : seule étape visible de l'extérieur
        try:
            if self.net.is_up(interface):
                self.net.set_peer(interface, pub, address)
            else:
                logger.info("%s is down, %s will be loaded at next start", interface, name)
        except DependencyFailure:
            logger.warning("Rolling back %s on %s", name, interface)
            self.store.remove_peer_block(config, name)
            self.store.delete_peer_file(interface, name)
            raise

        logger.info("Added peer %s (%s) to %s", name, address, interface)
        return AddedPeer(name=name, address=address, config_path=path)

    def add_peers(
        self,
        interface: str,
        names: List[str],
        dns: Optional[List[str]] = None,
    ) -> List[Outcome]:
        for name in names:
            validate_peer_name(name)
        config = self.store.read_interface(interface)
        endpoint = self._endpoint(config)
        return run_each(names, lambda n: self.add_peer(interface, n, dns=dns, endpoint=endpoint))

    # ---------- Suppression ----------

    def remove_peer(self, interface: str, name: str) -> PeerEntry:
        validate_peer_name(name)
        self._require_interface(interface)
        with self.store.lock(interface):
            config = self.store.read_interface(interface)
            entry = config.find_peer(name)
            if entry is None:
                raise NotFound(f"Peer '{name}' does not exist on {interface}")

            # Clé publique calculée et gardée avant toute suppression
            public_key = self._peer_public_key(interface, entry)

            self.store.delete_peer_file(interface, entry.name)
            if self.net.is_up(interface):
                for key in dict.fromkeys([public_key, entry.public_key]):
                    self.net.remove_peer(interface, key)
            self.store.remove_peer_block(config, entry.name)

        logger.info("Removed peer %s (%s) from %s", entry.name, entry.address, interface)
        return entry

    def remove_peers(self, interface: str, names: List[str]) -> List[Outcome]:
        for name in names:
            validate_peer_name(name)
        self.store.read_interface(interface)
        return run_each(names, lambda n: self.remove_peer(interface, n))

    # ---------- Lecture ----------

    def list_peers(self, interface: str) -> List[PeerEntry]:
        return self.store.read_interface(interface).peers

    def peer_config(self, interface: str, name: str) -> str:
        validate_peer_name(name)
        entry = self.store.read_interface(interface).find_peer(name)
        if entry is None:
            raise NotFound(f"Peer '{name}' does not exist on {interface}")
        return self.store.read_peer_file(interface, entry.name)

    # ---------- Helpers ----------

    def _require_interface(self, interface: str) -> None:
        # avant le verrou : pas de fichier .lock pour une interface absente
        if not self.store.exists(interface):
            raise NotFound(f"Interface '{interface}' does not exist")

    def _endpoint(self, config: InterfaceConfig) -> str:
        if config.listen_port is None:
            raise MalformedConfig(f"{config.name} has no ListenPort")
        return resolve_endpoint(self.settings, config.listen_port)

    def _server_public_key(self, config: InterfaceConfig) -> str:
        if not config.private_key:
            raise MalformedConfig(f"{config.name} has no PrivateKey")
        return self.keys.derive_public_key(config.private_key)

    def _peer_public_key(self, interface: str, entry: PeerEntry) -> str:
        priv = self.store.read_peer_private_key(interface, entry.name)
        if priv is None:
            logger.warning(
                "No peer file for %s on %s, using the PublicKey stored in the interface file",
                entry.name, interface,
            )
            return entry.public_key
        public_key = self.keys.derive_public_key(priv)
        if public_key != entry.public_key:
            logger.warning(
                "Peer file of %s does not match its block on %s", entry.name, interface
            )
        return public_key
