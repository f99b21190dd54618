"""Shared fixtures: in-memory key provider and network stack."""

import pytest

from wg_registry.errors import DependencyFailure
from wg_registry.interfaces import InterfaceRegistry
from wg_registry.peers import PeerRegistry
from wg_registry.settings import Settings
from wg_registry.store import ConfigStore


class FakeKeys:
    def __init__(self):
        self.generated = 0

    def generate_private_key(self):
        self.generated += 1
        return f"priv{self.generated}="

    def derive_public_key(self, private_key):
        if private_key.startswith("bad"):
            raise DependencyFailure("wg pubkey failed: invalid key")
        return "pub-" + private_key

    def generate_keypair(self):
        priv = self.generate_private_key()
        return priv, self.derive_public_key(priv)


class FakeNet:
    def __init__(self):
        self.up = set()
        self.peers = {}
        self.calls = []
        self.fail_set_peer = False
        self.fail_remove_peer = False

    def is_up(self, interface):
        return interface in self.up

    def show(self, interface):
        return f"interface: {interface}\n"

    def set_peer(self, interface, public_key, allowed):
        if self.fail_set_peer:
            raise DependencyFailure("wg set failed")
        self.calls.append(("set_peer", interface, public_key, allowed))
        self.peers.setdefault(interface, {})[public_key] = allowed

    def remove_peer(self, interface, public_key):
        if self.fail_remove_peer:
            raise DependencyFailure("wg set failed")
        self.calls.append(("remove_peer", interface, public_key))
        self.peers.get(interface, {}).pop(public_key, None)

    def bring_up(self, interface):
        self.calls.append(("bring_up", interface))
        self.up.add(interface)

    def bring_down(self, interface):
        self.calls.append(("bring_down", interface))
        self.up.discard(interface)

    def register_persistent(self, interface):
        self.calls.append(("register", interface))

    def deregister_persistent(self, interface):
        self.calls.append(("deregister", interface))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        wg_dir=tmp_path / "wireguard",
        endpoint="vpn.example.org",
        service_manager="none",
    )


@pytest.fixture
def store(settings):
    return ConfigStore(settings)


@pytest.fixture
def keys():
    return FakeKeys()


@pytest.fixture
def net():
    return FakeNet()


@pytest.fixture
def peers(store, keys, net, settings):
    return PeerRegistry(store, keys, net, settings)


@pytest.fixture
def interfaces(store, keys, net):
    return InterfaceRegistry(store, keys, net)


@pytest.fixture
def wg0(interfaces):
    """A fresh interface 10.0.0.1/24 listening on 51820."""
    return interfaces.add_interface("wg0", "10.0.0.5", 51820)
