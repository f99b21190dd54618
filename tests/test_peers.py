"""Tests for adding and removing peers."""

import pytest

from wg_registry import store as store_mod
from wg_registry.errors import (
    AlreadyExists,
    DependencyFailure,
    InvalidArgument,
    NotFound,
    PermissionDenied,
)


# Fichier écrit à la main : pas de marque LastHost
SERVER_HEADER = """[Interface]
Address = 10.0.0.1/24
PrivateKey = priv1=
ListenPort = 51820
"""

ALICE_BLOCK = """
# BEGIN alice
[Peer]
PublicKey = pub-alice
AllowedIPs = 10.0.0.2/32
# END alice
"""

BOB_BLOCK = ALICE_BLOCK.replace("alice", "bob").replace("10.0.0.2", "10.0.0.3")


def _write_interface(store, name, blocks):
    path = store.context(name).conf_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(SERVER_HEADER + blocks)


def _snapshot(store, interface):
    ctx = store.context(interface)
    files = {}
    if ctx.peer_dir.exists():
        files = {p.name: p.read_text() for p in sorted(ctx.peer_dir.iterdir())}
    return ctx.conf_path.read_text(), files


def _addresses(peers, interface):
    return [(p.name, p.address) for p in peers.list_peers(interface)]


# ============================================================================
# ADD
# ============================================================================

class TestAddPeer:

    def test_addresses_start_at_two_and_increase(self, peers, wg0):
        results = [peers.add_peer("wg0", name) for name in ("alice", "bob", "carol")]
        assert [r.address for r in results] == ["10.0.0.2/32", "10.0.0.3/32", "10.0.0.4/32"]

    def test_end_to_end_example(self, peers, store, wg0):
        assert wg0.address == "10.0.0.1/24"
        assert peers.add_peer("wg0", "alice").address == "10.0.0.2/32"
        assert peers.add_peer("wg0", "bob").address == "10.0.0.3/32"

        peers.remove_peer("wg0", "alice")
        text = store.context("wg0").conf_path.read_text()
        assert "# BEGIN bob" in text
        assert "alice" not in text

        assert peers.add_peer("wg0", "carol").address == "10.0.0.4/32"

    def test_removing_newest_peer_does_not_free_its_address(self, peers, wg0):
        peers.add_peer("wg0", "alice")
        peers.add_peer("wg0", "bob")
        peers.remove_peer("wg0", "bob")
        assert peers.add_peer("wg0", "carol").address == "10.0.0.4/32"

    def test_allocation_is_per_interface(self, peers, interfaces, wg0):
        interfaces.add_interface("wg1", "10.1.0.1", 51821)
        peers.add_peer("wg0", "alice")
        peers.add_peer("wg1", "bob")
        peers.add_peer("wg0", "carol")
        assert _addresses(peers, "wg0") == [("alice", "10.0.0.2/32"), ("carol", "10.0.0.3/32")]
        assert _addresses(peers, "wg1") == [("bob", "10.1.0.2/32")]

    def test_peer_config_content(self, peers, store, wg0):
        added = peers.add_peer("wg0", "alice")
        assert added.config_path == store.peer_file("wg0", "alice")
        assert added.config_path.read_text() == (
            "[Interface]\n"
            "PrivateKey = priv2=\n"
            "Address = 10.0.0.2/32\n"
            "DNS = 1.1.1.1\n"
            "\n"
            "[Peer]\n"
            "PublicKey = pub-priv1=\n"
            "Endpoint = vpn.example.org:51820\n"
            "AllowedIPs = 0.0.0.0/0, ::/0\n"
            "PersistentKeepalive = 25\n"
        )

    def test_dns_override(self, peers, wg0):
        added = peers.add_peer("wg0", "alice", dns=["10.0.0.1", "9.9.9.9"])
        assert "DNS = 10.0.0.1, 9.9.9.9\n" in added.config_path.read_text()

    def test_interface_file_stores_only_public_key(self, peers, store, wg0):
        peers.add_peer("wg0", "alice")
        text = store.context("wg0").conf_path.read_text()
        assert "PublicKey = pub-priv2=" in text
        assert "PrivateKey = priv2=" not in text

    def test_running_stack_is_notified(self, peers, net, wg0):
        peers.add_peer("wg0", "alice")
        assert ("set_peer", "wg0", "pub-priv2=", "10.0.0.2/32") in net.calls

    def test_down_interface_is_not_notified(self, peers, net, wg0):
        net.up.discard("wg0")
        peers.add_peer("wg0", "alice")
        assert not [c for c in net.calls if c[0] == "set_peer"]

    def test_duplicate_is_case_insensitive_and_changes_nothing(self, peers, store, wg0):
        peers.add_peer("wg0", "alice")
        before = _snapshot(store, "wg0")
        with pytest.raises(AlreadyExists):
            peers.add_peer("wg0", "ALICE")
        assert _snapshot(store, "wg0") == before

    def test_stack_failure_rolls_back(self, peers, store, net, wg0):
        peers.add_peer("wg0", "alice")
        before = _snapshot(store, "wg0")
        net.fail_set_peer = True
        with pytest.raises(DependencyFailure):
            peers.add_peer("wg0", "bob")
        after = _snapshot(store, "wg0")
        assert after[1] == before[1]
        assert "bob" not in after[0]

    def test_unknown_interface(self, peers):
        with pytest.raises(NotFound):
            peers.add_peer("wg7", "alice")

    def test_unknown_interface_leaves_no_lock_file(self, peers, settings):
        with pytest.raises(NotFound):
            peers.add_peer("wg7", "alice")
        assert not settings.context("wg7").lock_path.exists()
        assert not settings.wg_dir.exists()

    def test_file_without_high_water_mark(self, peers, store):
        _write_interface(store, "wg0", ALICE_BLOCK + BOB_BLOCK)
        peers.remove_peer("wg0", "bob")
        assert peers.add_peer("wg0", "carol").address == "10.0.0.4/32"

    def test_dual_stack_block(self, peers, store):
        _write_interface(
            store, "wg0", ALICE_BLOCK.replace("10.0.0.2/32", "fd00::2/128, 10.0.0.2/32")
        )
        assert peers.add_peer("wg0", "bob").address == "10.0.0.3/32"

    @pytest.mark.parametrize("name", ["", "two words", "a#b", "../etc", "a/b"])
    def test_invalid_names(self, peers, wg0, name):
        with pytest.raises(InvalidArgument):
            peers.add_peer("wg0", name)


class TestAddPeers:

    def test_existing_peer_does_not_stop_the_others(self, peers, wg0):
        peers.add_peer("wg0", "bob")
        outcomes = peers.add_peers("wg0", ["alice", "Bob", "carol"])

        assert [o.ok for o in outcomes] == [True, False, True]
        assert isinstance(outcomes[1].error, AlreadyExists)
        assert [p.name for p in peers.list_peers("wg0")] == ["bob", "alice", "carol"]

    def test_invalid_name_aborts_before_any_change(self, peers, store, wg0):
        before = _snapshot(store, "wg0")
        with pytest.raises(InvalidArgument):
            peers.add_peers("wg0", ["alice", "b ob"])
        assert _snapshot(store, "wg0") == before

    def test_permission_denied_aborts(self, peers, wg0, monkeypatch):
        monkeypatch.setattr(store_mod, "is_accessible", lambda path: False)
        with pytest.raises(PermissionDenied):
            peers.add_peers("wg0", ["alice"])

    def test_unknown_interface(self, peers):
        with pytest.raises(NotFound):
            peers.add_peers("wg7", ["alice"])


# ============================================================================
# REMOVE
# ============================================================================

class TestRemovePeer:

    def test_removes_one_block_and_one_file(self, peers, store, wg0):
        for name in ("alice", "bob", "carol"):
            peers.add_peer("wg0", name)
        text_before, files_before = _snapshot(store, "wg0")
        config = store.read_interface("wg0")
        kept = [p.raw for p in config.peers if p.name != "bob"]

        removed = peers.remove_peer("wg0", "bob")

        text_after, files_after = _snapshot(store, "wg0")
        assert removed.address == "10.0.0.3/32"
        assert set(files_after) == {"alice.conf", "carol.conf"}
        assert all(files_after[n] == files_before[n] for n in files_after)
        for raw in kept:
            assert raw in text_after
        assert [p.name for p in store.read_interface("wg0").peers] == ["alice", "carol"]

    def test_key_comes_from_peer_file(self, peers, net, wg0):
        peers.add_peer("wg0", "alice")
        peers.remove_peer("wg0", "alice")
        assert ("remove_peer", "wg0", "pub-priv2=") in net.calls
        assert net.peers["wg0"] == {}

    def test_falls_back_to_block_key_without_peer_file(self, peers, store, net, wg0):
        peers.add_peer("wg0", "alice")
        store.delete_peer_file("wg0", "alice")
        peers.remove_peer("wg0", "alice")
        assert ("remove_peer", "wg0", "pub-priv2=") in net.calls
        assert store.read_interface("wg0").peers == []

    def test_case_insensitive_lookup(self, peers, store, wg0):
        peers.add_peer("wg0", "alice")
        peers.remove_peer("wg0", "Alice")
        assert not store.peer_file("wg0", "alice").exists()

    def test_unknown_interface_leaves_no_lock_file(self, peers, settings):
        with pytest.raises(NotFound):
            peers.remove_peer("wg7", "alice")
        assert not settings.context("wg7").lock_path.exists()

    def test_missing_peer(self, peers, store, wg0):
        peers.add_peer("wg0", "alice")
        before = _snapshot(store, "wg0")
        with pytest.raises(NotFound):
            peers.remove_peer("wg0", "bob")
        assert _snapshot(store, "wg0") == before

    def test_stack_failure_keeps_block_for_retry(self, peers, store, net, wg0):
        peers.add_peer("wg0", "alice")
        net.fail_remove_peer = True
        with pytest.raises(DependencyFailure):
            peers.remove_peer("wg0", "alice")
        assert store.read_interface("wg0").find_peer("alice") is not None

        net.fail_remove_peer = False
        peers.remove_peer("wg0", "alice")
        assert store.read_interface("wg0").peers == []

    def test_remove_peers_reports_missing_and_continues(self, peers, wg0):
        peers.add_peer("wg0", "alice")
        peers.add_peer("wg0", "bob")
        outcomes = peers.remove_peers("wg0", ["ghost", "bob"])
        assert isinstance(outcomes[0].error, NotFound)
        assert outcomes[1].ok
        assert [p.name for p in peers.list_peers("wg0")] == ["alice"]


class TestPeerConfig:

    def test_returns_stored_file(self, peers, wg0):
        added = peers.add_peer("wg0", "alice")
        assert peers.peer_config("wg0", "ALICE") == added.config_path.read_text()

    def test_unknown_peer(self, peers, wg0):
        with pytest.raises(NotFound):
            peers.peer_config("wg0", "ghost")
