import ipaddress

import pytest

from wg_overlay.errors import CorruptConfig, DuplicateName, InvalidName, NotFound, NotInstalled
from wg_overlay.init_server import ServerConfigStore
from wg_overlay.ipam import overlay_network
from wg_overlay.peers import PeerRegistry
from wg_overlay.wireguard import render_peer_block


def read(paths):
    return paths.config_file.read_bytes()


def test_add_appends_marker_block(registry, paths):
    before = paths.config_file.read_text()
    peer = registry.add("alice", "ka=")

    assert peer.address == ipaddress.IPv4Address("10.16.0.2")
    assert paths.config_file.read_text() == before + "\n" + render_peer_block(peer)


def test_add_then_remove_is_byte_identical(registry, paths):
    before = read(paths)
    registry.add("x", "kx=")
    registry.remove("x")
    assert read(paths) == before


def test_add_then_remove_with_existing_peers(registry, paths):
    registry.add("a", "ka=")
    registry.add("b", "kb=")
    before = read(paths)

    registry.add("c", "kc=")
    registry.remove("c")
    assert read(paths) == before


def test_repeated_cycles_are_stable(registry, paths):
    before = read(paths)
    for _ in range(5):
        registry.add("cycle", "k=")
        registry.remove("cycle")
    assert read(paths) == before


def test_add_then_remove_keeps_trailing_blank_line(store, paths):
    with paths.config_file.open("a") as f:
        f.write("\n")
    before = read(paths)

    PeerRegistry(store).add("x", "kx=")
    PeerRegistry(store).remove("x")
    assert read(paths) == before


def test_add_then_remove_after_last_peer_removed(store, paths):
    PeerRegistry(store).add("a", "ka=")
    with paths.config_file.open("a") as f:
        f.write("\n")
    PeerRegistry(store).remove("a")
    before = read(paths)

    PeerRegistry(store).add("x", "kx=")
    PeerRegistry(store).remove("x")
    assert read(paths) == before


def test_add_then_remove_with_blank_lines_between_blocks(registry, paths):
    registry.add("a", "ka=")
    registry.add("b", "kb=")
    text = paths.config_file.read_text()
    paths.config_file.write_text(text.replace("# END a\n", "# END a\n\n\n"))
    before = read(paths)

    registry.add("c", "kc=")
    registry.remove("c")
    assert read(paths) == before


def test_remove_middle_keeps_order(registry, store, paths):
    a = registry.add("a", "ka=")
    registry.add("b", "kb=")
    c = registry.add("c", "kc=")

    removed = registry.remove("b")

    assert removed.name == "b"
    assert [p.name for p in registry.list()] == ["a", "c"]
    header = store.read_document().header
    assert paths.config_file.read_text() == (
        header + "\n" + render_peer_block(a) + "\n" + render_peer_block(c)
    )


def test_freed_address_is_reused_lowest_first(registry):
    registry.add("a", "ka=")
    registry.add("b", "kb=")
    registry.add("c", "kc=")
    registry.remove("b")

    d = registry.add("d", "kd=")
    assert d.address == ipaddress.IPv4Address("10.16.0.3")


def test_list_round_trip(registry):
    x = registry.add("x", "kx=")
    y = registry.add("y", "ky=")

    peers = registry.list()
    assert peers == [x, y]
    assert x.address != y.address
    net = overlay_network()
    assert all(p.address in net for p in peers)
    assert registry.get("x") == x


def test_duplicate_name(registry, paths):
    registry.add("alice", "ka=")
    before = read(paths)
    with pytest.raises(DuplicateName):
        registry.add("alice", "other=")
    assert read(paths) == before


@pytest.mark.parametrize("name", ["", "with space", "a/b", "../etc", "é", "a.b", "semi;colon", "evil\n", "a\nb"])
def test_invalid_names(registry, name):
    with pytest.raises(InvalidName):
        registry.add(name, "k=")


def test_valid_name_charset(registry):
    assert registry.add("Phone_2-work", "k=").name == "Phone_2-work"


def test_remove_missing_is_noop(registry, paths):
    registry.add("alice", "ka=")
    before = read(paths)
    assert registry.remove("bob") is None
    assert read(paths) == before


def test_get_missing_raises(registry):
    with pytest.raises(NotFound):
        registry.get("nobody")


def test_add_before_install(paths):
    registry = PeerRegistry(ServerConfigStore(paths))
    with pytest.raises(NotInstalled):
        registry.add("alice", "ka=")
    assert not paths.config_file.exists()


def test_corrupt_config_is_fatal(registry, paths):
    registry.add("alice", "ka=")
    broken = paths.config_file.read_text().replace("# END alice\n", "")
    paths.config_file.write_text(broken)

    with pytest.raises(CorruptConfig):
        registry.list()
    with pytest.raises(CorruptConfig):
        registry.add("bob", "kb=")
    with pytest.raises(CorruptConfig):
        registry.remove("alice")
    assert paths.config_file.read_text() == broken


def test_unmanaged_peer_address_is_skipped(registry, paths):
    text = paths.config_file.read_text()
    paths.config_file.write_text(text + "\n[Peer]\nPublicKey = manual=\nAllowedIPs = 10.16.0.2/32\n")

    peer = registry.add("alice", "ka=")
    assert peer.address == ipaddress.IPv4Address("10.16.0.3")


def test_interface_section_untouched(registry, store):
    header = store.read_document().header
    registry.add("a", "ka=")
    registry.add("b", "kb=")
    registry.remove("a")
    assert store.read_document().header == header
