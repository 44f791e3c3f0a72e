import json

import pytest

from ignite.errors import GenerationFailure
from ignite.peers import PeerDirectoryBuilder, load_peer_directory
from ignite.protocol import PeerDirectory


def test_builds_complete_directory(tmp_path, issuer):
    directory = PeerDirectoryBuilder(issuer, tmp_path, 4).build()
    assert sorted(directory.peers) == [0, 1, 2, 3]
    assert len(set(directory.peers.values())) == 4
    on_disk = json.loads((tmp_path / "peers.json").read_text())
    assert list(on_disk) == ["node0", "node1", "node2", "node3"]


def test_replaces_previous_directory(tmp_path, issuer):
    first = PeerDirectoryBuilder(issuer, tmp_path, 3).build()
    second = PeerDirectoryBuilder(issuer, tmp_path, 3).build()
    assert first.peers != second.peers
    assert load_peer_directory(tmp_path / "peers.json").peers == second.peers


def test_short_directory_fails(tmp_path, issuer):
    issuer.short_peers = True
    with pytest.raises(GenerationFailure, match="2 entries, expected 3"):
        PeerDirectoryBuilder(issuer, tmp_path, 3).build()


def test_duplicate_peer_ids_are_incomplete():
    directory = PeerDirectory(peers={0: "a", 1: "a"})
    assert not directory.is_complete(2)


def test_unreadable_directory(tmp_path):
    path = tmp_path / "peers.json"
    path.write_text("{not json")
    with pytest.raises(GenerationFailure, match="unreadable"):
        load_peer_directory(path)
    path.write_text(json.dumps({"alice": "x"}))
    with pytest.raises(GenerationFailure):
        load_peer_directory(path)


def test_missing_directory(tmp_path):
    with pytest.raises(GenerationFailure, match="not found"):
        load_peer_directory(tmp_path / "peers.json")
