import dataclasses

import pytest
import yaml

from ignite.config import INTEGRITY_KEY_FIELD, PK_RAW_FIELD, ServiceConfig
from ignite.distribute import identity_documents
from ignite.errors import GenerationFailure, KeyConsistencyViolation, RunInProgress, ValidationFailure
from ignite.protocol import KeyState
from ignite.state import RunLedger, RunLock
from ignite.workflow import Provisioner


def run(settings, issuer, **kwargs):
    return Provisioner(settings, issuer=issuer).run(**kwargs)


def test_three_node_cluster(settings, issuer):
    result = run(settings, issuer)

    assert sorted(result.peers.peers) == [0, 1, 2]
    assert result.copies == 6
    for i in range(3):
        root = settings.directory / f"node{i}"
        assert len(identity_documents(root)) == 3
        assert (root / "peers.json").exists()
        node_config = yaml.safe_load((root / "config.yaml").read_text())
        assert node_config["mpc_threshold"] == 2
        assert node_config["event_initiator_pubkey"] == result.config.event_initiator_pubkey
    assert result.key_states == {
        "event_initiator": KeyState.GENERATED,
        "integrity_signer": KeyState.GENERATED,
    }
    shared = ServiceConfig.load(settings.service_config_path)
    assert shared.get(PK_RAW_FIELD) == (settings.directory / "event_initiator.key").read_text()
    assert shared.get(INTEGRITY_KEY_FIELD) == (settings.directory / "integrity_signer.key").read_text()


@pytest.mark.parametrize("nodes,threshold", [(2, 0), (2, 1), (4, 3), (5, 2)])
def test_cluster_sizes(settings, issuer, nodes, threshold):
    s = dataclasses.replace(settings, nodes=nodes, threshold=threshold)
    result = run(s, issuer)
    assert len(result.peers) == nodes
    assert len(set(result.peers.peers.values())) == nodes
    assert len(result.roots) == nodes
    for root in result.roots.values():
        assert len(identity_documents(root)) == nodes


def test_rerun_reuses_both_keys(settings, issuer):
    run(settings, issuer)
    initiator = (settings.directory / "event_initiator.key").read_text()
    integrity = (settings.directory / "integrity_signer.key").read_text()

    result = run(settings, issuer)

    assert result.key_states == {
        "event_initiator": KeyState.PRESENT_VERIFIED,
        "integrity_signer": KeyState.PRESENT_VERIFIED,
    }
    assert (settings.directory / "event_initiator.key").read_text() == initiator
    assert (settings.directory / "integrity_signer.key").read_text() == integrity
    assert issuer.initiator_calls == 1


def test_rerun_after_deleting_peer_directory(settings, issuer):
    first = run(settings, issuer)
    (settings.directory / "peers.json").unlink()

    second = run(settings, issuer)

    assert sorted(second.peers.peers) == [0, 1, 2]
    assert second.peers.peers != first.peers.peers
    assert set(second.key_states.values()) == {KeyState.PRESENT_VERIFIED}


def test_tampered_initiator_key_stops_the_run(settings, issuer):
    from ignite.crypto import generate_ed25519_keypair

    run(settings, issuer)
    other, _ = generate_ed25519_keypair()
    (settings.directory / "event_initiator.key").write_text(other)

    with pytest.raises(KeyConsistencyViolation):
        run(settings, issuer)
    assert not (settings.directory / "node0").exists()


def test_invalid_threshold_touches_nothing(settings, issuer):
    settings.directory.mkdir(parents=True)
    (settings.directory / "node0").mkdir()
    (settings.directory / "peers.json").write_text("{}")
    bad = dataclasses.replace(settings, threshold=3)

    with pytest.raises(ValidationFailure, match="must be less than"):
        run(bad, issuer)

    assert (settings.directory / "node0").is_dir()
    assert (settings.directory / "peers.json").read_text() == "{}"
    assert not (settings.directory / "config.yaml").exists()
    assert not settings.service_config_path.exists()


def test_invalid_request_creates_no_directory(settings, issuer):
    with pytest.raises(ValidationFailure):
        run(dataclasses.replace(settings, threshold=7), issuer)
    assert not settings.directory.exists()


def test_missing_identity_fails_whole_run(settings, issuer):
    issuer.fail_identity_for = {"node1"}
    with pytest.raises(GenerationFailure, match="node1"):
        run(settings, issuer)
    assert RunLedger(settings.directory).load() is None


def test_concurrent_run_is_refused(settings, issuer):
    settings.directory.mkdir(parents=True)
    with RunLock(settings.directory):
        with pytest.raises(RunInProgress, match="lock"):
            run(settings, issuer)


def test_setup_with_registration(settings, issuer):
    result = run(settings, issuer, register=True)
    assert result.registered
    assert issuer.registrations == [("nats://localhost:4222", "localhost:8500")]
    record = RunLedger(settings.directory).load()
    assert record.registered
    assert record.key_states["event_initiator"] == "generated"


def test_standalone_registration(settings, issuer):
    run(settings, issuer)
    peers = Provisioner(settings, issuer=issuer).register()
    assert len(peers) == 3
    assert RunLedger(settings.directory).load().registered


def test_registration_before_setup(settings, issuer):
    with pytest.raises(ValidationFailure, match="Run setup first"):
        Provisioner(settings, issuer=issuer).register()


def snapshot(directory):
    return {p.relative_to(directory): p.read_bytes() for p in directory.rglob("*") if p.is_file()}


def test_rerun_without_passphrase_leaves_sealed_cluster_untouched(settings, sealing_issuer):
    run(dataclasses.replace(settings, encrypt=True, passphrase="pass-1"), sealing_issuer)
    before = snapshot(settings.directory)
    shared = settings.service_config_path.read_bytes()

    with pytest.raises(ValidationFailure, match="passphrase is required"):
        run(settings, sealing_issuer)

    assert snapshot(settings.directory) == before
    assert settings.service_config_path.read_bytes() == shared


@pytest.mark.parametrize("content", ["- not\n- a mapping\n", "mpc: [unclosed\n"])
def test_unreadable_service_config_leaves_cluster_untouched(settings, issuer, content):
    run(settings, issuer)
    settings.service_config_path.write_text(content)
    before = snapshot(settings.directory)

    with pytest.raises(ValidationFailure, match="config.yaml"):
        run(settings, issuer)

    assert snapshot(settings.directory) == before
    assert (settings.directory / "node0").is_dir()
