import pytest

from ignite.config import ClusterConfig, ClusterConfigMaterializer
from ignite.errors import RegistrationFailure, ValidationFailure
from ignite.peers import PeerDirectoryBuilder
from ignite.registrar import PeerRegistrar
from ignite.settings import ProvisionSettings


def make_registrar(issuer, directory):
    return PeerRegistrar(issuer, directory, "nats://localhost:4222", "localhost:8500")


def test_registers_with_external_addresses_then_restores(tmp_path, issuer):
    PeerDirectoryBuilder(issuer, tmp_path, 3).build()
    ClusterConfigMaterializer(ProvisionSettings()).materialize(tmp_path)
    before = (tmp_path / "config.yaml").read_bytes()

    peers = make_registrar(issuer, tmp_path).register()

    assert len(peers) == 3
    assert issuer.registrations == [("nats://localhost:4222", "localhost:8500")]
    assert (tmp_path / "config.yaml").read_bytes() == before
    restored = ClusterConfig.load(tmp_path / "config.yaml")
    assert restored.nats_url == "nats://nats-server:4222"
    assert restored.consul_address == "consul:8500"


def test_addresses_restored_when_registration_fails(tmp_path, issuer):
    PeerDirectoryBuilder(issuer, tmp_path, 3).build()
    ClusterConfigMaterializer(ProvisionSettings()).materialize(tmp_path)
    before = (tmp_path / "config.yaml").read_bytes()

    def refuse(workdir):
        raise RegistrationFailure("consul unavailable")
    issuer.register_peers = refuse

    with pytest.raises(RegistrationFailure):
        make_registrar(issuer, tmp_path).register()
    assert (tmp_path / "config.yaml").read_bytes() == before


def test_registration_is_repeatable(tmp_path, issuer):
    PeerDirectoryBuilder(issuer, tmp_path, 2).build()
    ClusterConfigMaterializer(ProvisionSettings(nodes=2, threshold=1)).materialize(tmp_path)
    registrar = make_registrar(issuer, tmp_path)
    registrar.register()
    registrar.register()
    assert len(issuer.registrations) == 2


def test_requires_generated_configuration(tmp_path, issuer):
    with pytest.raises(ValidationFailure, match="Run setup first"):
        make_registrar(issuer, tmp_path).register()
