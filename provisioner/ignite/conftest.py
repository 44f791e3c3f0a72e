"""Shared fixtures: an in-process issuer and fast envelope parameters."""
from pathlib import Path
import json

import pytest

from ignite import crypto
from ignite.issuer import LocalIssuer
from ignite.config import ClusterConfig
from ignite.settings import ProvisionSettings


class FakeIssuer(LocalIssuer):
    """LocalIssuer with call accounting, injectable failures and no network."""

    def __init__(self, passphrase=None):
        super().__init__(passphrase=passphrase, session=object())
        self.initiator_calls = 0
        self.identity_calls = []
        self.registrations = []
        self.fail_identity_for = set()
        self.short_peers = False

    def generate_peers(self, count, output):
        path = super().generate_peers(count, output)
        if self.short_peers:
            data = json.loads(Path(path).read_text())
            data.pop(f"node{count - 1}")
            Path(path).write_text(json.dumps(data))
        return path

    def generate_identity(self, name, node_root, encrypt=False):
        self.identity_calls.append(name)
        if name in self.fail_identity_for:
            return Path(node_root) / "identity" / f"{name}_identity.json"
        return super().generate_identity(name, node_root, encrypt=encrypt)

    def generate_initiator(self, workdir):
        self.initiator_calls += 1
        return super().generate_initiator(workdir)

    def register_peers(self, workdir):
        config = ClusterConfig.load(Path(workdir) / "config.yaml")
        self.registrations.append((config.nats_url, config.consul_address))


@pytest.fixture(autouse=True)
def fast_scrypt(monkeypatch):
    monkeypatch.setattr(crypto, "SCRYPT_N", 2 ** 10)


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def settings(tmp_path):
    return ProvisionSettings(
        nodes=3,
        threshold=2,
        directory=tmp_path / "node-configs",
        service_config=tmp_path / "config.yaml",
        issuer="local",
        workers=2
    )


@pytest.fixture
def sealing_issuer():
    return FakeIssuer(passphrase="pass-1")
