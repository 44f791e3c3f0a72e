import pytest
import yaml

from ignite.config import (
    PUBKEY_PLACEHOLDER, ClusterConfig, ClusterConfigMaterializer, ServiceConfig,
    update_cluster_config, update_service_config
)
from ignite.errors import ValidationFailure
from ignite.settings import ProvisionSettings


def test_materialized_config_contents(tmp_path):
    s = ProvisionSettings(nodes=5, threshold=3, environment="production")
    ClusterConfigMaterializer(s).materialize(tmp_path)
    data = yaml.safe_load((tmp_path / "config.yaml").read_text())
    assert data["nats"] == {"url": "nats://nats-server:4222"}
    assert data["consul"] == {"address": "consul:8500"}
    assert data["mpc_threshold"] == 3
    assert data["environment"] == "production"
    assert len(data["badger_password"]) == 32
    assert data["event_initiator_pubkey"] == PUBKEY_PLACEHOLDER
    assert data["backup_period_seconds"] == 300
    assert data["max_concurrent_keygen"] == 2
    assert data["max_concurrent_signing"] == 10
    assert data["session_warm_up_delay_ms"] == 500


def test_each_materialization_draws_a_new_password():
    m = ClusterConfigMaterializer(ProvisionSettings())
    assert m.build().badger_password != m.build().badger_password


def test_unknown_cluster_keys_survive_update(tmp_path):
    path = tmp_path / "config.yaml"
    config = ClusterConfigMaterializer(ProvisionSettings()).build()
    config.extra["tracing"] = {"enabled": True}
    config.save(path)

    def _update(c):
        c.event_initiator_pubkey = "ab" * 32
    update_cluster_config(path, _update)

    reloaded = ClusterConfig.load(path)
    assert reloaded.extra == {"tracing": {"enabled": True}}
    assert reloaded.event_initiator_pubkey == "ab" * 32
    assert reloaded.badger_password == config.badger_password


def test_similar_field_names_are_not_clobbered(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "mpc": {"signer": {"local": {"pk_raw": "old", "pk_raw_backup": "old"}}},
    }))
    update_service_config(path, "mpc.signer.local.pk_raw", "new")
    local = yaml.safe_load(path.read_text())["mpc"]["signer"]["local"]
    assert local == {"pk_raw": "new", "pk_raw_backup": "old"}


def test_service_config_dotted_access(tmp_path):
    config = ServiceConfig.load(tmp_path / "missing.yaml")
    assert not config.exists
    assert config.get_str("integrity.signer.ed25519.private_key") == ""
    config.set("integrity.signer.ed25519.private_key", "cd" * 32)
    config.save()
    assert ServiceConfig.load(tmp_path / "missing.yaml").get("integrity.signer.ed25519.private_key") == "cd" * 32


@pytest.mark.parametrize("content,message", [
    ("mpc: [unclosed\n", "not valid YAML"),
    ("- a\n- b\n", "not a YAML mapping"),
])
def test_unreadable_service_config(tmp_path, content, message):
    path = tmp_path / "config.yaml"
    path.write_text(content)
    with pytest.raises(ValidationFailure, match=message):
        ServiceConfig.load(path)


def test_incomplete_cluster_config_names_the_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"mpc_threshold": 1}))
    with pytest.raises(ValidationFailure, match="config.yaml"):
        ClusterConfig.load(path)
