"""Typed cluster and service configuration documents.

Every update is a read-modify-write of the parsed YAML; serialized text is
never patched in place.
"""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import logging

import yaml

from .crypto import generate_strong_password
from .errors import ValidationFailure
from .state import atomic_write

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
PUBKEY_PLACEHOLDER = "PLACEHOLDER_WILL_BE_UPDATED"
PK_RAW_FIELD = "mpc.signer.local.pk_raw"
INTEGRITY_KEY_FIELD = "integrity.signer.ed25519.private_key"


def read_yaml_mapping(path: Path) -> Dict[str, Any]:
    """Parse a YAML document that must be a mapping; an empty file reads as {}."""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationFailure(f"{path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValidationFailure(f"{path} is not a YAML mapping")
    return data


@dataclass
class ClusterConfig:
    """Written to: config.yaml, copied verbatim into every node root."""
    nats_url: str
    consul_address: str
    mpc_threshold: int
    environment: str
    badger_password: str
    event_initiator_pubkey: str = PUBKEY_PLACEHOLDER
    db_path: str = "."
    backup_enabled: bool = True
    backup_period_seconds: int = 300
    backup_dir: str = "backups"
    max_concurrent_keygen: int = 2
    max_concurrent_signing: int = 10
    session_warm_up_delay_ms: int = 500
    # Keys this tool does not own survive a load/save cycle.
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'nats': {'url': self.nats_url},
            'consul': {'address': self.consul_address},
        }
        for f in fields(self):
            if f.name in ('nats_url', 'consul_address', 'extra'):
                continue
            data[f.name] = getattr(self, f.name)
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClusterConfig':
        data = dict(data)
        nats = data.pop('nats', None) or {}
        consul = data.pop('consul', None) or {}
        names = {f.name for f in fields(cls)} - {'nats_url', 'consul_address', 'extra'}
        known = {k: data.pop(k) for k in list(data) if k in names}
        try:
            return cls(
                nats_url=nats['url'],
                consul_address=consul['address'],
                extra=data,
                **known
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"incomplete cluster config: {e}") from e

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

    @classmethod
    def load(cls, path: Path) -> 'ClusterConfig':
        try:
            return cls.from_dict(read_yaml_mapping(path))
        except ValueError as e:
            raise ValidationFailure(f"{path}: {e}") from e

    def save(self, path: Path, mode: Optional[int] = None):
        atomic_write(Path(path), self.to_yaml(), mode=mode)


def update_cluster_config(path: Path, updater: Callable[[ClusterConfig], None]) -> ClusterConfig:
    """Load config.yaml, apply `updater`, write it back."""
    config = ClusterConfig.load(path)
    updater(config)
    config.save(path)
    return config


class ServiceConfig:
    """The long-lived shared configuration that outlives provisioning runs.

    Fields are addressed by dotted path, e.g. "mpc.signer.local.pk_raw".
    Intermediate mappings are created on write.
    """

    def __init__(self, path: Path, data: Optional[Dict[str, Any]] = None):
        self.path = Path(path)
        self.data = data if data is not None else {}

    @classmethod
    def load(cls, path: Path) -> 'ServiceConfig':
        path = Path(path)
        if not path.exists():
            return cls(path)
        return cls(path, read_yaml_mapping(path))

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def get(self, dotted: str, default: Any = None) -> Any:
        node: Any = self.data
        for part in dotted.split('.'):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def get_str(self, dotted: str) -> str:
        """Field value as a stripped string; empty when unset."""
        value = self.get(dotted)
        return "" if value is None else str(value).strip()

    def set(self, dotted: str, value: Any):
        parts = dotted.split('.')
        node = self.data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def save(self):
        if not self.path.exists():
            logger.warning(f"Creating service config at {self.path}")
        atomic_write(self.path, yaml.safe_dump(self.data, sort_keys=False, default_flow_style=False))


def update_service_config(path: Path, dotted: str, value: Any) -> ServiceConfig:
    config = ServiceConfig.load(path)
    config.set(dotted, value)
    config.save()
    return config


class ClusterConfigMaterializer:
    """Builds config.yaml from settings plus a fresh storage password."""

    def __init__(self, settings):
        self.settings = settings

    def build(self) -> ClusterConfig:
        s = self.settings
        return ClusterConfig(
            nats_url=s.nats_url,
            consul_address=s.consul_address,
            mpc_threshold=s.threshold,
            environment=s.environment,
            badger_password=generate_strong_password()
        )

    def materialize(self, directory: Path) -> ClusterConfig:
        config = self.build()
        config.save(Path(directory) / CONFIG_FILE)
        logger.info(f"Created {CONFIG_FILE} (threshold={config.mpc_threshold}, env={config.environment})")
        return config

    @staticmethod
    def embed_initiator_pubkey(directory: Path, public_key_hex: str) -> ClusterConfig:
        def _update(c):
            c.event_initiator_pubkey = public_key_hex
        return update_cluster_config(Path(directory) / CONFIG_FILE, _update)
