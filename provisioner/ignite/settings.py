"""Provisioning settings, resolved once at the top of a run."""
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .errors import ValidationFailure
from .protocol import Node

DEFAULT_NATS_URL = "nats://nats-server:4222"
DEFAULT_CONSUL_ADDRESS = "consul:8500"
EXTERNAL_NATS_URL = "nats://localhost:4222"
EXTERNAL_CONSUL_ADDRESS = "localhost:8500"

ISSUERS = ("cli", "local")


@dataclass(frozen=True)
class ProvisionSettings:
    """Everything a provisioning run needs to know.

    Stages receive this value instead of reading the process environment.
    """
    nodes: int = 3
    threshold: int = 2
    environment: str = "development"
    encrypt: bool = False
    directory: Path = Path("node-configs")
    service_config: Optional[Path] = None
    nats_url: str = DEFAULT_NATS_URL
    consul_address: str = DEFAULT_CONSUL_ADDRESS
    external_nats_url: str = EXTERNAL_NATS_URL
    external_consul_address: str = EXTERNAL_CONSUL_ADDRESS
    issuer: str = "cli"
    cli_path: Optional[Path] = None
    passphrase: Optional[str] = field(default=None, repr=False)
    timeout: float = 60.0
    workers: int = 4

    @property
    def service_config_path(self) -> Path:
        if self.service_config is not None:
            return Path(self.service_config)
        return Path(self.directory).resolve().parent / "config.yaml"

    @property
    def cluster(self) -> List[Node]:
        return Node.cluster(self.nodes)

    def node_root(self, node: Node) -> Path:
        return Path(self.directory) / node.name

    def validate(self) -> 'ProvisionSettings':
        """Reject a request before any artifact is touched."""
        if self.nodes < 1:
            raise ValidationFailure(f"Number of nodes must be positive (got {self.nodes})")
        if self.threshold < 0:
            raise ValidationFailure(f"MPC threshold must not be negative (got {self.threshold})")
        if self.threshold >= self.nodes:
            raise ValidationFailure(
                f"MPC threshold ({self.threshold}) must be less than number of nodes ({self.nodes})"
            )
        if not self.environment.strip():
            raise ValidationFailure("Environment must not be empty")
        if self.encrypt and not self.passphrase:
            raise ValidationFailure(
                "Encrypted keys require a passphrase (set IGNITE_KEY_PASSPHRASE)"
            )
        if self.issuer not in ISSUERS:
            raise ValidationFailure(f"Unknown issuer {self.issuer!r}; expected one of {ISSUERS}")
        if self.timeout <= 0:
            raise ValidationFailure(f"Timeout must be positive (got {self.timeout})")
        if self.workers < 1:
            raise ValidationFailure(f"Worker count must be at least 1 (got {self.workers})")
        return self
