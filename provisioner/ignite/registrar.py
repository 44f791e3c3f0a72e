"""Peer registration with the cluster's coordination layer."""
from contextlib import contextmanager
from pathlib import Path
import logging
import os
import stat

from .config import CONFIG_FILE, update_cluster_config
from .errors import ValidationFailure
from .issuer import PEERS_FILE, IdentityIssuer
from .peers import load_peer_directory
from .protocol import PeerDirectory
from .state import atomic_write

logger = logging.getLogger(__name__)


class PeerRegistrar:
    """Submits peers.json once the coordination services are reachable.

    config.yaml carries container-internal addresses. Registration runs from
    the host, so the addresses are swapped for the externally reachable ones
    for the duration of the call and then restored byte for byte.
    Re-registering the same directory is safe.
    """

    def __init__(self, issuer: IdentityIssuer, directory: Path,
                 external_nats_url: str, external_consul_address: str):
        self.issuer = issuer
        self.directory = Path(directory)
        self.external_nats_url = external_nats_url
        self.external_consul_address = external_consul_address

    @property
    def config_path(self) -> Path:
        return self.directory / CONFIG_FILE

    def check(self) -> PeerDirectory:
        for name in (CONFIG_FILE, PEERS_FILE):
            if not (self.directory / name).exists():
                raise ValidationFailure(
                    f"Required file not found: {self.directory / name}. Run setup first."
                )
        return load_peer_directory(self.directory / PEERS_FILE)

    @contextmanager
    def external_addresses(self):
        """Temporarily point config.yaml at the external NATS and Consul addresses."""
        original = self.config_path.read_bytes()
        mode = stat.S_IMODE(os.stat(self.config_path).st_mode)

        def _update(c):
            c.nats_url = self.external_nats_url
            c.consul_address = self.external_consul_address
        update_cluster_config(self.config_path, _update)
        logger.info(f"Using {self.external_nats_url} and {self.external_consul_address} for registration")
        try:
            yield
        finally:
            atomic_write(self.config_path, original, mode=mode)
            logger.debug("Restored container-internal addresses in config.yaml")

    def register(self) -> PeerDirectory:
        peers = self.check()
        logger.info(f"Registering {len(peers)} peers with the cluster...")
        with self.external_addresses():
            self.issuer.register_peers(self.directory)
        logger.info("Peers registered successfully")
        return peers
