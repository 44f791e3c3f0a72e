"""Peer directory generation."""
from pathlib import Path
import logging

from .errors import GenerationFailure
from .issuer import PEERS_FILE, IdentityIssuer
from .protocol import PeerDirectory, node_name

logger = logging.getLogger(__name__)


def load_peer_directory(path: Path) -> PeerDirectory:
    """Parse peers.json, mapping any read or format problem to GenerationFailure."""
    path = Path(path)
    if not path.exists():
        raise GenerationFailure(f"Failed to generate {path.name}: file not found")
    try:
        return PeerDirectory.from_json(path.read_bytes())
    except (OSError, ValueError) as e:
        raise GenerationFailure(f"{path.name} is unreadable: {e}") from e


class PeerDirectoryBuilder:
    """Produces the canonical node-id → peer-id mapping for one run.

    The previous peers.json is always replaced, never merged.
    """

    def __init__(self, issuer: IdentityIssuer, directory: Path, count: int):
        self.issuer = issuer
        self.path = Path(directory) / PEERS_FILE
        self.count = count

    def build(self) -> PeerDirectory:
        if self.path.exists():
            self.path.unlink()

        self.issuer.generate_peers(self.count, self.path)
        directory = load_peer_directory(self.path)

        if len(directory) < self.count:
            raise GenerationFailure(
                f"{PEERS_FILE} has {len(directory)} entries, expected {self.count}"
            )
        if not directory.is_complete(self.count):
            raise GenerationFailure(
                f"{PEERS_FILE} must map node0..node{self.count - 1} to distinct peer ids"
            )

        logger.info(f"Generated {PEERS_FILE} with {self.count} nodes")
        for index in sorted(directory.peers):
            logger.debug(f"  {node_name(index)}: {directory.peer_id(index)}")
        return directory
