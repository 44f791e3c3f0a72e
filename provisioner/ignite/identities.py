"""Per-node identity generation."""
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List
import logging

from .errors import GenerationFailure, ProvisioningError
from .issuer import IdentityIssuer
from .protocol import IdentityDocument, Node

logger = logging.getLogger(__name__)


class NodeIdentityProvisioner:
    """Issues a fresh identity for every node on every run.

    Identities are session material: nothing is compared against a
    previous run. A single missing identity fails the whole run.
    """

    def __init__(self, issuer: IdentityIssuer, nodes: List[Node], roots: Dict[Node, Path],
                 encrypt: bool = False, workers: int = 4):
        self.issuer = issuer
        self.nodes = nodes
        self.roots = roots
        self.encrypt = encrypt
        self.workers = workers

    def _issue(self, node: Node) -> dict:
        """Generate one node's identity (parallel-safe: touches only that node's root)."""
        try:
            path = self.issuer.generate_identity(node.name, self.roots[node], encrypt=self.encrypt)
            if not Path(path).exists():
                return {'node': node, 'status': 'missing', 'error': f"{path} was not written"}
            doc = IdentityDocument.from_json(Path(path).read_bytes())
            if doc.node_name != node.name:
                return {'node': node, 'status': 'error',
                        'error': f"document names {doc.node_name!r}"}
            return {'node': node, 'status': 'success', 'doc': doc}
        except ProvisioningError as e:
            return {'node': node, 'status': 'error', 'error': str(e)}
        except (OSError, ValueError, KeyError) as e:
            return {'node': node, 'status': 'error', 'error': f"unreadable identity: {e}"}

    def provision(self) -> Dict[Node, IdentityDocument]:
        if not self.nodes:
            return {}
        with ThreadPoolExecutor(max_workers=min(len(self.nodes), self.workers)) as executor:
            results = list(executor.map(self._issue, self.nodes))

        # Collect every failure before aborting
        failures = []
        documents = {}
        for result in results:
            node = result['node']
            if result['status'] == 'success':
                documents[node] = result['doc']
                logger.info(f"Generated identity for {node.name}")
            else:
                failures.append(f"{node.name}: {result['error']}")

        if failures:
            raise GenerationFailure(
                f"Identity generation failed for {len(failures)} node(s): " + "; ".join(failures)
            )
        return documents
