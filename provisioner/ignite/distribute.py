"""Replicates cluster artifacts into every node's configuration root."""
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List
import logging
import os
import shutil

from .config import CONFIG_FILE
from .errors import DistributionFailure
from .issuer import IDENTITY_DIR, PEERS_FILE, identity_path
from .protocol import CopyTask, IdentityDocument, Node

logger = logging.getLogger(__name__)

# Nodes run in containers under another uid: readable, never executable.
ARTIFACT_MODE = 0o644
IDENTITY_SUFFIX = "_identity.json"


def build_copy_plan(nodes: List[Node]) -> List[CopyTask]:
    """Every ordered (source, target) pair with source != target."""
    return [CopyTask(source=s, target=t) for s in nodes for t in nodes if s != t]


def identity_documents(root: Path) -> List[Path]:
    identity_dir = Path(root) / IDENTITY_DIR
    if not identity_dir.is_dir():
        return []
    return sorted(p for p in identity_dir.iterdir() if p.is_file() and p.name.endswith(IDENTITY_SUFFIX))


class TopologyDistributor:
    """Builds the per-node bundles: config, peer directory, all identities."""

    def __init__(self, directory: Path, nodes: List[Node], workers: int = 4):
        self.directory = Path(directory)
        self.nodes = nodes
        self.workers = workers

    def root(self, node: Node) -> Path:
        return self.directory / node.name

    @property
    def roots(self) -> Dict[Node, Path]:
        return {node: self.root(node) for node in self.nodes}

    def create_roots(self) -> Dict[Node, Path]:
        """node{i}/ with copies of config.yaml and peers.json and an empty identity/."""
        for name in (CONFIG_FILE, PEERS_FILE):
            if not (self.directory / name).exists():
                raise DistributionFailure(f"{name} not found in {self.directory}")

        for node in self.nodes:
            root = self.root(node)
            (root / IDENTITY_DIR).mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.directory / CONFIG_FILE, root / CONFIG_FILE)
            shutil.copyfile(self.directory / PEERS_FILE, root / PEERS_FILE)
            logger.info(f"Created {node.name} directory")
        return self.roots

    def _copy(self, task: CopyTask):
        src = identity_path(self.root(task.source), task.source.name)
        dst = self.root(task.target) / IDENTITY_DIR / src.name
        shutil.copyfile(src, dst)
        logger.debug(f"Copied {src.name} to {task.target.name}")

    def distribute(self) -> int:
        """Execute the copy plan. Returns the number of copies made."""
        missing = [
            str(identity_path(self.root(n), n.name)) for n in self.nodes
            if not identity_path(self.root(n), n.name).exists()
        ]
        if missing:
            raise DistributionFailure(f"Identity file not found: {', '.join(missing)}")

        plan = build_copy_plan(self.nodes)
        if plan:
            with ThreadPoolExecutor(max_workers=min(len(plan), self.workers)) as executor:
                # list() re-raises the first copy error
                list(executor.map(self._copy, plan))
        logger.info(f"Identity files distributed to all nodes ({len(plan)} copies)")
        return len(plan)

    def verify(self):
        """Each root must hold exactly one identity document per cluster node."""
        expected = {IdentityDocument.filename(n.name) for n in self.nodes}
        for node in self.nodes:
            present = {p.name for p in identity_documents(self.root(node))}
            if present != expected:
                lacking = sorted(expected - present)
                unexpected = sorted(present - expected)
                raise DistributionFailure(
                    f"{node.name} has {len(present)}/{len(expected)} identity documents"
                    + (f"; missing {lacking}" if lacking else "")
                    + (f"; unexpected {unexpected}" if unexpected else "")
                )

    def normalize_permissions(self, extra: Iterable[Path] = ()) -> List[Path]:
        """Set ARTIFACT_MODE on every distributed file and on `extra` key artifacts."""
        targets = [self.directory / PEERS_FILE, self.directory / CONFIG_FILE]
        for node in self.nodes:
            root = self.root(node)
            targets += [root / CONFIG_FILE, root / PEERS_FILE]
            identity_dir = root / IDENTITY_DIR
            if identity_dir.is_dir():
                targets += sorted(p for p in identity_dir.iterdir() if p.is_file())
        targets += list(extra)

        fixed = []
        for path in targets:
            if Path(path).exists():
                os.chmod(path, ARTIFACT_MODE)
                fixed.append(Path(path))
        logger.info(f"File permissions fixed for {len(fixed)} artifacts")
        return fixed
