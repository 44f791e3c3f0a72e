"""The provisioning run, stage by stage.

Each stage reads its inputs from disk, so a stage only starts once the
previous one has written its artifacts. Any failure aborts the run without
rollback; re-running reuses the long-lived keys.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
import logging
import shutil

from .config import CONFIG_FILE, ClusterConfig, ClusterConfigMaterializer
from .custodian import EventInitiatorCustodian, IntegritySignerCustodian
from .distribute import TopologyDistributor
from .errors import ValidationFailure
from .identities import NodeIdentityProvisioner
from .issuer import PEERS_FILE, IdentityIssuer, build_issuer
from .peers import PeerDirectoryBuilder
from .protocol import IdentityDocument, KeyState, Node, PeerDirectory
from .registrar import PeerRegistrar
from .settings import ProvisionSettings
from .state import RunLedger, RunLock, RunRecord

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """What a successful run produced."""
    peers: PeerDirectory
    config: ClusterConfig
    identities: Dict[Node, IdentityDocument]
    key_states: Dict[str, KeyState]
    roots: Dict[Node, Path]
    copies: int = 0
    registered: bool = False


class Provisioner:
    """Drives one provisioning run against settings.directory."""

    def __init__(self, settings: ProvisionSettings, issuer: Optional[IdentityIssuer] = None):
        self.settings = settings
        self.issuer = issuer
        self.directory = Path(settings.directory)

    def _cleanup(self):
        """Drop the previous run's bundles. Key artifacts are left alone."""
        for node in self.settings.cluster:
            root = self.settings.node_root(node)
            if root.is_dir():
                logger.warning(f"Removing existing {node.name} directory")
                shutil.rmtree(root)
        for name in (PEERS_FILE, CONFIG_FILE):
            path = self.directory / name
            if path.exists():
                logger.warning(f"Removing existing {name}")
                path.unlink()

    def run(self, register: bool = False) -> ProvisionResult:
        s = self.settings.validate()
        if self.issuer is None:
            self.issuer = build_issuer(s)
        self.issuer.check()

        initiator = EventInitiatorCustodian(
            self.issuer, self.directory, s.service_config_path,
            encrypt=s.encrypt, passphrase=s.passphrase
        )
        integrity = IntegritySignerCustodian(self.directory, s.service_config_path)
        for custodian in (initiator, integrity):
            custodian.preflight()

        self.directory.mkdir(parents=True, exist_ok=True)
        with RunLock(self.directory):
            self._cleanup()

            peers = PeerDirectoryBuilder(self.issuer, self.directory, s.nodes).build()
            ClusterConfigMaterializer(s).materialize(self.directory)

            key_states = {}
            for custodian in (initiator, integrity):
                key, state = custodian.load_or_generate()
                custodian.embed(key)
                key_states[custodian.kind] = state

            distributor = TopologyDistributor(self.directory, s.cluster, workers=s.workers)
            roots = distributor.create_roots()
            identities = NodeIdentityProvisioner(
                self.issuer, s.cluster, roots, encrypt=s.encrypt, workers=s.workers
            ).provision()
            copies = distributor.distribute()
            distributor.verify()
            distributor.normalize_permissions(extra=initiator.artifacts() + integrity.artifacts())

            config = ClusterConfig.load(self.directory / CONFIG_FILE)
            result = ProvisionResult(
                peers=peers,
                config=config,
                identities=identities,
                key_states=key_states,
                roots=roots,
                copies=copies
            )

            if register:
                self._register()
                result.registered = True

            RunLedger(self.directory).save(RunRecord(
                nodes=s.nodes,
                threshold=s.threshold,
                environment=s.environment,
                encrypted=s.encrypt,
                key_states={k: v.value for k, v in key_states.items()},
                registered=result.registered
            ))
        return result

    def _register(self) -> PeerDirectory:
        s = self.settings
        registrar = PeerRegistrar(
            self.issuer, self.directory, s.external_nats_url, s.external_consul_address
        )
        return registrar.register()

    def register(self) -> PeerDirectory:
        """Registration on its own, against an already provisioned directory."""
        if self.issuer is None:
            self.issuer = build_issuer(self.settings)
        self.issuer.check()
        if not self.directory.is_dir():
            raise ValidationFailure(f"{self.directory} does not exist. Run setup first.")
        with RunLock(self.directory):
            peers = self._register()

            def _update(r):
                r.registered = True
            RunLedger(self.directory).update(_update)
        return peers
