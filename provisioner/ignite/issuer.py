"""Identity and peer issuing capability.

The workflow only talks to IdentityIssuer. MpciumCliIssuer drives the
mpcium-cli binary; LocalIssuer does the same work in-process and registers
peers straight into Consul's KV store.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional
import logging
import os
import subprocess
import time
import uuid

import requests

from .crypto import generate_ed25519_keypair, seal
from .errors import GenerationFailure, RegistrationFailure, ValidationFailure
from .protocol import IdentityDocument, InitiatorIdentity, InitiatorMaterial, PeerDirectory, node_name
from .state import atomic_write

logger = logging.getLogger(__name__)

PEERS_FILE = "peers.json"
INITIATOR_KEY_FILE = "event_initiator.key"
INITIATOR_IDENTITY_FILE = "event_initiator.identity.json"
IDENTITY_DIR = "identity"
CONSUL_PEER_PREFIX = "mpc_peers"


def timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def identity_path(node_root: Path, name: str) -> Path:
    return Path(node_root) / IDENTITY_DIR / IdentityDocument.filename(name)


class IdentityIssuer(ABC):
    """The four operations provisioning needs from the outside world."""

    def check(self):
        """Raise ValidationFailure if the issuer cannot be used at all."""
        pass

    @abstractmethod
    def generate_peers(self, count: int, output: Path) -> Path:
        """Write a peer directory with `count` entries to `output`."""

    @abstractmethod
    def generate_identity(self, name: str, node_root: Path, encrypt: bool = False) -> Path:
        """Create `name`'s identity under node_root/identity/ and return the document path."""

    @abstractmethod
    def generate_initiator(self, workdir: Path) -> InitiatorMaterial:
        """Issue a new event-initiator key pair."""

    @abstractmethod
    def register_peers(self, workdir: Path):
        """Register workdir/peers.json using the addresses in workdir/config.yaml."""


class MpciumCliIssuer(IdentityIssuer):
    """Shells out to mpcium-cli. Every call is bounded by `timeout` seconds."""

    def __init__(self, cli_path: Path, timeout: float = 60.0, passphrase: Optional[str] = None):
        self.cli_path = Path(cli_path)
        self.timeout = timeout
        self.passphrase = passphrase

    def check(self):
        if not self.cli_path.is_file():
            raise ValidationFailure(f"mpcium-cli binary not found at: {self.cli_path}")
        if not os.access(self.cli_path, os.X_OK):
            raise ValidationFailure(f"mpcium-cli binary is not executable: {self.cli_path}")

    def _run(self, args: List[str], cwd: Path, failure=GenerationFailure, stdin: Optional[str] = None):
        cmd = [str(self.cli_path.resolve())] + args
        logger.debug(f"Running {' '.join(args)} in {cwd}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd),
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            raise failure(f"mpcium-cli {args[0]} timed out after {self.timeout}s")
        except OSError as e:
            raise failure(f"mpcium-cli {args[0]} could not be started: {e}")
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip().splitlines()[-1:] or ["no output"]
            raise failure(f"mpcium-cli {args[0]} exited with {result.returncode}: {detail[0]}")
        return result

    def generate_peers(self, count: int, output: Path) -> Path:
        output = Path(output)
        self._run(['generate-peers', '-n', str(count), '-o', output.name], cwd=output.parent)
        return output

    def generate_identity(self, name: str, node_root: Path, encrypt: bool = False) -> Path:
        args = ['generate-identity', '--node', name]
        stdin = None
        if encrypt:
            args.append('--encrypt')
            if self.passphrase:
                # passphrase prompt, then confirmation
                stdin = f"{self.passphrase}\n{self.passphrase}\n"
        self._run(args, cwd=Path(node_root), stdin=stdin)
        return identity_path(node_root, name)

    def generate_initiator(self, workdir: Path) -> InitiatorMaterial:
        workdir = Path(workdir)
        self._run(['generate-initiator'], cwd=workdir)
        key_file = workdir / INITIATOR_KEY_FILE
        identity_file = workdir / INITIATOR_IDENTITY_FILE
        if not key_file.exists() or not identity_file.exists():
            raise GenerationFailure("generate-initiator did not produce event_initiator.key and identity")
        identity = InitiatorIdentity.from_json(identity_file.read_bytes())
        return InitiatorMaterial(
            private_key_hex=key_file.read_text().strip(),
            public_key_hex=identity.public_key
        )

    def register_peers(self, workdir: Path):
        self._run(['register-peers'], cwd=Path(workdir), failure=RegistrationFailure)


class LocalIssuer(IdentityIssuer):
    """In-process issuer: UUID peer ids, ed25519 identities, Consul KV registration."""

    def __init__(self, timeout: float = 60.0, passphrase: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.passphrase = passphrase
        self.session = session or requests.Session()

    def generate_peers(self, count: int, output: Path) -> Path:
        directory = PeerDirectory(peers={i: str(uuid.uuid4()) for i in range(count)})
        atomic_write(Path(output), directory.to_json())
        return Path(output)

    def generate_identity(self, name: str, node_root: Path, encrypt: bool = False) -> Path:
        private_hex, public_hex = generate_ed25519_keypair()
        identity_dir = Path(node_root) / IDENTITY_DIR
        if encrypt:
            if not self.passphrase:
                raise GenerationFailure(f"Cannot encrypt identity for {name} without a passphrase")
            atomic_write(identity_dir / f"{name}_private.key.enc",
                         seal(private_hex.encode(), self.passphrase), mode=0o600)
        else:
            atomic_write(identity_dir / f"{name}_private.key", private_hex, mode=0o600)

        doc = IdentityDocument(node_name=name, public_key=public_hex, created_at=timestamp())
        path = identity_path(node_root, name)
        atomic_write(path, doc.to_json())
        return path

    def generate_initiator(self, workdir: Path) -> InitiatorMaterial:
        private_hex, public_hex = generate_ed25519_keypair()
        return InitiatorMaterial(private_key_hex=private_hex, public_key_hex=public_hex)

    def register_peers(self, workdir: Path):
        from .config import ClusterConfig

        workdir = Path(workdir)
        config = ClusterConfig.load(workdir / "config.yaml")
        peers = PeerDirectory.from_json((workdir / PEERS_FILE).read_bytes())
        base = config.consul_address
        if not base.startswith(("http://", "https://")):
            base = f"http://{base}"

        for index in sorted(peers.peers):
            name = node_name(index)
            url = f"{base}/v1/kv/{CONSUL_PEER_PREFIX}/{name}"
            try:
                resp = self.session.put(url, data=peers.peer_id(index), timeout=self.timeout)
                resp.raise_for_status()
            except requests.RequestException as e:
                raise RegistrationFailure(f"Registering {name} at {base} failed: {e}") from e
            logger.info(f"Registered {name} in Consul")


def build_issuer(settings) -> IdentityIssuer:
    """Issuer selected by ProvisionSettings.issuer."""
    if settings.issuer == "local":
        return LocalIssuer(timeout=settings.timeout, passphrase=settings.passphrase)
    cli_path = settings.cli_path or Path.cwd() / "mpcium-cli"
    return MpciumCliIssuer(cli_path, timeout=settings.timeout, passphrase=settings.passphrase)
