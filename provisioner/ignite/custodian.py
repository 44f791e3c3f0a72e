"""Long-lived cluster signing roots.

Two keys are consumed by every node: the event-initiator key pair and the
integrity-signer seed. Each custodian is a small state machine:

    Absent  -> Generated          nothing persisted yet
    Present -> Verified           persisted material agrees with the
                                  shared service configuration
    Present -> ConsistencyViolation

A violation is never repaired here. Regenerating would rotate a trust root
underneath nodes that are already running, so the operator has to decide
which side is stale.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple
import logging

from .config import (
    INTEGRITY_KEY_FIELD, PK_RAW_FIELD, ClusterConfigMaterializer, ServiceConfig,
    update_service_config
)
from .crypto import EnvelopeError, derive_ed25519_public, generate_seed_hex, is_hex, seal, unseal
from .errors import GenerationFailure, KeyConsistencyViolation, ValidationFailure
from .issuer import INITIATOR_IDENTITY_FILE, INITIATOR_KEY_FILE, IdentityIssuer, timestamp
from .protocol import InitiatorIdentity, KeyState, ResolvedKey
from .state import atomic_write

logger = logging.getLogger(__name__)

SEALED_SUFFIX = ".enc"
INTEGRITY_KEY_FILE = "integrity_signer.key"
ARTIFACT_MODE = 0o644


class KeyCustodian(ABC):
    """Resolve a key once per run, then publish it into configuration."""

    kind = "key"

    def __init__(self, directory: Path, service_config: Path):
        self.directory = Path(directory)
        self.service_config = Path(service_config)
        self.state = KeyState.ABSENT

    def violation(self, message: str) -> KeyConsistencyViolation:
        self.state = KeyState.CONSISTENCY_VIOLATION
        logger.error(f"{self.kind}: {message}")
        return KeyConsistencyViolation(message)

    def recorded(self, dotted: str) -> str:
        return ServiceConfig.load(self.service_config).get_str(dotted)

    def preflight(self):
        """Checks that must pass before the run deletes anything; raises ValidationFailure."""
        ServiceConfig.load(self.service_config)

    @abstractmethod
    def load_or_generate(self) -> Tuple[ResolvedKey, KeyState]:
        """The only way to obtain the key."""

    @abstractmethod
    def embed(self, key: ResolvedKey):
        """Write the resolved key into the configuration documents that carry it."""

    @abstractmethod
    def artifacts(self):
        """Paths of the persisted artifacts that exist right now."""


class EventInitiatorCustodian(KeyCustodian):
    """Event-initiator ed25519 key pair.

    The private artifact (event_initiator.key, or event_initiator.key.enc
    when sealed) must equal mpc.signer.local.pk_raw in the service config,
    and event_initiator.identity.json must carry the matching public key.
    """

    kind = "event_initiator"

    def __init__(self, issuer: IdentityIssuer, directory: Path, service_config: Path,
                 encrypt: bool = False, passphrase: Optional[str] = None):
        super().__init__(directory, service_config)
        self.issuer = issuer
        self.encrypt = encrypt
        self.passphrase = passphrase

    @property
    def key_path(self) -> Path:
        return self.directory / INITIATOR_KEY_FILE

    @property
    def sealed_path(self) -> Path:
        return self.directory / (INITIATOR_KEY_FILE + SEALED_SUFFIX)

    @property
    def identity_path(self) -> Path:
        return self.directory / INITIATOR_IDENTITY_FILE

    def artifacts(self):
        return [p for p in (self.key_path, self.sealed_path, self.identity_path) if p.exists()]

    def _require_passphrase(self):
        if self.sealed_path.exists() and not self.passphrase:
            raise ValidationFailure(
                f"{self.sealed_path.name} is sealed; a passphrase is required to verify it"
            )

    def preflight(self):
        super().preflight()
        self._require_passphrase()

    def _read_private(self) -> Optional[str]:
        """Private key hex from whichever artifact exists, sealed first."""
        if self.sealed_path.exists():
            self._require_passphrase()
            try:
                return unseal(self.sealed_path.read_bytes(), self.passphrase).decode().strip()
            except EnvelopeError as e:
                raise self.violation(f"Cannot open {self.sealed_path.name}: {e}")
        if self.key_path.exists():
            return self.key_path.read_text().strip()
        return None

    def _public_for(self, private_hex: str) -> str:
        try:
            return derive_ed25519_public(private_hex)
        except ValueError as e:
            raise self.violation(f"Persisted event initiator key is not a valid ed25519 key: {e}")

    def _verify_identity(self, public_hex: str):
        """The identity document, if present, must name the same public key."""
        if not self.identity_path.exists():
            logger.warning(f"{INITIATOR_IDENTITY_FILE} missing; rewriting it from the private key")
            self._write_identity(public_hex)
            return
        try:
            identity = InitiatorIdentity.from_json(self.identity_path.read_bytes())
        except (ValueError, KeyError) as e:
            raise self.violation(f"{INITIATOR_IDENTITY_FILE} is unreadable: {e}")
        if identity.public_key.lower() != public_hex.lower():
            raise self.violation(
                f"{INITIATOR_IDENTITY_FILE} public key does not match the private key artifact"
            )

    def _write_identity(self, public_hex: str):
        doc = InitiatorIdentity(name="event_initiator", public_key=public_hex, created_at=timestamp())
        atomic_write(self.identity_path, doc.to_json(), mode=ARTIFACT_MODE)

    def _persist(self, private_hex: str, public_hex: str):
        if self.encrypt:
            atomic_write(self.sealed_path, seal(private_hex.encode(), self.passphrase), mode=ARTIFACT_MODE)
            if self.key_path.exists():
                self.key_path.unlink()
        else:
            atomic_write(self.key_path, private_hex, mode=ARTIFACT_MODE)
        self._write_identity(public_hex)

    def load_or_generate(self) -> Tuple[ResolvedKey, KeyState]:
        recorded = self.recorded(PK_RAW_FIELD)
        existing = self._read_private()

        if existing and recorded:
            if existing != recorded:
                raise self.violation(
                    "Mismatch between event_initiator key artifact and "
                    f"{PK_RAW_FIELD} in {self.service_config}. Either delete the "
                    f"event_initiator.* files in {self.directory} or clear {PK_RAW_FIELD}, "
                    "then re-run."
                )
            public_hex = self._public_for(existing)
            self._verify_identity(public_hex)
            self.state = KeyState.PRESENT_VERIFIED
            logger.info("Verified: event_initiator key matches pk_raw in service config")
            return ResolvedKey(self.kind, existing, public_hex), self.state

        if recorded and not existing:
            raise self.violation(
                f"{PK_RAW_FIELD} is set in {self.service_config} but no event_initiator key "
                f"exists in {self.directory}; refusing to rotate the key. Restore the key "
                f"file or clear {PK_RAW_FIELD}, then re-run."
            )

        if existing:
            # Artifact without a recorded value: adopt it, the embed step records it.
            public_hex = self._public_for(existing)
            self._verify_identity(public_hex)
            self.state = KeyState.PRESENT_VERIFIED
            logger.warning("Existing event_initiator key found with empty pk_raw; reusing it")
            return ResolvedKey(self.kind, existing, public_hex), self.state

        logger.info("Generating new event initiator...")
        material = self.issuer.generate_initiator(self.directory)
        private_hex = material.private_key_hex.strip()
        if not private_hex:
            raise GenerationFailure("Issuer returned an empty event initiator key")
        try:
            public_hex = derive_ed25519_public(private_hex)
        except ValueError as e:
            raise GenerationFailure(f"Issuer returned an invalid event initiator key: {e}")
        if material.public_key_hex and material.public_key_hex.lower() != public_hex.lower():
            raise GenerationFailure("Issuer returned an event initiator public key that does not match")

        self._persist(private_hex, public_hex)
        self.state = KeyState.GENERATED
        logger.info(f"Generated {'encrypted' if self.encrypt else 'unencrypted'} event initiator")
        return ResolvedKey(self.kind, private_hex, public_hex), self.state

    def embed(self, key: ResolvedKey):
        ClusterConfigMaterializer.embed_initiator_pubkey(self.directory, key.public_hex)
        logger.info("Updated config.yaml with event initiator public key")
        if self.recorded(PK_RAW_FIELD) != key.secret_hex:
            update_service_config(self.service_config, PK_RAW_FIELD, key.secret_hex)
            logger.info(f"Updated {PK_RAW_FIELD} in {self.service_config.name}")


class IntegritySignerCustodian(KeyCustodian):
    """32-byte ed25519 seed kept as 64 hex characters in integrity_signer.key."""

    kind = "integrity_signer"

    @property
    def key_path(self) -> Path:
        return self.directory / INTEGRITY_KEY_FILE

    def artifacts(self):
        return [self.key_path] if self.key_path.exists() else []

    def load_or_generate(self) -> Tuple[ResolvedKey, KeyState]:
        recorded = self.recorded(INTEGRITY_KEY_FIELD)

        if self.key_path.exists():
            seed = self.key_path.read_text().strip()
            if not is_hex(seed):
                raise self.violation(
                    f"Invalid integrity signer key length: {len(seed)} (expected 64 hex characters). "
                    f"Delete {self.key_path} and re-run to generate a new one"
                )
            if recorded and recorded != seed:
                raise self.violation(
                    f"{INTEGRITY_KEY_FIELD} in {self.service_config} does not match {INTEGRITY_KEY_FILE}"
                )
            self.state = KeyState.PRESENT_VERIFIED
            logger.info("Verified existing integrity signer key (64 hex characters)")
            return ResolvedKey(self.kind, seed), self.state

        if recorded:
            logger.warning(f"{INTEGRITY_KEY_FILE} missing; replacing the recorded integrity signer key")

        seed = generate_seed_hex()
        atomic_write(self.key_path, seed, mode=ARTIFACT_MODE)
        self.state = KeyState.GENERATED
        logger.info(f"Generated new integrity signer key at {self.key_path}")
        return ResolvedKey(self.kind, seed), self.state

    def embed(self, key: ResolvedKey):
        if self.recorded(INTEGRITY_KEY_FIELD) != key.secret_hex:
            update_service_config(self.service_config, INTEGRITY_KEY_FIELD, key.secret_hex)
            logger.info(f"Updated {INTEGRITY_KEY_FIELD} in {self.service_config.name}")
