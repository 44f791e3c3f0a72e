"""
Key material helpers: storage passwords, ed25519 seeds and
a passphrase envelope for private keys kept at rest.
"""
from dataclasses import dataclass, asdict
from typing import Tuple
import base64
import json
import secrets
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

PASSWORD_LENGTH = 32
SEED_BYTES = 32
SEED_HEX_LENGTH = SEED_BYTES * 2

HEX_DIGITS = set(string.hexdigits)

# scrypt cost parameters for the envelope (interactive-login strength)
SCRYPT_N = 2 ** 15
SCRYPT_R = 8
SCRYPT_P = 1


def generate_strong_password(length: int = PASSWORD_LENGTH) -> str:
    """Alphanumeric password cut from base64 output.

    Padding and the two non-alphanumeric base64 symbols are stripped, and a
    candidate is only accepted once it is exactly `length` characters long.
    """
    while True:
        raw = base64.b64encode(secrets.token_bytes(length + length // 2)).decode()
        candidate = "".join(c for c in raw if c not in "=+/")[:length]
        if len(candidate) == length:
            return candidate


def generate_seed_hex() -> str:
    """32 random bytes, hex-encoded (an ed25519 seed)."""
    return secrets.token_hex(SEED_BYTES)


def is_hex(value: str, length: int = SEED_HEX_LENGTH) -> bool:
    return len(value) == length and all(c in HEX_DIGITS for c in value)


# =============================================================================
# ed25519
# =============================================================================

def generate_ed25519_keypair() -> Tuple[str, str]:
    """Return (private seed hex, public key hex)."""
    private_key = Ed25519PrivateKey.generate()
    seed = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    return seed.hex(), _public_hex(private_key)


def derive_ed25519_public(private_hex: str) -> str:
    """Public key for a hex private key.

    Accepts the 32-byte seed form and the 64-byte seed||public form some
    issuers write.
    """
    raw = bytes.fromhex(private_hex)
    if len(raw) == 64:
        raw = raw[:32]
    if len(raw) != 32:
        raise ValueError(f"ed25519 private key must be 32 or 64 bytes (got {len(raw)})")
    return _public_hex(Ed25519PrivateKey.from_private_bytes(raw))


def _public_hex(private_key: Ed25519PrivateKey) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    ).hex()


# =============================================================================
# Passphrase envelope (scrypt + AES-256-GCM)
# =============================================================================

class EnvelopeError(Exception):
    """Envelope is malformed or the passphrase does not open it."""
    pass


@dataclass
class Envelope:
    """Serialized as JSON next to the key it protects."""
    kdf: str
    n: int
    r: int
    p: int
    salt: str
    nonce: str
    ciphertext: str
    version: int = 1

    def to_json(self) -> bytes:
        return json.dumps(asdict(self), indent=2).encode()

    @classmethod
    def from_json(cls, data: bytes) -> 'Envelope':
        try:
            return cls(**json.loads(data))
        except (ValueError, TypeError) as e:
            raise EnvelopeError(f"unreadable envelope: {e}") from e


def _derive_key(passphrase: str, salt: bytes, n: int, r: int, p: int) -> bytes:
    kdf = Scrypt(salt=salt, length=32, n=n, r=r, p=p)
    return kdf.derive(passphrase.encode())


def seal(plaintext: bytes, passphrase: str) -> bytes:
    """Encrypt `plaintext` under a passphrase-derived key."""
    salt = secrets.token_bytes(16)
    nonce = secrets.token_bytes(12)
    key = _derive_key(passphrase, salt, SCRYPT_N, SCRYPT_R, SCRYPT_P)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return Envelope(
        kdf="scrypt",
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        salt=salt.hex(),
        nonce=nonce.hex(),
        ciphertext=ciphertext.hex()
    ).to_json()


def unseal(data: bytes, passphrase: str) -> bytes:
    """Decrypt an envelope produced by seal()."""
    env = Envelope.from_json(data)
    if env.kdf != "scrypt" or env.version != 1:
        raise EnvelopeError(f"unsupported envelope: kdf={env.kdf} version={env.version}")
    key = _derive_key(passphrase, bytes.fromhex(env.salt), env.n, env.r, env.p)
    try:
        return AESGCM(key).decrypt(bytes.fromhex(env.nonce), bytes.fromhex(env.ciphertext), None)
    except InvalidTag as e:
        raise EnvelopeError("wrong passphrase or tampered envelope") from e
