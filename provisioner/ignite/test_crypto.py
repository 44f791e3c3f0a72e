import pytest

from ignite.crypto import (
    EnvelopeError, derive_ed25519_public, generate_ed25519_keypair, generate_seed_hex,
    generate_strong_password, is_hex, seal, unseal
)


def test_strong_password_is_32_alphanumerics():
    for _ in range(20):
        password = generate_strong_password()
        assert len(password) == 32
        assert password.isalnum()


def test_seed_is_64_hex_chars():
    seed = generate_seed_hex()
    assert is_hex(seed)
    assert seed != generate_seed_hex()


def test_is_hex_rejects_wrong_length_and_alphabet():
    assert not is_hex("ab" * 31)
    assert not is_hex("zz" * 32)


def test_public_key_derivation_matches_generation():
    private_hex, public_hex = generate_ed25519_keypair()
    assert derive_ed25519_public(private_hex) == public_hex
    # seed || public form
    assert derive_ed25519_public(private_hex + public_hex) == public_hex


def test_public_key_derivation_rejects_short_keys():
    with pytest.raises(ValueError):
        derive_ed25519_public("abcd")


def test_envelope_opens_only_with_its_passphrase():
    sealed = seal(b"secret-key", "passphrase-1")
    assert b"secret-key" not in sealed
    assert unseal(sealed, "passphrase-1") == b"secret-key"
    with pytest.raises(EnvelopeError):
        unseal(sealed, "passphrase-2")


def test_garbage_envelope():
    with pytest.raises(EnvelopeError):
        unseal(b"not json", "x")
