"""
tests/test_hashing.py -- Unit tests for auth/hashing.py.

Covers:
  - bcrypt password round trip and rejection of wrong/empty/garbage hashes
  - HMAC refresh hashing is deterministic and keyed
  - passcode and secret generators produce the documented shapes
"""

from __future__ import annotations

from auth.hashing import (
    DUMMY_HASH,
    generate_passcode,
    generate_token_secret,
    hash_password,
    hash_token,
    verify_password,
)


class TestPasswordHashing:
    def test_round_trip(self) -> None:
        """A password verifies against its own hash."""
        hashed = hash_password("Secreto123", rounds=4)
        assert hashed.startswith("$2")
        assert verify_password("Secreto123", hashed)

    def test_wrong_password_rejected(self) -> None:
        """A different password does not verify."""
        hashed = hash_password("Secreto123", rounds=4)
        assert not verify_password("Secreto124", hashed)

    def test_missing_hash_never_verifies(self) -> None:
        """OAuth-only users have no hash; verification must be False, not an error."""
        assert not verify_password("anything", None)
        assert not verify_password("anything", "")

    def test_malformed_hash_returns_false(self) -> None:
        """A corrupt stored hash is a mismatch, not an exception."""
        assert not verify_password("Secreto123", "not-a-bcrypt-hash")

    def test_salt_differs_per_hash(self) -> None:
        """Hashing the same password twice gives different hashes."""
        assert hash_password("Secreto123", rounds=4) != hash_password("Secreto123", rounds=4)

    def test_dummy_hash_is_a_real_bcrypt_hash(self) -> None:
        """DUMMY_HASH is a valid bcrypt hash that rejects a real password."""
        assert DUMMY_HASH.startswith("$2")
        assert not verify_password("Secreto123", DUMMY_HASH)


class TestTokenHashing:
    def test_deterministic(self) -> None:
        """The refresh lookup hash is stable for one input."""
        assert hash_token("abc", key="k" * 32) == hash_token("abc", key="k" * 32)

    def test_keyed(self) -> None:
        """The refresh lookup hash depends on the secret key."""
        assert hash_token("abc", key="k" * 32) != hash_token("abc", key="j" * 32)

    def test_hex_sha256_length(self) -> None:
        """The refresh lookup hash is 64 hex characters."""
        digest = hash_token("abc")
        assert len(digest) == 64
        int(digest, 16)


class TestGenerators:
    def test_token_secret_is_long_and_unique(self) -> None:
        """Generated refresh secrets are long and never repeat."""
        a, b = generate_token_secret(), generate_token_secret()
        assert a != b
        assert len(a) >= 64

    def test_passcode_is_zero_padded_digits(self) -> None:
        """Passcodes are fixed-length digit strings, zero padded."""
        for _ in range(50):
            code = generate_passcode(6)
            assert len(code) == 6
            assert code.isdigit()
