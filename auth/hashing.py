"""
auth/hashing.py -- One-way hashing for passwords, passcodes and refresh secrets.

Two hash families, chosen by the entropy of the secret:

  bcrypt (passwords, passcodes): low-entropy secrets need a slow, salted hash.
       Verification is re-hash-and-compare via bcrypt.checkpw. Used directly
       rather than through passlib, whose bcrypt backend detection trips on
       bcrypt 4.x.

  HMAC-SHA256(SECRET_KEY, secret) (refresh secrets): secrets.token_urlsafe(48)
       carries 384 bits of entropy, so a fast deterministic hash is enough and
       lets the store look a record up by its hash. Keying with SECRET_KEY
       means a leaked table cannot be replayed without the key as well.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

from core.config import get_settings


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of plain.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    128 characters; the policy regex keeps typical inputs well under that.
    """
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if plain matches the bcrypt hash. Never raises."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed or non-bcrypt hash stored in the row
        return False


# Passcodes share the password primitives; the aliases keep call sites honest
# about what is being hashed.
hash_passcode = hash_password
verify_passcode = verify_password


def hash_token(secret: str, key: str | None = None) -> str:
    """Return HMAC-SHA256(SECRET_KEY, secret) as 64 hex chars."""
    signing_key = key if key is not None else get_settings().secret_key
    return hmac.new(signing_key.encode("utf-8"), secret.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_token_secret() -> str:
    """Return a URL-safe refresh secret (48 random bytes)."""
    return secrets.token_urlsafe(48)


def generate_passcode(length: int = 6) -> str:
    """Return a zero-padded numeric code of the given length."""
    return str(secrets.randbelow(10**length)).zfill(length)


# Timing equalization: login runs bcrypt against this hash when the email is
# unknown, so response time does not reveal whether an account exists.
DUMMY_HASH: str = hash_password("minimarket_timing_dummy")
