"""
auth/credentials.py -- Password hashing and refresh-token fingerprinting.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Cost factor 12 by
       default (Settings.bcrypt_rounds). hash_password() is called once per
       password set -- at registration and on an explicit password change --
       and never on an ordinary save of the user document.

       bcrypt 4.x+ rejects inputs longer than 72 bytes. Longer passwords are
       SHA-256 hashed and base64-encoded first (44 ASCII bytes), which keeps
       every byte of the input significant.

  Timing: equalize_timing() runs a bcrypt check against a dummy hash so a
       login for an unknown email costs the same as a wrong password [C1].

  Refresh tokens: fingerprint_token() is plain SHA-256. Refresh tokens are
       long random-nonce JWTs, so a slow salted hash buys nothing; the digest
       must be deterministic so lookup-by-rehash works.

Layer rule: stdlib + bcrypt only.
"""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

import bcrypt

DEFAULT_ROUNDS = 12

_BCRYPT_MAX_BYTES = 72


def _prepare_password(plain: str) -> bytes:
    password_bytes = plain.encode("utf-8")
    if len(password_bytes) <= _BCRYPT_MAX_BYTES:
        return password_bytes
    return base64.b64encode(hashlib.sha256(password_bytes).digest())


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_prepare_password(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Accounts created through an external identity provider have no hash;
    they simply fail verification rather than raising.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_prepare_password(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage ("Invalid salt")
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return hash_password("hattbooks_timing_dummy", rounds=rounds)


def equalize_timing(plain: str, rounds: int = DEFAULT_ROUNDS) -> None:
    """Spend one bcrypt verification's worth of time and discard the result [C1]."""
    verify_password(plain, _dummy_hash(rounds))


def fingerprint_token(token: str) -> str:
    """Return the SHA-256 hex digest used to store and look up a refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
