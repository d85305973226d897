"""
auth/passwords.py -- Credential Verifier: password hashing and verification.

Two stored formats are understood:

  bcrypt ("$2b$12$...")   -- every hash this service writes. bcrypt embeds its
                           own random salt and cost factor, so the stored
                           string is self-contained.

  legacy scrypt ("<salt>.<derivedKeyHex>")
                        -- written by the previous Node.js deployment:
                           scrypt(password, salt=<hex salt string>, N=16384,
                           r=8, p=1, dklen=64). Accepted for verification
                           only; needs_rehash() flags it so AuthService can
                           upgrade the row after the next successful login.

Both paths compare derived keys in constant time (bcrypt.checkpw internally,
hmac.compare_digest for scrypt). A malformed stored hash is a non-match,
never an exception the caller could mistake for success.

Layer rule: stdlib + bcrypt only.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

import bcrypt

logger = logging.getLogger("projectpulse.auth.passwords")

# Bcrypt cost (rounds); 12 is a good default for security vs speed.
BCRYPT_ROUNDS = 12

# bcrypt only looks at the first 72 bytes and bcrypt>=5 rejects longer input.
_BCRYPT_MAX_BYTES = 72

# Parameters used by the legacy Node.js crypto.scrypt() default call.
_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_SCRYPT_DKLEN = 64


def _bcrypt_input(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_bcrypt_input(plain), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def _is_bcrypt(stored: str) -> bool:
    return stored.startswith(("$2a$", "$2b$", "$2y$"))


def _verify_legacy_scrypt(plain: str, stored: str) -> bool:
    salt, sep, key_hex = stored.partition(".")
    if not sep or not salt or not key_hex:
        return False
    try:
        expected = bytes.fromhex(key_hex)
    except ValueError:
        return False
    if len(expected) != _SCRYPT_DKLEN:
        return False
    derived = hashlib.scrypt(
        plain.encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
        dklen=_SCRYPT_DKLEN,
    )
    return hmac.compare_digest(derived, expected)


def verify_password(plain: str, stored: str | None) -> bool:
    """Return True if the plaintext password matches the stored hash.

    Any malformed or unrecognised stored value returns False.
    """
    if not stored:
        return False
    if _is_bcrypt(stored):
        try:
            return bcrypt.checkpw(_bcrypt_input(plain), stored.encode("utf-8"))
        except (ValueError, TypeError):
            logger.warning("Malformed bcrypt hash encountered during verification")
            return False
    if "." in stored:
        return _verify_legacy_scrypt(plain, stored)
    logger.warning("Unrecognised password hash format encountered during verification")
    return False


def needs_rehash(stored: str | None) -> bool:
    """True when the stored hash is not a bcrypt hash at the current cost."""
    if not stored or not _is_bcrypt(stored):
        return True
    try:
        rounds = int(stored.split("$")[2])
    except (IndexError, ValueError):
        return True
    return rounds < BCRYPT_ROUNDS


# Timing equalization dummy hash [C1].
# Computed once at module load. Local login always runs a password check even
# when the username does not exist, so response time does not reveal which
# usernames are registered.
DUMMY_HASH: str = hash_password("projectpulse_timing_dummy")
