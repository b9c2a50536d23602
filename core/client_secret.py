"""
Client secret hashing.

The fulfillment provider issues a clientSecret per order; callers present it
as the Authorization header to read order status. Only a bcrypt hash is
stored. Secrets are SHA-256'd first so bcrypt's 72-byte input limit never
truncates them.
"""

import hashlib
import logging

import bcrypt

logger = logging.getLogger("purch.client_secret")

BCRYPT_ROUNDS = 10


def _prehash(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest().encode("ascii")


def hash_client_secret(secret: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(_prehash(secret), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_client_secret(secret: str, hashed: str) -> bool:
    """Constant-time check of secret against a stored hash. Malformed hashes count as a mismatch."""
    try:
        return bcrypt.checkpw(_prehash(secret), hashed.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        logger.error(f"bcrypt comparison error: {e}")
        return False
