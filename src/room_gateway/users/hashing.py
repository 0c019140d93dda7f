"""Password hashing: bcrypt for new hashes, SHA-256 accepted for migration only."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging

import bcrypt

from room_gateway.users.models import PasswordHash

logger = logging.getLogger(__name__)

BCRYPT = "bcrypt"
LEGACY_SHA256 = "sha256"

# bcrypt only looks at the first 72 bytes; longer inputs raise in bcrypt>=4.1.
_BCRYPT_MAX_BYTES = 72


def _encode(plaintext: str) -> bytes:
    return plaintext.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password_sync(plaintext: str, rounds: int = 12) -> PasswordHash:
    digest = bcrypt.hashpw(_encode(plaintext), bcrypt.gensalt(rounds=rounds)).decode("ascii")
    return PasswordHash(algorithm=BCRYPT, digest=digest, params={"rounds": rounds})


async def hash_password(plaintext: str, rounds: int = 12) -> PasswordHash:
    """Hash off the event loop; bcrypt is deliberately slow."""
    return await asyncio.to_thread(hash_password_sync, plaintext, rounds)


def legacy_sha256(plaintext: str) -> PasswordHash:
    digest = hashlib.sha256(plaintext.encode("utf-8")).hexdigest()
    return PasswordHash(algorithm=LEGACY_SHA256, digest=digest)


def needs_upgrade(stored: PasswordHash) -> bool:
    return stored.algorithm == LEGACY_SHA256


def _check_bcrypt(plaintext: str, digest: str) -> bool:
    try:
        return bcrypt.checkpw(_encode(plaintext), digest.encode("ascii"))
    except ValueError:
        logger.error("Stored bcrypt hash is malformed")
        return False


async def verify_password(plaintext: str, stored: PasswordHash) -> bool:
    if stored.algorithm == BCRYPT:
        return await asyncio.to_thread(_check_bcrypt, plaintext, stored.digest)
    if stored.algorithm == LEGACY_SHA256:
        candidate = hashlib.sha256(plaintext.encode("utf-8")).hexdigest()
        return hmac.compare_digest(candidate, stored.digest.lower())
    logger.error("Unsupported password hash algorithm: %s", stored.algorithm)
    return False
