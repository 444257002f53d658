"""
Credential Hasher — one-way hashing and verification of plaintext secrets.

Uses Argon2id with fixed cost parameters. Every call draws a fresh random
salt, so hashing the same plaintext twice never yields the same value, while
``verify_password`` is deterministic for a given (plaintext, hash) pair.

Security Note:
    Never log plaintext or hash values.
"""
import asyncio
import logging

from argon2 import PasswordHasher
from argon2.exceptions import (
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from .exceptions import WeakSecretError

logger = logging.getLogger("credsync.hasher")

MIN_SECRET_LENGTH = 8

# Fixed cost factor; changing these marks existing hashes for rehash.
TIME_COST = 3
MEMORY_COST = 65536  # KiB
PARALLELISM = 4

_password_hasher = PasswordHasher(
    time_cost=TIME_COST,
    memory_cost=MEMORY_COST,
    parallelism=PARALLELISM,
)


def validate_secret(plaintext: str | None) -> None:
    """Enforce the minimum secret policy.

    Raises:
        WeakSecretError: If plaintext is None, empty or shorter than
            ``MIN_SECRET_LENGTH`` characters.
    """
    if not plaintext or len(plaintext) < MIN_SECRET_LENGTH:
        raise WeakSecretError(
            f"Password must be at least {MIN_SECRET_LENGTH} characters"
        )


def hash_password(plaintext: str) -> str:
    """Hash a password using Argon2id.

    Args:
        plaintext: The secret to hash.

    Returns:
        Encoded hash string (salt and parameters embedded).

    Raises:
        WeakSecretError: If the secret fails the minimum length policy.
    """
    validate_secret(plaintext)
    return _password_hasher.hash(plaintext)


def verify_password(plaintext: str, hashed_value: str) -> bool:
    """Verify plaintext against a stored hash.

    Never raises: malformed hashes are logged and reported as ``False``.
    """
    if not plaintext or not hashed_value:
        return False
    try:
        return _password_hasher.verify(hashed_value, plaintext)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError) as err:
        logger.warning("Failed to verify password: %s", type(err).__name__)
        return False


def needs_rehash(hashed_value: str) -> bool:
    """Return True if the hash was produced with outdated cost parameters."""
    try:
        return _password_hasher.check_needs_rehash(hashed_value)
    except InvalidHashError:
        return True


async def ahash_password(plaintext: str) -> str:
    """Async ``hash_password``; the slow hash runs in a worker thread."""
    validate_secret(plaintext)
    return await asyncio.to_thread(_password_hasher.hash, plaintext)


async def averify_password(plaintext: str, hashed_value: str) -> bool:
    """Async ``verify_password``; the slow check runs in a worker thread."""
    return await asyncio.to_thread(verify_password, plaintext, hashed_value)
