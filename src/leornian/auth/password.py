"""
Password hashing and validation using argon2id.

Cost parameters are encoded in every stored hash, so raising them later only
requires a rehash on the next successful login (see ``check_needs_rehash``).
"""

from __future__ import annotations

import argon2

from leornian.config import get_settings
from leornian.errors import PasswordTooWeak

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,  # 64 MB
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,  # argon2id
)

# Verified against when the account does not exist so both paths cost the same.
_DUMMY_HASH = _hasher.hash("leornian-timing-equalizer")


def hash_password(password: str) -> str:
    """Hash a password using argon2id. Returns the full hash string."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its argon2id hash in constant time.

    Returns True if the password matches. Never raises on mismatch.
    """
    try:
        return _hasher.verify(password_hash, password)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def burn_verification(password: str) -> None:
    """Spend one verification on a throwaway hash (unknown-account path)."""
    verify_password(password, _DUMMY_HASH)


def check_needs_rehash(password_hash: str) -> bool:
    """Check if the hash needs to be updated (parameters changed)."""
    return _hasher.check_needs_rehash(password_hash)


def validate_password_strength(password: str) -> None:
    """
    Validate password meets minimum strength requirements.

    Raises PasswordTooWeak if the password is too weak.

    Requirements:
    - Must not be empty or whitespace-only
    - At least ``password_min_length`` characters (8)
    - At most ``password_max_length`` characters (128)
    """
    settings = get_settings()
    if not password or not password.strip():
        msg = "Password cannot be empty"
        raise PasswordTooWeak(msg)
    if len(password) < settings.password_min_length:
        msg = f"Password must be at least {settings.password_min_length} characters"
        raise PasswordTooWeak(msg)
    if len(password) > settings.password_max_length:
        msg = f"Password must not exceed {settings.password_max_length} characters"
        raise PasswordTooWeak(msg)
