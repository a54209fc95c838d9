"""Password hashing and verification."""

from __future__ import annotations

import hashlib
import hmac
import secrets

DEFAULT_ITERATIONS = 100_000


def hash_password(
    password: str, salt: str | None = None, iterations: int = DEFAULT_ITERATIONS
) -> str:
    """Hash a password with salt using PBKDF2-SHA256.

    The result is ``<iterations>$<salt>$<hex digest>`` so a stored hash keeps
    verifying after the configured iteration count changes.
    """
    if salt is None:
        salt = secrets.token_hex(16)

    key = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        iterations,
    )

    return f"{iterations}${salt}${key.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash (constant-time comparison)."""
    try:
        iterations, salt, _ = password_hash.split("$")
        return hmac.compare_digest(
            hash_password(password, salt, int(iterations)), password_hash
        )
    except ValueError:
        return False
