"""
Password hashing for login and signup.

Hashes are stored as "pbkdf2_sha256$<iterations>$<salt>$<hash>" so the
work factor travels with each hash. Raising PBKDF2_ITERATIONS makes
needs_rehash() true for older hashes, and login upgrades them in place.
Bare "salt:hash" values from before the iteration count was stored are
still accepted at LEGACY_ITERATIONS.
"""

from __future__ import annotations

import hashlib
import secrets

ALGORITHM = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 100_000
LEGACY_ITERATIONS = 100_000


def _derive(password: str, salt: str, iterations: int) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        iterations=iterations,
    ).hex()


def _parse(password_hash: str) -> tuple[int, str, str] | None:
    """(iterations, salt, hash) or None when the value is not a hash we wrote."""
    if not isinstance(password_hash, str):
        return None
    if password_hash.startswith(f"{ALGORITHM}$"):
        parts = password_hash.split("$")
        if len(parts) != 4 or not parts[1].isdigit():
            return None
        _, iterations, salt, digest = parts
        return int(iterations), salt, digest
    if password_hash.count(":") == 1:
        salt, digest = password_hash.split(":")
        return LEGACY_ITERATIONS, salt, digest
    return None


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_hex(32)
    return f"{ALGORITHM}${iterations}${salt}${_derive(password, salt, iterations)}"


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a stored hash of either format."""
    parsed = _parse(password_hash)
    if parsed is None:
        return False
    iterations, salt, digest = parsed
    if iterations < 1:
        return False
    return secrets.compare_digest(_derive(password, salt, iterations), digest)


def needs_rehash(password_hash: str) -> bool:
    """True for legacy hashes and hashes made with fewer iterations than today."""
    if not isinstance(password_hash, str) or not password_hash.startswith(f"{ALGORITHM}$"):
        return True
    parsed = _parse(password_hash)
    return parsed is None or parsed[0] < PBKDF2_ITERATIONS
