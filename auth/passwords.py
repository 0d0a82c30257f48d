"""
auth/passwords.py -- Password hashing and password policy.

Passwords: bcrypt used directly (no passlib wrapper). bcrypt is the right
choice for low-entropy secrets because its cost factor makes brute force
expensive; the cost is configurable (BCRYPT_ROUNDS) so tests can run fast.

bcrypt only looks at the first 72 bytes of its input and recent releases
raise instead of silently truncating, so inputs are cut to 72 bytes before
hashing and verification. The API layer caps password length well above the
minimums, which keeps this truncation a corner case.

Hashing is the one intentionally slow step of a login. Callers must never
hold a lock while calling these functions.
"""

from __future__ import annotations

import re

import bcrypt

_BCRYPT_MAX_BYTES = 72

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    pw_bytes = plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the hash. Comparison is constant-time inside bcrypt."""
    pw_bytes = plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    try:
        return bcrypt.checkpw(pw_bytes, hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def password_policy_violations(password: str, min_length: int = 8) -> list[str]:
    """Return human-readable reasons the password is too weak (empty list = acceptable)."""
    problems: list[str] = []
    if len(password) < min_length:
        problems.append(f"must be at least {min_length} characters")
    if not _UPPER.search(password):
        problems.append("must contain an uppercase letter")
    if not _LOWER.search(password):
        problems.append("must contain a lowercase letter")
    if not _DIGIT.search(password):
        problems.append("must contain a digit")
    return problems
