"""Tests for auth/passwords.py."""

import pytest

from auth.passwords import hash_password, password_policy_violations, verify_password


def test_hash_and_verify() -> None:
    hashed = hash_password("Password123", rounds=4)
    assert hashed.startswith("$2b$04$")
    assert verify_password("Password123", hashed)
    assert not verify_password("password123", hashed)


def test_hashes_are_salted() -> None:
    assert hash_password("Password123", rounds=4) != hash_password("Password123", rounds=4)


def test_malformed_hash_is_a_mismatch() -> None:
    assert verify_password("Password123", "not-a-bcrypt-hash") is False


def test_long_passwords_do_not_raise() -> None:
    long_pw = "Aa1" * 40
    hashed = hash_password(long_pw, rounds=4)
    assert verify_password(long_pw, hashed)


@pytest.mark.parametrize(
    ("password", "problem"),
    [
        ("Short1", "at least 8"),
        ("alllowercase1", "uppercase"),
        ("ALLUPPERCASE1", "lowercase"),
        ("NoDigitsHere", "digit"),
    ],
)
def test_policy_violations(password, problem) -> None:
    problems = password_policy_violations(password, 8)
    assert any(problem in p for p in problems)


def test_policy_accepts_strong_password() -> None:
    assert password_policy_violations("NewPassw0rd", 8) == []
