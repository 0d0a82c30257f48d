"""Tests for core/config.py -- signing key policy and derived defaults."""

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY_A = "a" * 32
KEY_B = "b" * 32


@pytest.fixture(autouse=True)
def _no_keys_in_env(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.delenv("REFRESH_SECRET_KEY", raising=False)


def test_production_requires_keys() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(_env_file=None, debug=False)


def test_production_with_keys() -> None:
    s = Settings(_env_file=None, debug=False, secret_key=KEY_A, refresh_secret_key=KEY_B)
    assert s.secret_key == KEY_A
    assert s.secure_cookies is True


def test_debug_generates_distinct_keys() -> None:
    s = Settings(_env_file=None, debug=True)
    assert len(s.secret_key) >= 32
    assert len(s.refresh_secret_key) >= 32
    assert s.secret_key != s.refresh_secret_key
    assert s.secure_cookies is False


def test_short_key_rejected_even_in_debug() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(_env_file=None, debug=True, secret_key="short", refresh_secret_key=KEY_B)


def test_identical_keys_rejected() -> None:
    with pytest.raises(ValidationError, match="must differ"):
        Settings(_env_file=None, debug=False, secret_key=KEY_A, refresh_secret_key=KEY_A)


def test_explicit_secure_cookies_wins() -> None:
    s = Settings(_env_file=None, debug=True, secure_cookies=True)
    assert s.secure_cookies is True


def test_defaults() -> None:
    s = Settings(_env_file=None, debug=True)
    assert s.access_token_expire_seconds == 900
    assert s.refresh_token_expire_seconds == 86400
    assert s.remember_me_expire_seconds == 30 * 86400
    assert s.max_login_attempts == 5
    assert s.lockout_seconds == 900
    assert s.audit_retention == 1000


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("LOCKOUT_SECONDS", "60")
    s = Settings(_env_file=None, debug=True)
    assert s.max_login_attempts == 3
    assert s.lockout_seconds == 60
