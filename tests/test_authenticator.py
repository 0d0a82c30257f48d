"""Unit tests for auth/authenticator.py -- the login state machine.

Covers:
- success clears the counter, stamps last_login, records login_success
- unknown, inactive and wrong-password attempts are indistinguishable
- shape checks reject before any store access
- lockout after exactly MAX_LOGIN_ATTEMPTS failures; locked account rejects
  even the correct password; lock expiry re-enables login
- remaining-attempt counts and the lockout audit event
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from auth.errors import AccountLocked, InvalidCredential, InvalidInput
from auth.models import ClientInfo, EventKind

CLIENT = ClientInfo(ip_address="10.0.0.7", user_agent="pytest")
PASSWORD = "Password123"


@pytest.fixture
def alice(authority):
    return authority.provision_user("alice", PASSWORD, "user", {"manage_videos"})


def _authenticate(authority, username="alice", password=PASSWORD):
    return authority.authenticator.authenticate(username, password, CLIENT)


def _kinds(authority) -> list[str]:
    return [e.kind for e in reversed(authority.audit.recent(limit=100))]


class TestSuccess:
    def test_returns_user_and_records_event(self, authority, alice, clock) -> None:
        user = _authenticate(authority)
        assert user.id == alice.id
        assert user.last_login == clock.now
        assert authority.store.get_by_id(alice.id).last_login == clock.now

        event = authority.audit.recent(limit=1)[0]
        assert event.kind == EventKind.login_success.value
        assert event.username == "alice"
        assert event.ip_address == "10.0.0.7"
        assert event.user_agent == "pytest"

    def test_success_resets_failure_counter(self, authority, alice) -> None:
        for _ in range(3):
            with pytest.raises(InvalidCredential):
                _authenticate(authority, password="WrongPass1")
        assert authority.store.get_by_id(alice.id).failed_login_attempts == 3

        _authenticate(authority)
        assert authority.store.get_by_id(alice.id).failed_login_attempts == 0

        with pytest.raises(InvalidCredential) as excinfo:
            _authenticate(authority, password="WrongPass1")
        assert excinfo.value.attempts_remaining == authority.settings.max_login_attempts - 1


class TestIndistinguishableFailures:
    def test_unknown_user(self, authority, alice) -> None:
        with pytest.raises(InvalidCredential) as excinfo:
            _authenticate(authority, username="mallory")
        assert excinfo.value.attempts_remaining == authority.settings.max_login_attempts - 1
        assert excinfo.value.code == "invalid_credentials"

    def test_inactive_user_with_correct_password(self, authority, alice) -> None:
        authority.store.set_active(alice.id, False)
        with pytest.raises(InvalidCredential) as excinfo:
            _authenticate(authority)
        assert excinfo.value.message == InvalidCredential.message
        # No counter side effect for inactive accounts.
        assert authority.store.get_by_id(alice.id).failed_login_attempts == 0

    def test_messages_match_for_unknown_and_wrong_password(self, authority, alice) -> None:
        with pytest.raises(InvalidCredential) as unknown:
            _authenticate(authority, username="mallory")
        with pytest.raises(InvalidCredential) as wrong:
            _authenticate(authority, password="WrongPass1")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.extra() == wrong.value.extra()
        assert unknown.value.status_code == wrong.value.status_code == 401

    def test_internal_outcome_only_in_audit_details(self, authority, alice) -> None:
        with pytest.raises(InvalidCredential):
            _authenticate(authority, username="mallory")
        event = authority.audit.recent(limit=1)[0]
        assert event.kind == EventKind.login_failure.value
        assert event.username == "mallory"
        assert "rejected_unknown" in event.details

    @pytest.mark.parametrize("deactivate", [False, True], ids=["unknown", "inactive"])
    def test_countdown_and_lockout_match_a_real_account(self, authority, alice, settings, deactivate) -> None:
        bob = authority.provision_user("bob", PASSWORD, "user", set())
        if deactivate:
            authority.store.set_active(bob.id, False)
        other = "bob" if deactivate else "mallory"

        def outcomes(username: str) -> list[tuple[str, object]]:
            seen = []
            for _ in range(settings.max_login_attempts + 1):
                try:
                    _authenticate(authority, username=username, password="WrongPass1")
                except InvalidCredential as exc:
                    seen.append((exc.message, exc.attempts_remaining))
                except AccountLocked as exc:
                    seen.append((exc.message, exc.retry_after))
            return seen

        assert outcomes(other) == outcomes("alice")

    def test_shadow_lock_expires_like_a_real_one(self, authority, settings, clock) -> None:
        for _ in range(settings.max_login_attempts):
            with pytest.raises(InvalidCredential):
                _authenticate(authority, username="mallory")
        with pytest.raises(AccountLocked) as locked:
            _authenticate(authority, username="mallory")
        assert locked.value.lock_until == clock.now + timedelta(seconds=settings.lockout_seconds)

        clock.advance(settings.lockout_seconds)
        with pytest.raises(InvalidCredential) as excinfo:
            _authenticate(authority, username="mallory")
        assert excinfo.value.attempts_remaining == settings.max_login_attempts - 1


class TestShapeChecks:
    @pytest.mark.parametrize(("username", "password"), [("al", PASSWORD), ("alice", "abc"), ("", "")])
    def test_too_short_is_invalid_input(self, authority, alice, username, password) -> None:
        with pytest.raises(InvalidInput):
            _authenticate(authority, username=username, password=password)
        assert authority.store.get_by_id(alice.id).failed_login_attempts == 0
        assert authority.audit.count() == 0


class TestLockout:
    def test_locks_after_exactly_max_attempts(self, authority, alice, settings) -> None:
        remaining = []
        for _ in range(settings.max_login_attempts):
            with pytest.raises(InvalidCredential) as excinfo:
                _authenticate(authority, password="WrongPass1")
            remaining.append(excinfo.value.attempts_remaining)
        assert remaining == list(range(settings.max_login_attempts - 1, -1, -1))
        assert "locked" in excinfo.value.message

        with pytest.raises(AccountLocked) as locked:
            _authenticate(authority)
        assert locked.value.status_code == 423
        assert locked.value.retry_after == settings.lockout_seconds

    def test_lockout_event_recorded_once(self, authority, alice, settings) -> None:
        for _ in range(settings.max_login_attempts):
            with pytest.raises(InvalidCredential):
                _authenticate(authority, password="WrongPass1")
        with pytest.raises(AccountLocked):
            _authenticate(authority, password="WrongPass1")

        kinds = _kinds(authority)
        assert kinds.count(EventKind.lockout.value) == 1
        assert kinds.count(EventKind.login_failure.value) == settings.max_login_attempts + 1

    def test_locked_attempts_do_not_extend_the_lock(self, authority, alice, settings) -> None:
        for _ in range(settings.max_login_attempts):
            with pytest.raises(InvalidCredential):
                _authenticate(authority, password="WrongPass1")
        lock_until = authority.store.get_by_id(alice.id).lock_until
        with pytest.raises(AccountLocked):
            _authenticate(authority, password="WrongPass1")
        assert authority.store.get_by_id(alice.id).lock_until == lock_until

    def test_login_succeeds_after_lock_expires(self, authority, alice, settings, clock) -> None:
        for _ in range(settings.max_login_attempts):
            with pytest.raises(InvalidCredential):
                _authenticate(authority, password="WrongPass1")

        clock.advance(settings.lockout_seconds - 1)
        with pytest.raises(AccountLocked):
            _authenticate(authority)

        clock.advance(1)
        user = _authenticate(authority)
        assert user.failed_login_attempts == 0
        assert authority.store.get_by_id(alice.id).lock_until is None

    def test_failure_after_lock_expiry_starts_fresh_window(self, authority, alice, settings, clock) -> None:
        for _ in range(settings.max_login_attempts):
            with pytest.raises(InvalidCredential):
                _authenticate(authority, password="WrongPass1")
        clock.advance(settings.lockout_seconds)

        with pytest.raises(InvalidCredential) as excinfo:
            _authenticate(authority, password="WrongPass1")
        assert excinfo.value.attempts_remaining == settings.max_login_attempts - 1


def test_dummy_hash_uses_configured_cost(authority, settings) -> None:
    assert authority.authenticator._dummy_hash.startswith(f"$2b${settings.bcrypt_rounds:02d}$")


def test_lock_expiry_is_exposed(authority, alice, settings, clock) -> None:
    for _ in range(settings.max_login_attempts):
        with pytest.raises(InvalidCredential):
            _authenticate(authority, password="WrongPass1")
    with pytest.raises(AccountLocked) as locked:
        _authenticate(authority)
    assert locked.value.lock_until == clock.now + timedelta(seconds=settings.lockout_seconds)
    assert locked.value.extra() == {"lock_until": locked.value.lock_until.isoformat()}
    assert locked.value.headers() == {"Retry-After": str(settings.lockout_seconds)}


def test_concurrent_failures_lock_at_threshold(authority, alice, settings) -> None:
    n = settings.max_login_attempts + 3

    def attempt():
        try:
            _authenticate(authority, password="WrongPass1")
        except (InvalidCredential, AccountLocked) as exc:
            return exc
        return None

    with ThreadPoolExecutor(max_workers=n) as pool:
        results = list(pool.map(lambda _: attempt(), range(n)))

    assert all(r is not None for r in results)
    kinds = _kinds(authority)
    assert kinds.count(EventKind.lockout.value) == 1
    assert authority.store.get_by_id(alice.id).is_locked(authority.clock())
    with pytest.raises(AccountLocked):
        _authenticate(authority)
