"""Tests for brute-force lockout.

Covers:
- LockoutPolicy counter and lock window arithmetic
- Login never checks the password while the account is locked
- Success resets the counter; an elapsed lock relocks on the next failure
"""

from datetime import timedelta

import pytest

from dealflow.config import Settings
from dealflow.service.auth import AuthService
from dealflow.service.errors import AccountLockedError, InvalidCredentialsError
from dealflow.service.lockout import LockDecision, LockoutPolicy
from dealflow.service.tiers import default_tier_config
from dealflow.storage.memory import MemoryStore
from dealflow.storage.models import Account, utcnow

PASSWORD = "CorrectHorse42"


@pytest.fixture
def settings():
    return Settings(jwt_secret="lockout-test-secret-0123456789abcdef")


@pytest.fixture
def memory_store(tmp_path, settings):
    return MemoryStore(fs_root=str(tmp_path), secret_key=settings.jwt_secret)


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(memory_store, None, settings, tiers=default_tier_config())


@pytest.fixture
def account(memory_store, auth_service):
    return memory_store.create_account(
        "locked@example.com",
        auth_service._hash_password(PASSWORD),
        first_name="Lock",
        last_name="Smith",
    )


class TestLockoutPolicy:
    """Pure policy decisions."""

    def test_failure_increments_by_exactly_one(self):
        """Each failure adds one to the stored counter."""
        policy = LockoutPolicy()
        account = Account(id="a", email="a@example.com", password_hash="x", failed_login_attempts=2)
        attempts, lock_until = policy.register_failure(account, utcnow())
        assert attempts == 3
        assert lock_until is None

    def test_threshold_sets_lock_window(self):
        """Reaching the threshold locks for the full lock duration."""
        policy = LockoutPolicy(max_failures=5, lock_minutes=15)
        now = utcnow()
        account = Account(id="a", email="a@example.com", password_hash="x", failed_login_attempts=4)
        attempts, lock_until = policy.register_failure(account, now)
        assert attempts == 5
        assert lock_until >= now + timedelta(minutes=15)

    def test_evaluate_locked_only_while_lock_in_future(self):
        """A past lock_until no longer blocks."""
        policy = LockoutPolicy()
        now = utcnow()
        account = Account(id="a", email="a@example.com", password_hash="x")
        assert policy.evaluate(account, now) is LockDecision.PROCEED
        account.lock_until = now + timedelta(minutes=1)
        assert policy.evaluate(account, now) is LockDecision.LOCKED
        account.lock_until = now - timedelta(seconds=1)
        assert policy.evaluate(account, now) is LockDecision.PROCEED

    def test_success_clears_state(self):
        """Success returns a zero counter and no lock."""
        policy = LockoutPolicy()
        account = Account(id="a", email="a@example.com", password_hash="x", failed_login_attempts=3)
        assert policy.register_success(account, utcnow()) == (0, None)


class TestLoginLockout:
    """Lockout as seen through AuthService.login."""

    async def test_wrong_password_counts_once(self, auth_service, memory_store, account):
        """A single wrong password increments the counter by one."""
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(account.email, "WrongPassword1")
        assert memory_store.get_account(account.id).failed_login_attempts == 1

    async def test_fifth_failure_locks_account(self, auth_service, memory_store, account):
        """Five consecutive failures set lock_until at least 15 minutes out."""
        before = utcnow()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(account.email, "WrongPassword1")
        stored = memory_store.get_account(account.id)
        assert stored.failed_login_attempts == 5
        assert stored.lock_until >= before + timedelta(minutes=15)

    async def test_locked_account_rejects_correct_password(
        self, auth_service, memory_store, account
    ):
        """While locked the correct password still fails and the counter is untouched."""
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(account.email, "WrongPassword1")
        with pytest.raises(AccountLockedError):
            await auth_service.login(account.email, PASSWORD)
        with pytest.raises(AccountLockedError):
            await auth_service.login(account.email, "WrongPassword1")
        assert memory_store.get_account(account.id).failed_login_attempts == 5

    async def test_success_resets_counter(self, auth_service, memory_store, account):
        """A successful login zeroes the counter and stamps last_login."""
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(account.email, "WrongPassword1")
        result = await auth_service.login(account.email, PASSWORD)
        stored = memory_store.get_account(account.id)
        assert stored.failed_login_attempts == 0
        assert stored.lock_until is None
        assert stored.last_login is not None
        assert result.account.failed_login_attempts == 0

    async def test_elapsed_lock_allows_correct_password(
        self, auth_service, memory_store, account
    ):
        """Once the window passes the correct password succeeds and resets the counter."""
        memory_store.update_login_state(
            account.id,
            failed_login_attempts=5,
            lock_until=utcnow() - timedelta(seconds=1),
        )
        await auth_service.login(account.email, PASSWORD)
        stored = memory_store.get_account(account.id)
        assert stored.failed_login_attempts == 0
        assert stored.lock_until is None

    async def test_failure_after_elapsed_lock_relocks(
        self, auth_service, memory_store, account
    ):
        """The counter carries over, so one more failure locks again immediately."""
        memory_store.update_login_state(
            account.id,
            failed_login_attempts=5,
            lock_until=utcnow() - timedelta(seconds=1),
        )
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(account.email, "WrongPassword1")
        stored = memory_store.get_account(account.id)
        assert stored.failed_login_attempts == 6
        assert stored.lock_until > utcnow() + timedelta(minutes=14)
        actions = [e.action for e in memory_store.list_audit_events(account.id)]
        assert "auth.account.locked" in actions

    async def test_unknown_email_matches_wrong_password_message(
        self, auth_service, account
    ):
        """Unknown email and wrong password are indistinguishable to the caller."""
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login(account.email, "WrongPassword1")
        assert unknown.value.message == wrong.value.message == "Invalid credentials"
        assert unknown.value.error_code == wrong.value.error_code
