"""Tests for TOTP enrollment and verification."""

import time
from urllib.parse import parse_qs, urlparse

import pytest

from dealflow.config import Settings
from dealflow.service.errors import (
    ConflictError,
    InvalidTwoFactorCodeError,
    RateLimitedError,
    ValidationError,
)
from dealflow.service.totp import TwoFactorService
from dealflow.storage.memory import MemoryStore

# RFC 6238 appendix B seed "12345678901234567890" in base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
NOW = 1111111111


@pytest.fixture
def settings():
    return Settings(jwt_secret="totp-test-secret-0123456789abcdef0123")


@pytest.fixture
def memory_store(tmp_path, settings):
    return MemoryStore(fs_root=str(tmp_path), secret_key=settings.jwt_secret)


@pytest.fixture
def two_factor(memory_store, settings):
    return TwoFactorService(memory_store, None, settings)


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("mfa@example.com", "unused-hash")


def _enrolled(memory_store, account, secret=RFC_SECRET):
    memory_store.set_two_factor_secret(account.id, secret)
    return memory_store.get_account(account.id)


def _wrong_code(two_factor):
    now = time.time()
    valid = {two_factor._generate_totp(RFC_SECRET, now + s * 30) for s in (-1, 0, 1)}
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)


class TestCodeGeneration:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1111111111, "050471"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_rfc_6238_sha1_vectors(self, two_factor, timestamp, expected):
        """Codes match the published SHA1 test vectors truncated to six digits."""
        assert two_factor._generate_totp(RFC_SECRET, timestamp) == expected

    def test_generated_secret_is_unpadded_base32(self, two_factor):
        secret = two_factor.generate_secret()
        assert len(secret) == 32
        assert "=" not in secret
        assert two_factor._generate_totp(secret, NOW).isdigit()

    def test_invalid_secret_yields_no_code(self, two_factor):
        assert two_factor._generate_totp("not base32!", NOW) == ""
        assert two_factor.verify_code("not base32!", "000000", at=NOW) is False


class TestVerifyCode:
    """The +/- one step window."""

    @pytest.mark.parametrize("steps", [-1, 0, 1])
    def test_adjacent_steps_accepted(self, two_factor, steps):
        code = two_factor._generate_totp(RFC_SECRET, NOW + steps * 30)
        assert two_factor.verify_code(RFC_SECRET, code, at=NOW) is True

    @pytest.mark.parametrize("steps", [-3, 3])
    def test_distant_steps_rejected(self, two_factor, steps):
        code = two_factor._generate_totp(RFC_SECRET, NOW + steps * 30)
        window = {two_factor._generate_totp(RFC_SECRET, NOW + s * 30) for s in (-1, 0, 1)}
        if code in window:
            pytest.skip("code collides with a code inside the window")
        assert two_factor.verify_code(RFC_SECRET, code, at=NOW) is False

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes_rejected(self, two_factor, code):
        assert two_factor.verify_code(RFC_SECRET, code, at=NOW) is False

    def test_spaces_are_ignored(self, two_factor):
        code = two_factor._generate_totp(RFC_SECRET, NOW)
        assert two_factor.verify_code(RFC_SECRET, f"{code[:3]} {code[3:]}", at=NOW) is True


class TestSetup:
    def test_begin_setup_stores_secret_but_leaves_disabled(
        self, two_factor, memory_store, account
    ):
        """Setup persists a secret; enablement waits for the first valid code."""
        result = two_factor.begin_setup(account)
        stored = memory_store.get_account(account.id)
        assert stored.two_factor_secret == result["secret"]
        assert stored.two_factor_enabled is False
        assert result["qr_code_data_url"].startswith("data:image/png;base64,")

    def test_provisioning_uri(self, two_factor, account):
        uri = two_factor.provisioning_uri("ABCDEFGH", account.email)
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert "mfa%40example.com" in parsed.path
        query = parse_qs(parsed.query)
        assert query["secret"] == ["ABCDEFGH"]
        assert query["issuer"] == ["DealFlow"]

    def test_setup_conflicts_when_already_enabled(self, two_factor, memory_store, account):
        memory_store.enable_two_factor(account.id)
        with pytest.raises(ConflictError):
            two_factor.begin_setup(memory_store.get_account(account.id))


class TestVerify:
    async def test_first_success_enables(self, two_factor, memory_store, account):
        enrolled = _enrolled(memory_store, account)
        code = two_factor._generate_totp(RFC_SECRET, time.time())
        updated = await two_factor.verify(enrolled, code)
        assert updated.two_factor_enabled is True
        assert memory_store.get_account(account.id).two_factor_enabled is True

    async def test_mismatch_changes_nothing(self, two_factor, memory_store, account):
        """A wrong code leaves the secret and enabled flag untouched."""
        enrolled = _enrolled(memory_store, account)
        with pytest.raises(InvalidTwoFactorCodeError):
            await two_factor.verify(enrolled, _wrong_code(two_factor))
        stored = memory_store.get_account(account.id)
        assert stored.two_factor_enabled is False
        assert stored.two_factor_secret == RFC_SECRET

    async def test_verify_without_secret(self, two_factor, account):
        with pytest.raises(ValidationError):
            await two_factor.verify(account, "123456")

    async def test_repeated_failures_throttle(self, two_factor, memory_store, account):
        """After the attempt limit even a correct code is refused for a while."""
        enrolled = _enrolled(memory_store, account)
        for _ in range(two_factor.max_attempts):
            with pytest.raises(InvalidTwoFactorCodeError):
                await two_factor.verify(enrolled, "abcdef")
        code = two_factor._generate_totp(RFC_SECRET, time.time())
        with pytest.raises(RateLimitedError) as exc:
            await two_factor.verify(enrolled, code)
        assert exc.value.detail["retry_after"] == two_factor.lockout_seconds
        assert memory_store.get_account(account.id).two_factor_enabled is False

    async def test_success_clears_failure_count(self, two_factor, memory_store, account):
        enrolled = _enrolled(memory_store, account)
        for _ in range(two_factor.max_attempts - 1):
            with pytest.raises(InvalidTwoFactorCodeError):
                await two_factor.verify(enrolled, "abcdef")
        code = two_factor._generate_totp(RFC_SECRET, time.time())
        await two_factor.verify(enrolled, code)
        assert account.id not in two_factor._attempts
