"""End-to-end tests for the /auth, /tiers and /admin routes over HTTP cookies."""

import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import dealflow.app as app_module
from dealflow.service.runtime import get_runtime, reset_runtime_for_tests
from dealflow.storage.models import utcnow

PASSWORD = "Flipper2024"


def _client():
    return TestClient(app_module.app)


def _register(client, email="wholesaler@example.com", password=PASSWORD):
    return client.post(
        "/auth/register",
        json={
            "email": email,
            "password": password,
            "firstName": "Wendy",
            "lastName": "Wholesaler",
        },
    )


def _login(client, email="wholesaler@example.com", password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def _create_account(email, *, role="user", tier="basic", internal=False):
    runtime = get_runtime()
    return runtime.store.create_account(
        email,
        runtime.auth._hash_password(PASSWORD),
        first_name="Seed",
        last_name="Account",
        role=role,
        subscription_tier=tier,
        internal_account=internal,
    )


class TestRegister:
    def test_register_sets_session_cookies(self):
        client = _client()
        resp = _register(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["email"] == "wholesaler@example.com"
        assert user["subscriptionTier"] == "basic"
        assert user["role"] == "user"
        assert "passwordHash" not in user and "password_hash" not in user
        assert client.cookies.get("accessToken")
        assert client.cookies.get("refreshToken")

    def test_cookie_attributes(self):
        """Session cookies are httpOnly and SameSite=Lax, and not secure outside production."""
        resp = _register(_client())
        headers = [h for h in resp.headers.get_list("set-cookie")]
        assert len(headers) == 2
        for header in headers:
            lowered = header.lower()
            assert "httponly" in lowered
            assert "samesite=lax" in lowered
            assert "secure" not in lowered
            assert "path=/" in lowered

    def test_client_cannot_choose_role_or_tier(self):
        resp = _client().post(
            "/auth/register",
            json={
                "email": "sneaky@example.com",
                "password": PASSWORD,
                "firstName": "Sam",
                "lastName": "Sneaky",
                "role": "admin",
                "subscriptionTier": "enterprise",
            },
        )
        assert resp.status_code == 201
        user = resp.json()["data"]["user"]
        assert user["role"] == "user"
        assert user["subscriptionTier"] == "basic"

    def test_duplicate_email(self):
        _register(_client())
        resp = _register(_client(), email="WHOLESALER@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "override",
        [
            {"email": "not-an-email"},
            {"firstName": "A"},
            {"lastName": " "},
            {"password": "x" * 129},
        ],
    )
    def test_malformed_input(self, override):
        payload = {
            "email": "valid@example.com",
            "password": PASSWORD,
            "firstName": "Val",
            "lastName": "Id",
        }
        payload.update(override)
        resp = _client().post("/auth/register", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_weak_password(self):
        resp = _register(_client(), password="onlyletters")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_and_me(self):
        _register(_client())
        client = _client()
        resp = _login(client)
        assert resp.status_code == 200
        assert resp.json()["data"]["requires2FA"] is False

        me = client.get("/auth/me")
        assert me.status_code == 200
        data = me.json()["data"]
        assert data["user"]["email"] == "wholesaler@example.com"
        assert data["is2FAVerified"] is True
        assert data["user"]["lastLogin"] is not None

    def test_bearer_header_accepted(self):
        client = _client()
        _register(client)
        token = client.cookies.get("accessToken")
        resp = _client().get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200

    def test_unknown_email_and_wrong_password_look_identical(self):
        _register(_client())
        unknown = _login(_client(), email="nobody@example.com")
        wrong = _login(_client(), password="WrongPass99")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_lockout_after_five_failures(self):
        """The sixth attempt is refused even with the right password, until the lock lapses."""
        _register(_client())
        client = _client()
        for _ in range(5):
            assert _login(client, password="WrongPass99").status_code == 401
        locked = _login(client)
        assert locked.status_code == 429
        assert locked.json()["error"]["code"] == "account_locked"
        assert locked.json()["error"]["details"]["retry_after"] > 0

        runtime = get_runtime()
        account = runtime.store.get_account_by_email("wholesaler@example.com")
        assert account.failed_login_attempts == 5
        runtime.store.update_login_state(
            account.id, failed_login_attempts=5, lock_until=utcnow() - timedelta(seconds=1)
        )
        assert _login(client).status_code == 200
        assert runtime.store.get_account(account.id).failed_login_attempts == 0

    def test_login_rate_limit(self, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "2")
        reset_runtime_for_tests()
        client = _client()
        assert _login(client, email="a@example.com").status_code == 401
        assert _login(client, email="b@example.com").status_code == 401
        limited = _login(client, email="c@example.com")
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        actions = [e.action for e in get_runtime().store.list_audit_events()]
        assert "security.rate_limit" in actions


class TestSession:
    def test_me_without_credentials(self):
        resp = _client().get("/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_expired_access_token_refreshes_transparently(self):
        """A stale access cookie plus a live refresh cookie yields a new access cookie."""
        first = _client()
        _register(first)
        refresh = first.cookies.get("refreshToken")
        runtime = get_runtime()
        claims = runtime.tokens.decode(first.cookies.get("accessToken"))
        claims["exp"] = int(time.time()) - 3600
        expired = runtime.tokens.encode(claims)

        client = _client()
        client.cookies.set("accessToken", expired)
        client.cookies.set("refreshToken", refresh)
        resp = client.get("/auth/me")
        assert resp.status_code == 200
        new_access = resp.cookies.get("accessToken")
        assert new_access and new_access != expired
        assert resp.cookies.get("refreshToken") == refresh

    def test_refresh_rejected_after_revoke_sessions(self):
        first = _client()
        _register(first)
        refresh = first.cookies.get("refreshToken")
        runtime = get_runtime()
        account = runtime.store.get_account_by_email("wholesaler@example.com")
        runtime.store.bump_token_version(account.id)

        client = _client()
        client.cookies.set("refreshToken", refresh)
        assert client.get("/auth/me").status_code == 401

    def test_logout_revokes_refresh_token(self):
        client = _client()
        _register(client)
        refresh = client.cookies.get("refreshToken")
        resp = client.post("/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "Logged out"
        assert not client.cookies.get("accessToken")

        replay = _client()
        replay.cookies.set("refreshToken", refresh)
        assert replay.get("/auth/me").status_code == 401

    def test_logout_without_session_is_ok(self):
        assert _client().post("/auth/logout").status_code == 200


class TestTwoFactor:
    def _enroll(self, client):
        setup = client.post("/auth/2fa/setup")
        assert setup.status_code == 200
        data = setup.json()["data"]
        assert data["otpauthUrl"].startswith("otpauth://totp/")
        assert data["qrCodeDataUrl"].startswith("data:image/png;base64,")
        return data["secret"]

    def _code(self, secret):
        return get_runtime().two_factor._generate_totp(secret, time.time())

    def test_full_two_factor_flow(self):
        """Setup, verify, then a fresh login is pending until the code is given."""
        client = _client()
        _register(client)
        secret = self._enroll(client)

        verified = client.post("/auth/2fa/verify", json={"token": self._code(secret)})
        assert verified.status_code == 200
        assert verified.json()["data"]["user"]["twoFactorEnabled"] is True

        second = _client()
        login = _login(second)
        assert login.json()["data"]["requires2FA"] is True
        me = second.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["is2FAVerified"] is False

        blocked = second.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "Another2025"},
        )
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "two_factor_required"

        pending_refresh = second.cookies.get("refreshToken")
        ok = second.post("/auth/2fa/verify", json={"token": self._code(secret)})
        assert ok.status_code == 200
        assert second.get("/auth/me").json()["data"]["is2FAVerified"] is True

        replay = _client()
        replay.cookies.set("refreshToken", pending_refresh)
        assert replay.get("/auth/me").status_code == 401

    def test_wrong_code(self):
        client = _client()
        _register(client)
        self._enroll(client)
        resp = client.post("/auth/2fa/verify", json={"token": "abcdef"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_two_factor_code"

    def test_verify_before_setup(self):
        client = _client()
        _register(client)
        resp = client.post("/auth/2fa/verify", json={"token": "123456"})
        assert resp.status_code == 400

    def test_setup_twice_after_enable_conflicts(self):
        client = _client()
        _register(client)
        secret = self._enroll(client)
        client.post("/auth/2fa/verify", json={"token": self._code(secret)})
        assert client.post("/auth/2fa/setup").status_code == 409


class TestChangePassword:
    def test_change_password_logs_out_other_sessions(self):
        client = _client()
        _register(client)
        other = _client()
        _login(other)
        other_refresh = other.cookies.get("refreshToken")

        resp = client.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "Another2025"},
        )
        assert resp.status_code == 200
        assert client.get("/auth/me").status_code == 200

        replay = _client()
        replay.cookies.set("refreshToken", other_refresh)
        assert replay.get("/auth/me").status_code == 401
        assert _login(_client(), password="Another2025").status_code == 200

    def test_wrong_current_password(self):
        client = _client()
        _register(client)
        resp = client.post(
            "/auth/change-password",
            json={"currentPassword": "NotIt1234", "newPassword": "Another2025"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {"field": "currentPassword"}


class TestTiers:
    def test_anonymous_tier_table(self):
        resp = _client().get("/tiers")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [t["id"] for t in data["tiers"]] == ["basic", "pro", "enterprise"]
        assert data["featureRequirements"]["analytics"] == "pro"
        assert data["currentTier"] is None
        assert data["upgradeOptions"] == []

    def test_signed_in_tier_table(self):
        client = _client()
        _register(client)
        data = client.get("/tiers").json()["data"]
        assert data["currentTier"] == "basic"
        assert [t["id"] for t in data["upgradeOptions"]] == ["pro", "enterprise"]

    def test_feature_access_probe(self):
        client = _client()
        _register(client)
        data = client.get("/tiers/access/analytics").json()["data"]
        assert data["allowed"] is False
        assert data["requiredTier"]["id"] == "pro"
        assert client.get("/tiers/access/dashboard").json()["data"]["allowed"] is True


class TestAdmin:
    def _admin_client(self):
        _create_account("admin@example.com", role="admin")
        client = _client()
        assert _login(client, email="admin@example.com").status_code == 200
        return client

    def test_set_tier_applies_on_refresh(self):
        user = _client()
        _register(user)
        user_id = user.get("/auth/me").json()["data"]["user"]["id"]

        admin = self._admin_client()
        resp = admin.post(f"/admin/accounts/{user_id}/tier", json={"subscriptionTier": "pro"})
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["subscriptionTier"] == "pro"

        # the cached access token still carries the old tier until it is refreshed
        assert user.get("/tiers/access/analytics").json()["data"]["allowed"] is False
        refreshed = _client()
        refreshed.cookies.set("refreshToken", user.cookies.get("refreshToken"))
        assert refreshed.get("/tiers/access/analytics").json()["data"]["allowed"] is True

    def test_unknown_tier_rejected(self):
        user = _client()
        _register(user)
        user_id = user.get("/auth/me").json()["data"]["user"]["id"]
        resp = self._admin_client().post(
            f"/admin/accounts/{user_id}/tier", json={"subscriptionTier": "premium"}
        )
        assert resp.status_code == 400

    def test_non_admin_forbidden(self):
        user = _client()
        _register(user)
        user_id = user.get("/auth/me").json()["data"]["user"]["id"]
        resp = user.post(f"/admin/accounts/{user_id}/tier", json={"subscriptionTier": "pro"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_revoke_sessions(self):
        user = _client()
        _register(user)
        user_id = user.get("/auth/me").json()["data"]["user"]["id"]
        refresh = user.cookies.get("refreshToken")

        resp = self._admin_client().post(f"/admin/accounts/{user_id}/revoke-sessions")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"tokenVersion": 1, "revoked": 1}

        replay = _client()
        replay.cookies.set("refreshToken", refresh)
        assert replay.get("/auth/me").status_code == 401

    def test_revoke_sessions_missing_account(self):
        resp = self._admin_client().post("/admin/accounts/missing/revoke-sessions")
        assert resp.status_code == 404


class TestHealth:
    def test_healthz(self):
        resp = _client().get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
