from datetime import datetime, timezone

from dealflow.storage.common import build_secret_cipher, encrypt_secret
from dealflow.storage.postgres import PostgresStore, _parse_ip


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store._cipher = build_secret_cipher("pg-unit-key")
    return store


def test_row_to_account_decrypts_and_normalizes():
    store = _store()
    naive = datetime(2024, 1, 1, 12, 0, 0)
    row = {
        "id": "9b2c",
        "email": "agent@example.com",
        "password_hash": "hash",
        "first_name": None,
        "last_name": "Agent",
        "role": "admin",
        "subscription_tier": "pro",
        "access_code": None,
        "two_factor_secret": encrypt_secret(store._cipher, "JBSWY3DPEHPK3PXP"),
        "two_factor_enabled": True,
        "failed_login_attempts": None,
        "lock_until": naive,
        "token_version": 4,
        "internal_account": False,
        "last_login": None,
        "created_at": naive,
    }
    account = store._row_to_account(row)
    assert account.first_name == ""
    assert account.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert account.failed_login_attempts == 0
    assert account.lock_until.tzinfo is timezone.utc
    assert account.token_version == 4


def test_row_to_audit_event_parses_json_details():
    store = _store()
    event = store._row_to_audit_event(
        {
            "id": "e1",
            "action": "auth.logout",
            "status": "success",
            "account_id": None,
            "resource": None,
            "details": '{"revoked": true}',
            "ip_address": None,
            "user_agent": None,
            "created_at": None,
        }
    )
    assert event.details == {"revoked": True}
    assert event.account_id is None
    assert event.created_at is not None


def test_parse_ip():
    assert _parse_ip(" 203.0.113.7 ") == "203.0.113.7"
    assert _parse_ip("testclient") is None
    assert _parse_ip(None) is None


def test_get_account_with_non_uuid_id_is_none():
    """Path parameters that are not UUIDs never reach the database."""
    store = _store()
    assert store.get_account("not-a-uuid") is None
    assert store.get_account("") is None
