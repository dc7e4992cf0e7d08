"""Tests for the credential stores."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from psycopg import errors

from testhub.storage.errors import ConstraintViolation, SchemaMissingError
from testhub.storage.memory import MemoryStore
from testhub.storage.models import utcnow
from testhub.storage.postgres import PostgresStore


@pytest.fixture
def store():
    return MemoryStore()


class TestMemoryUsers:
    def test_email_normalised_on_write_and_lookup(self, store):
        user = store.create_user(" Alice@Example.COM ", "Alice", "hash")
        assert user.email == "alice@example.com"
        assert store.get_user_by_email("ALICE@example.com").id == user.id

    def test_duplicate_email_is_constraint_violation(self, store):
        store.create_user("a@x.com", "Alice", "hash")
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("A@x.com", "Alice", "hash")
        assert exc_info.value.field == "email"

    def test_role_and_active_updates(self, store):
        user = store.create_user("a@x.com", "Alice", "hash")
        store.update_user_role(user.id, "manager")
        store.set_user_active(user.id, False)
        fetched = store.get_user(user.id)
        assert fetched.role == "manager"
        assert fetched.is_active is False

    def test_unknown_role_rejected_like_the_sql_check(self, store):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("a@x.com", "Alice", "hash", role="owner")
        assert exc_info.value.field == "role"
        user = store.create_user("b@x.com", "Bob", "hash")
        with pytest.raises(ConstraintViolation):
            store.update_user_role(user.id, "owner")
        assert store.get_user(user.id).role == "tester"


class TestMemoryRefreshTokens:
    def test_create_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_refresh_token(42, "tok", utcnow())
        assert exc_info.value.field == "user_id"

    def test_token_strings_are_unique(self, store):
        user = store.create_user("a@x.com", "Alice", "hash")
        store.create_refresh_token(user.id, "tok", utcnow())
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(user.id, "tok", utcnow())

    def test_delete_reports_whether_removed(self, store):
        user = store.create_user("a@x.com", "Alice", "hash")
        record = store.create_refresh_token(user.id, "tok", utcnow())
        assert store.delete_refresh_token(record.id) is True
        assert store.delete_refresh_token(record.id) is False

    def test_rotate_consumes_once(self, store):
        user = store.create_user("a@x.com", "Alice", "hash")
        old = store.create_refresh_token(user.id, "old", utcnow() + timedelta(days=1))

        successor = store.rotate_refresh_token(old.id, user.id, "new", utcnow() + timedelta(days=1))

        assert successor.token == "new"
        assert store.get_refresh_token("old") is None
        assert store.rotate_refresh_token(old.id, user.id, "newer", utcnow()) is None

    def test_failed_rotation_restores_old_row(self, store):
        user = store.create_user("a@x.com", "Alice", "hash")
        store.create_refresh_token(user.id, "taken", utcnow() + timedelta(days=1))
        old = store.create_refresh_token(user.id, "old", utcnow() + timedelta(days=1))

        with pytest.raises(ConstraintViolation):
            store.rotate_refresh_token(old.id, user.id, "taken", utcnow())
        assert store.get_refresh_token("old") is not None

    def test_purge_expired(self, store):
        user = store.create_user("a@x.com", "Alice", "hash")
        store.create_refresh_token(user.id, "dead", utcnow() - timedelta(seconds=1))
        store.create_refresh_token(user.id, "live", utcnow() + timedelta(days=1))

        assert store.purge_expired_refresh_tokens() == 1
        assert store.get_refresh_token("dead") is None
        assert store.get_refresh_token("live") is not None


class TestMemoryCompanies:
    def test_company_and_admin_created_together(self, store):
        company, admin = store.create_company_with_admin(
            name="Acme",
            business_type="other",
            trading_name=None,
            industry="retail",
            city="Campinas",
            state="SP",
            trial_ends_at=utcnow() + timedelta(days=30),
            admin_email="boss@acme.com",
            admin_full_name="Boss",
            admin_password_hash="hash",
        )
        assert store.get_company(company.id) is company
        assert admin.company_id == company.id
        assert company.created_by == admin.id
        assert admin.role == "admin"


def _stub_pool(*fetchone_results):
    """Pool whose connection returns ``fetchone_results`` in order."""
    conn = MagicMock()
    cursor = MagicMock()
    cursor.fetchone.side_effect = list(fetchone_results)
    conn.execute.return_value = cursor
    pool = MagicMock()
    pool.connection.return_value.__enter__.return_value = conn
    return pool, conn


def _postgres_store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = MagicMock()
    return store


class TestPostgresStore:
    def test_rotate_returns_none_when_row_already_consumed(self):
        pool, conn = _stub_pool(None)
        store = _postgres_store(pool)

        assert store.rotate_refresh_token(1, 7, "new", utcnow()) is None
        conn.transaction.assert_called_once()
        assert conn.execute.call_count == 1
        assert "DELETE FROM refresh_token" in conn.execute.call_args[0][0]

    def test_rotate_inserts_successor(self):
        now = utcnow()
        pool, conn = _stub_pool(
            {"id": 1},
            {"id": 2, "user_id": 7, "token": "new", "expires_at": now, "created_at": now},
        )
        store = _postgres_store(pool)

        successor = store.rotate_refresh_token(1, 7, "new", now)

        assert successor.id == 2
        assert successor.token == "new"
        assert conn.execute.call_count == 2

    def test_delete_reports_row_count(self):
        pool, _ = _stub_pool({"id": 3}, None)
        store = _postgres_store(pool)
        assert store.delete_refresh_token(3) is True
        assert store.delete_refresh_token(3) is False

    def test_missing_schema_detected(self):
        pool, _ = _stub_pool({"oid": "company"}, {"oid": None}, {"oid": None})
        store = _postgres_store(pool)
        with pytest.raises(SchemaMissingError) as exc_info:
            store._verify_required_schema()
        assert sorted(exc_info.value.missing) == ["app_user", "refresh_token"]

    def test_role_check_violation_maps_to_constraint_violation(self):
        pool, conn = _stub_pool()
        conn.execute.side_effect = errors.CheckViolation("app_user_role_check")
        store = _postgres_store(pool)

        with pytest.raises(ConstraintViolation) as exc_info:
            store.update_user_role(1, "owner")
        assert exc_info.value.field == "role"
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("a@x.com", "Alice", "hash", role="owner")
        assert exc_info.value.field == "role"
