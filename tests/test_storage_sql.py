"""Tests for tenantguard.storage.sql with mocked async sessions."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tenantguard.audit.events import AuditEvent, AuditFilter, EventKind
from tenantguard.exceptions import DuplicatePrincipalError, NotFoundError, StorageFailure
from tenantguard.models.tenant import AuditEventRecord, PrincipalRecord, TenantRecord
from tenantguard.multitenancy.principal import Principal, Role
from tenantguard.multitenancy.tenant import TenantPlan, TenantStatus
from tenantguard.storage.sql import SQLAlchemyStorage

NOW = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def _mock_session():
    session = AsyncMock()
    session.add = MagicMock()
    begin = MagicMock()
    begin.__aenter__ = AsyncMock(return_value=None)
    begin.__aexit__ = AsyncMock(return_value=False)
    session.begin = MagicMock(return_value=begin)
    return session


def _factory(session):
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=session)
    cm.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=cm)


def _result(rows=None, scalar=None):
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows or []
    result.scalars.return_value.first.return_value = (rows or [None])[0]
    result.scalar_one.return_value = scalar
    result.scalar_one_or_none.return_value = scalar
    return result


def _principal_row(**overrides):
    data = dict(
        id="u-1",
        email="ana@acme.com",
        display_name="Ana",
        role="admin",
        tenant_id="t1",
        is_active=True,
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    return PrincipalRecord(**data)


def _tenant_row(**overrides):
    data = dict(
        id="t1",
        name="Acme",
        domain=None,
        status="active",
        plan="professional",
        max_users=25,
        current_users=3,
        admin_principal_id="u-1",
        settings={"theme": "dark"},
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    return TenantRecord(**data)


@pytest.fixture
def session():
    return _mock_session()


@pytest.fixture
def storage(session):
    return SQLAlchemyStorage(_factory(session))


class TestPrincipals:
    @pytest.mark.asyncio
    async def test_get_converts_record(self, storage, session):
        session.get.return_value = _principal_row()
        principal = await storage.get_principal("u-1")
        assert principal.role is Role.ADMIN
        assert principal.tenant_id == "t1"
        session.get.assert_awaited_once_with(PrincipalRecord, "u-1")

    @pytest.mark.asyncio
    async def test_get_missing(self, storage, session):
        session.get.return_value = None
        assert await storage.get_principal("nope") is None

    @pytest.mark.asyncio
    async def test_find_by_email(self, storage, session):
        session.execute.return_value = _result([_principal_row()])
        found = await storage.find_principal_by_email("ANA@acme.com")
        assert found.id == "u-1"
        stmt = session.execute.call_args.args[0]
        assert "lower(principals.email)" in str(stmt)

    @pytest.mark.asyncio
    async def test_add_flushes(self, storage, session):
        principal = Principal(id="u-2", email="b@acme.com", role=Role.USER, tenant_id="t1")
        assert await storage.add_principal(principal) is principal
        row = session.add.call_args.args[0]
        assert isinstance(row, PrincipalRecord)
        assert row.role == "user"
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_add_conflict_is_value_error(self, storage, session):
        session.flush.side_effect = IntegrityError("INSERT", {}, Exception("unique"))
        with pytest.raises(ValueError):
            await storage.add_principal(
                Principal(id="u-2", email="b@acme.com", role=Role.USER, tenant_id="t1")
            )

    @pytest.mark.asyncio
    async def test_email_conflict_is_duplicate_principal(self, storage, session):
        session.flush.side_effect = IntegrityError(
            "INSERT", {}, Exception("UNIQUE constraint failed: principals.email")
        )
        with pytest.raises(DuplicatePrincipalError) as exc_info:
            await storage.add_principal(
                Principal(id="u-2", email="b@acme.com", role=Role.USER, tenant_id="t1")
            )
        assert exc_info.value.email == "b@acme.com"

    @pytest.mark.asyncio
    async def test_update_unknown_field_opens_no_session(self, session):
        factory = _factory(session)
        storage = SQLAlchemyStorage(factory)
        with pytest.raises(AttributeError):
            await storage.update_principal("u-1", id="u-9")
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_missing(self, storage, session):
        session.get.return_value = None
        with pytest.raises(NotFoundError):
            await storage.update_principal("nope", is_active=False)

    @pytest.mark.asyncio
    async def test_update_stores_role_value(self, storage, session):
        row = _principal_row(role="user")
        session.get.return_value = row
        updated = await storage.update_principal("u-1", role=Role.ADMIN)
        assert row.role == "admin"
        assert updated.role is Role.ADMIN

    @pytest.mark.asyncio
    async def test_count_active(self, storage, session):
        session.execute.return_value = _result(scalar=4)
        assert await storage.count_active_principals("t1") == 4


class TestTenants:
    @pytest.mark.asyncio
    async def test_get_converts_record(self, storage, session):
        session.get.return_value = _tenant_row()
        tenant = await storage.get_tenant("t1")
        assert tenant.status == TenantStatus.ACTIVE
        assert tenant.plan == TenantPlan.PROFESSIONAL
        assert tenant.settings == {"theme": "dark"}

    @pytest.mark.asyncio
    async def test_update_stores_enum_values(self, storage, session):
        row = _tenant_row(status="trial")
        session.get.return_value = row
        await storage.update_tenant("t1", status=TenantStatus.SUSPENDED)
        assert row.status == "suspended"

    @pytest.mark.asyncio
    async def test_delete_missing(self, storage, session):
        session.get.return_value = None
        with pytest.raises(NotFoundError):
            await storage.delete_tenant("nope")

    @pytest.mark.asyncio
    async def test_increment_returns_new_value(self, storage, session):
        session.execute.return_value = _result(scalar=6)
        assert await storage.increment_user_count("t1", 1) == 6
        stmt = session.execute.call_args.args[0]
        assert "UPDATE tenants" in str(stmt)

    @pytest.mark.asyncio
    async def test_increment_missing_tenant(self, storage, session):
        session.execute.return_value = _result(scalar=None)
        with pytest.raises(NotFoundError):
            await storage.increment_user_count("nope", 1)


class TestEvents:
    @pytest.mark.asyncio
    async def test_append_splits_context(self, storage, session):
        event = AuditEvent(event_kind=EventKind.VIEW, resource_type="lead", resource_id="l-1")
        await storage.append_event(event)
        row = session.add.call_args.args[0]
        assert isinstance(row, AuditEventRecord)
        assert row.event_kind == "view"
        assert row.id == event.id

    @pytest.mark.asyncio
    async def test_query_converts_and_limits(self, storage, session):
        row = AuditEventRecord(
            id="e-1",
            timestamp=NOW,
            principal_id="u-1",
            event_kind="CROSS_TENANT_OPERATION",
            resource_type="operation",
            resource_id="update_lead",
            old_data={"tenant_id": "t1"},
            new_data=None,
            ip="10.0.0.1",
            user_agent=None,
            url=None,
        )
        session.execute.return_value = _result([row])
        events = await storage.query_events(AuditFilter(principal_id="u-1", limit=5))

        assert events[0].event_kind == EventKind.CROSS_TENANT_OPERATION
        assert events[0].context.ip == "10.0.0.1"
        sql = str(session.execute.call_args.args[0])
        assert "ORDER BY audit_events.timestamp DESC" in sql
        assert "LIMIT" in sql

    @pytest.mark.asyncio
    async def test_delete_before_returns_rowcount(self, storage, session):
        result = MagicMock()
        result.rowcount = 7
        session.execute.return_value = result
        assert await storage.delete_events_before(NOW) == 7


class TestFailures:
    @pytest.mark.asyncio
    async def test_database_error_becomes_storage_failure(self, storage, session):
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))
        with pytest.raises(StorageFailure) as exc_info:
            await storage.list_tenants()
        assert exc_info.value.operation == "list_tenants"

    @pytest.mark.asyncio
    async def test_not_found_is_not_storage_failure(self, storage, session):
        session.get.return_value = None
        with pytest.raises(NotFoundError):
            await storage.update_tenant("nope", name="x")


class TestTransactions:
    @pytest.mark.asyncio
    async def test_calls_share_one_session(self, session):
        factory = _factory(session)
        storage = SQLAlchemyStorage(factory)
        session.get.return_value = _tenant_row()

        async with storage.transaction():
            await storage.get_tenant("t1")
            await storage.update_tenant("t1", name="Acme Corp")

        assert factory.call_count == 1
        session.begin.assert_called_once()

    @pytest.mark.asyncio
    async def test_separate_calls_use_separate_sessions(self, session):
        factory = _factory(session)
        storage = SQLAlchemyStorage(factory)
        session.get.return_value = _tenant_row()

        await storage.get_tenant("t1")
        await storage.get_tenant("t1")
        assert factory.call_count == 2

    @pytest.mark.asyncio
    async def test_commit_failure_becomes_storage_failure(self, storage, session):
        session.begin.return_value.__aexit__.side_effect = OperationalError(
            "COMMIT", {}, Exception("lost connection")
        )
        with pytest.raises(StorageFailure):
            async with storage.transaction():
                pass

    @pytest.mark.asyncio
    async def test_body_error_propagates_unchanged(self, storage):
        with pytest.raises(RuntimeError):
            async with storage.transaction():
                raise RuntimeError("boom")
