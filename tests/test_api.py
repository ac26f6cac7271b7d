"""Tests for the tenantguard HTTP API."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from tenantguard.api.dependencies import get_principal
from tenantguard.exceptions import StorageFailure
from tenantguard.main import create_app
from tenantguard.multitenancy.principal import Principal, Role
from tenantguard.storage.memory import InMemoryStorage

MASTER = Principal(id="m-1", email="root@ops.io", role=Role.MASTER)


class _Caller:
    """Mutable stand-in for the identity layer."""

    def __init__(self) -> None:
        self.principal = MASTER

    def __call__(self):
        return self.principal


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def caller():
    return _Caller()


@pytest.fixture
def app(storage, caller):
    app = create_app(storage=storage)
    app.dependency_overrides[get_principal] = caller
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create_tenant(client, email="a@acme.com", plan="basic"):
    resp = await client.post(
        "/api/tenants",
        json={"name": "Acme", "plan": plan, "admin_email": email, "admin_credential": "s3cret"},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Plumbing
# ---------------------------------------------------------------------------

class TestPlumbing:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["storage"] == "InMemoryStorage"
        assert resp.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, client):
        resp = await client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    def test_principal_from_raw_payload(self):
        request = Request({
            "type": "http",
            "state": {"principal": {"id": "u-1", "role": "user", "tenantId": "t1"}},
        })
        principal = get_principal(request)
        assert principal.tenant_id == "t1"
        assert principal.role is Role.USER

    def test_missing_principal_is_none(self):
        assert get_principal(Request({"type": "http"})) is None

    @pytest.mark.asyncio
    async def test_storage_failure_is_503(self, caller):
        class DownStorage(InMemoryStorage):
            async def list_tenants(self):
                raise StorageFailure("connection refused", operation="list_tenants")

        app = create_app(storage=DownStorage())
        app.dependency_overrides[get_principal] = caller
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/api/tenants")
        assert resp.status_code == 503
        assert resp.json() == {"detail": "Storage unavailable"}


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------

class TestTenantEndpoints:
    @pytest.mark.asyncio
    async def test_create(self, client, storage):
        body = await _create_tenant(client)
        assert body["status"] == "trial"
        assert body["max_users"] == 5
        assert body["current_users"] == 1
        admin = await storage.get_principal(body["admin_principal_id"])
        assert admin.role is Role.ADMIN
        assert admin.tenant_id == body["id"]

    @pytest.mark.asyncio
    async def test_unauthenticated(self, client, caller):
        caller.principal = None
        resp = await client.get("/api/tenants")
        assert resp.status_code == 401
        assert resp.json()["error"] == "AuthenticationMissing"

    @pytest.mark.asyncio
    async def test_invalid_master(self, client, caller):
        caller.principal = Principal(id="m-2", email="m2@ops.io", role=Role.MASTER, tenant_id="t9")
        resp = await client.get("/api/tenants")
        assert resp.status_code == 403
        assert resp.json()["error"] == "IsolationViolation"

    @pytest.mark.asyncio
    async def test_admin_cannot_list(self, client, caller, storage):
        body = await _create_tenant(client)
        caller.principal = await storage.get_principal(body["admin_principal_id"])
        resp = await client.get("/api/tenants")
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client):
        await _create_tenant(client)
        resp = await client.post(
            "/api/tenants",
            json={"name": "Beta", "admin_email": "a@acme.com", "admin_credential": "x"},
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_blank_name(self, client):
        resp = await client.post(
            "/api/tenants",
            json={"name": "   ", "admin_email": "a@acme.com", "admin_credential": "x"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_plan(self, client):
        resp = await client.post(
            "/api/tenants",
            json={"name": "Acme", "plan": "platinum", "admin_email": "a@acme.com", "admin_credential": "x"},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_get_rules(self, client, caller, storage):
        acme = await _create_tenant(client)
        beta = await _create_tenant(client, email="b@beta.com")

        assert (await client.get(f"/api/tenants/{acme['id']}")).status_code == 200
        assert (await client.get("/api/tenants/nope")).status_code == 404

        caller.principal = await storage.get_principal(acme["admin_principal_id"])
        assert (await client.get(f"/api/tenants/{acme['id']}")).status_code == 200
        assert (await client.get(f"/api/tenants/{beta['id']}")).status_code == 403

    @pytest.mark.asyncio
    async def test_update_plan(self, client):
        tenant = await _create_tenant(client)
        resp = await client.patch(f"/api/tenants/{tenant['id']}", json={"plan": "enterprise"})
        assert resp.status_code == 200
        assert resp.json()["max_users"] == 100

    @pytest.mark.asyncio
    async def test_status_changes(self, client):
        tenant = await _create_tenant(client)
        resp = await client.post(f"/api/tenants/{tenant['id']}/suspend", json={"reason": "unpaid"})
        assert resp.json()["status"] == "suspended"
        again = await client.post(f"/api/tenants/{tenant['id']}/suspend")
        assert again.status_code == 409
        resp = await client.post(f"/api/tenants/{tenant['id']}/activate")
        assert resp.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_delete(self, client, storage):
        tenant = await _create_tenant(client)
        resp = await client.delete(f"/api/tenants/{tenant['id']}")
        assert resp.status_code == 204
        assert (await client.get(f"/api/tenants/{tenant['id']}")).status_code == 404
        assert await storage.get_principal(tenant["admin_principal_id"]) is None

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await _create_tenant(client)
        resp = await client.get("/api/tenants/metrics")
        assert resp.status_code == 200
        assert resp.json()["total_tenants"] == 1
        assert resp.json()["health"] == "critical"


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

class TestPrincipalEndpoints:
    @pytest.mark.asyncio
    async def test_provision_until_full(self, client, caller, storage):
        tenant = await _create_tenant(client)
        caller.principal = await storage.get_principal(tenant["admin_principal_id"])
        url = f"/api/tenants/{tenant['id']}/principals"

        for i in range(4):
            resp = await client.post(url, json={"email": f"u{i}@acme.com", "display_name": "U"})
            assert resp.status_code == 201
        resp = await client.post(url, json={"email": "late@acme.com"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "quota_exceeded"

        limits = await client.get(f"/api/tenants/{tenant['id']}/limits")
        assert limits.json()["can_add_user"] is False

    @pytest.mark.asyncio
    async def test_deactivate_frees_seat(self, client, caller, storage):
        tenant = await _create_tenant(client)
        caller.principal = await storage.get_principal(tenant["admin_principal_id"])
        created = await client.post(
            f"/api/tenants/{tenant['id']}/principals", json={"email": "u@acme.com"}
        )
        resp = await client.post(f"/api/principals/{created.json()['id']}/deactivate")
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        recount = await client.post(f"/api/tenants/{tenant['id']}/recount")
        assert recount.json()["current_users"] == 1

    @pytest.mark.asyncio
    async def test_deactivate_unknown(self, client, caller, storage):
        tenant = await _create_tenant(client)
        caller.principal = await storage.get_principal(tenant["admin_principal_id"])
        resp = await client.post("/api/principals/nope/deactivate")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_master_cannot_deactivate(self, client):
        tenant = await _create_tenant(client)
        resp = await client.post(f"/api/principals/{tenant['admin_principal_id']}/deactivate")
        assert resp.status_code == 403
        assert resp.json()["error"] == "AccessDenied"

    @pytest.mark.asyncio
    async def test_reactivate(self, client, caller, storage):
        tenant = await _create_tenant(client)
        caller.principal = await storage.get_principal(tenant["admin_principal_id"])
        created = await client.post(
            f"/api/tenants/{tenant['id']}/principals", json={"email": "u@acme.com"}
        )
        user_id = created.json()["id"]
        await client.post(f"/api/principals/{user_id}/deactivate")
        resp = await client.post(f"/api/principals/{user_id}/reactivate")
        assert resp.status_code == 200
        assert resp.json()["is_active"] is True

    @pytest.mark.asyncio
    async def test_change_role(self, client, caller, storage):
        tenant = await _create_tenant(client)
        admin_id = tenant["admin_principal_id"]
        caller.principal = await storage.get_principal(admin_id)
        created = await client.post(
            f"/api/tenants/{tenant['id']}/principals", json={"email": "u@acme.com"}
        )
        user_id = created.json()["id"]

        denied = await client.put(f"/api/principals/{user_id}/role", json={"role": "admin"})
        assert denied.status_code == 403

        caller.principal = MASTER
        resp = await client.put(f"/api/principals/{user_id}/role", json={"role": "admin"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"
        assert resp.json()["tenant_id"] == tenant["id"]

        bad = await client.put(
            f"/api/principals/{user_id}/role", json={"role": "master", "tenant_id": tenant["id"]}
        )
        assert bad.status_code == 403
        assert bad.json()["error"] == "IsolationViolation"


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class TestAuditEndpoints:
    @pytest.mark.asyncio
    async def test_denial_is_visible_with_request_context(self, client, caller, storage):
        acme = await _create_tenant(client)
        beta = await _create_tenant(client, email="b@beta.com")
        admin = await storage.get_principal(acme["admin_principal_id"])
        caller.principal = admin

        await client.get(
            f"/api/tenants/{beta['id']}",
            headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "User-Agent": "acme-client/1.0"},
        )
        resp = await client.get("/api/audit/events")
        assert resp.status_code == 200
        events = resp.json()
        assert {e["principal_id"] for e in events} == {admin.id}
        (denial,) = [e for e in events if e["event_kind"] == "CROSS_TENANT_ACCESS_ATTEMPT"]
        assert denial["context"]["ip"] == "203.0.113.9"
        assert denial["context"]["user_agent"] == "acme-client/1.0"
        assert denial["context"]["url"] == f"/api/tenants/{beta['id']}"

    @pytest.mark.asyncio
    async def test_master_sees_everything(self, client):
        await _create_tenant(client)
        resp = await client.get("/api/audit/events", params={"event_kind": "create"})
        assert {e["resource_type"] for e in resp.json()} == {"tenant", "principal"}

    @pytest.mark.asyncio
    async def test_unauthenticated_query(self, client, caller):
        caller.principal = None
        resp = await client.get("/api/audit/events")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_limit(self, client):
        resp = await client.get("/api/audit/events", params={"limit": 0})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await _create_tenant(client)
        resp = await client.get("/api/audit/stats")
        body = resp.json()
        assert body["total_count"] == 2
        assert body["counts_by_kind"] == {"create": 2}

    @pytest.mark.asyncio
    async def test_export(self, client):
        await _create_tenant(client)
        resp = await client.get("/api/audit/export")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        lines = resp.text.strip().split("\n")
        assert lines[0] == '"timestamp","principal","event_kind","resource","ip","user_agent"'
        assert len(lines) == 3
