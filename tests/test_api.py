from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from tenantguard import main as app_main
from tenantguard.api import deps
from tenantguard.api.deps import get_authorization_service, require_access
from tenantguard.api.routers import authz as authz_router
from tenantguard.domain.models import AuditLog, RoleCreate, TenantCreate, UserCreate
from tenantguard.infra import db
from tenantguard.infra.auth import create_access_token
from tenantguard.infra.deadline import DeadlineExceededError
from tenantguard.services.assignment_service import AssignmentService
from tenantguard.services.role_service import RoleService
from tenantguard.services.tenant_service import TenantService

guarded_app = FastAPI()


@guarded_app.get("/docs/{doc_id}")
def read_doc(
    doc_id: str,
    claims: dict[str, Any] = Depends(require_access("doc:{doc_id}", "read")),
) -> dict[str, str]:
    return {"doc_id": doc_id, "user_id": claims["sub"]}


@guarded_app.get("/invoices/{invoice_id}")
def list_invoice_lines(
    request: Request,
    invoice_id: str,
    claims: dict[str, Any] = Depends(require_access("invoice:{invoice_id}", "read")),
) -> dict[str, Any]:
    lines = [
        {"id": "l-1", "archived": False},
        {"id": "l-2", "archived": True},
    ]
    scope = request.state.data_scope
    return {
        "scope": scope.as_dict(),
        "lines": [line["id"] for line in lines if scope.permits(line)],
    }


class _UnavailableAuthorizationService:
    def guard(self, *args: Any, **kwargs: Any) -> Any:
        raise DeadlineExceededError("deadline exceeded before role lookup")

    def authorize(self, *args: Any, **kwargs: Any) -> Any:
        raise DeadlineExceededError("deadline exceeded before role lookup")

    def data_scope(self, *args: Any, **kwargs: Any) -> Any:
        raise DeadlineExceededError("deadline exceeded before role lookup")


@pytest.fixture()
def api_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "api_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(authz_router, "AUTHZ_AUDIT_DECISIONS", True)
    if deps.principal_cache is not None:
        deps.principal_cache.clear()

    client = TestClient(app_main.app)
    yield client
    client.close()
    app_main.app.dependency_overrides.clear()
    guarded_app.dependency_overrides.clear()
    test_engine.dispose()


def _seed_scenario() -> tuple[str, str]:
    tenants = TenantService()
    roles = RoleService()
    assignments = AssignmentService()
    tenant = tenants.create_tenant(TenantCreate(name="T1", code="t1"))
    user = tenants.create_user(tenant.id, UserCreate(email="u@t1.test", name="U"))
    editor = roles.create_role(tenant.id, RoleCreate(name="Editor", code="editor"))
    blocked = roles.create_role(tenant.id, RoleCreate(name="Blocked", code="blocked"))
    roles.attach_policy(tenant.id, editor.id, "allow", "doc:*", ["read", "write"])
    roles.attach_policy(tenant.id, blocked.id, "deny", "doc:42", ["*"])
    assignments.assign_role(tenant.id, user.id, editor.id)
    assignments.assign_role(tenant.id, user.id, blocked.id)
    return tenant.id, user.id


def _auth_headers(tenant_id: str, user_id: str) -> dict[str, str]:
    token = create_access_token(user_id=user_id, tenant_id=tenant_id)
    return {"Authorization": f"Bearer {token}"}


def test_decisions_endpoint_returns_decision_and_audits(api_client: TestClient) -> None:
    tenant_id, user_id = _seed_scenario()
    headers = _auth_headers(tenant_id, user_id)

    allowed = api_client.post("/api/authz/decisions", json={"resource": "doc:7", "action": "read"}, headers=headers)
    assert allowed.status_code == 200
    assert allowed.json()["allowed"] is True
    assert allowed.json()["reason"] == "explicit_allow"

    denied = api_client.post("/api/authz/decisions", json={"resource": "doc:42", "action": "read"}, headers=headers)
    assert denied.status_code == 200
    assert denied.json()["allowed"] is False
    assert denied.json()["reason"] == "explicit_deny"
    assert denied.json()["effect"] == "deny"

    with Session(db.engine) as session:
        rows = session.exec(
            select(AuditLog).where(AuditLog.tenant_id == tenant_id).where(AuditLog.action == "authz.decide")
        ).all()
    assert sorted(row.outcome for row in rows) == ["allowed", "denied"]
    assert {row.actor_id for row in rows} == {user_id}
    assert {row.detail["what"]["resource"] for row in rows} == {"doc:7", "doc:42"}


def test_decisions_endpoint_requires_valid_token(api_client: TestClient) -> None:
    payload = {"resource": "doc:7", "action": "read"}

    missing = api_client.post("/api/authz/decisions", json=payload)
    assert missing.status_code == 401

    garbage = api_client.post("/api/authz/decisions", json=payload, headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401


def test_decisions_endpoint_unknown_principal_is_not_found(api_client: TestClient) -> None:
    tenant_id, _ = _seed_scenario()

    response = api_client.post(
        "/api/authz/decisions",
        json={"resource": "doc:7", "action": "read"},
        headers=_auth_headers(tenant_id, "ghost-user"),
    )

    assert response.status_code == 404


def test_decisions_endpoint_maps_deadline_to_unavailable(api_client: TestClient) -> None:
    tenant_id, user_id = _seed_scenario()
    app_main.app.dependency_overrides[get_authorization_service] = _UnavailableAuthorizationService

    response = api_client.post(
        "/api/authz/decisions",
        json={"resource": "doc:7", "action": "read"},
        headers=_auth_headers(tenant_id, user_id),
    )

    assert response.status_code == 503
    assert response.json()["detail"] == "Authorization unavailable"


def test_data_scope_endpoint(api_client: TestClient) -> None:
    tenant_id, user_id = _seed_scenario()
    headers = _auth_headers(tenant_id, user_id)

    open_scope = api_client.post("/api/authz/data-scope", json={"resource": "doc:7", "action": "read"}, headers=headers)
    assert open_scope.status_code == 200
    assert open_scope.json() == {
        "denied": False,
        "allow_all": True,
        "allow_conditions": [],
        "deny_conditions": [],
    }

    closed = api_client.post("/api/authz/data-scope", json={"resource": "doc:42", "action": "read"}, headers=headers)
    assert closed.status_code == 200
    assert closed.json()["denied"] is True


def test_require_access_guards_routes(api_client: TestClient) -> None:
    tenant_id, user_id = _seed_scenario()
    headers = _auth_headers(tenant_id, user_id)
    client = TestClient(guarded_app)

    ok = client.get("/docs/7", headers=headers)
    assert ok.status_code == 200
    assert ok.json() == {"doc_id": "7", "user_id": user_id}

    forbidden = client.get("/docs/42", headers=headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "No permission to read doc:42"

    assert client.get("/docs/7").status_code == 401
    assert client.get("/docs/7", headers=_auth_headers(tenant_id, "ghost-user")).status_code == 401

    guarded_app.dependency_overrides[get_authorization_service] = _UnavailableAuthorizationService
    unavailable = client.get("/docs/7", headers=headers)
    assert unavailable.status_code == 503
    client.close()


def test_role_changes_reach_the_http_guard(api_client: TestClient) -> None:
    tenant_id, user_id = _seed_scenario()
    headers = _auth_headers(tenant_id, user_id)
    client = TestClient(guarded_app)
    assert client.get("/docs/7", headers=headers).status_code == 200

    roles = RoleService()
    editor = roles.get_role_by_code(tenant_id, "editor")
    AssignmentService().revoke_role(tenant_id, user_id, editor.id)

    assert client.get("/docs/7", headers=headers).status_code == 403
    client.close()


def test_require_access_exposes_the_data_scope(api_client: TestClient) -> None:
    tenant_id, user_id = _seed_scenario()
    roles = RoleService()
    auditor = roles.create_role(tenant_id, RoleCreate(name="Auditor", code="auditor"))
    roles.attach_policy(tenant_id, auditor.id, "allow", "invoice:*", ["read"])
    roles.attach_policy(tenant_id, auditor.id, "deny", "invoice:*", ["read"], {"archived": True})
    AssignmentService().assign_role(tenant_id, user_id, auditor.id)
    client = TestClient(guarded_app)

    response = client.get("/invoices/9", headers=_auth_headers(tenant_id, user_id))

    assert response.status_code == 200
    assert response.json() == {
        "scope": {
            "denied": False,
            "allow_all": True,
            "allow_conditions": [],
            "deny_conditions": [{"archived": True}],
        },
        "lines": ["l-1"],
    }
    client.close()
