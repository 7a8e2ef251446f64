from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from tenantguard.domain.errors import (
    ConflictError,
    CrossTenantViolationError,
    InvalidArgumentError,
    InvalidOperationError,
    NotFoundError,
)
from tenantguard.domain.models import (
    Policy,
    PolicyCreate,
    PolicyEffect,
    PolicyRead,
    RoleCreate,
    RoleRead,
    RoleUpdate,
    TenantCreate,
    UserCreate,
)
from tenantguard.infra.events import EventBus
from tenantguard.services.assignment_service import AssignmentService
from tenantguard.services.role_service import RoleService
from tenantguard.services.tenant_service import TenantService


@pytest.fixture()
def roles_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "roles_test.db"
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
    yield test_engine
    test_engine.dispose()


def _services(engine: Engine) -> tuple[TenantService, RoleService, AssignmentService]:
    bus = EventBus()
    return TenantService(engine, bus), RoleService(engine, bus), AssignmentService(engine, bus)


def test_role_codes_are_unique_per_tenant(roles_engine: Engine) -> None:
    tenants, roles, _ = _services(roles_engine)
    tenant_a = tenants.create_tenant(TenantCreate(name="A", code="tenant-a"))
    tenant_b = tenants.create_tenant(TenantCreate(name="B", code="tenant-b"))

    editor_a = roles.create_role(tenant_a.id, RoleCreate(name="Editor", code="editor"))
    editor_b = roles.create_role(tenant_b.id, RoleCreate(name="Editor", code="editor"))

    assert editor_a.id != editor_b.id
    with pytest.raises(ConflictError):
        roles.create_role(tenant_a.id, RoleCreate(name="Editor 2", code="editor"))
    with pytest.raises(InvalidArgumentError):
        roles.create_role(tenant_a.id, RoleCreate(name="Blank", code=" "))
    with pytest.raises(NotFoundError):
        roles.create_role("missing", RoleCreate(name="Editor", code="editor"))
    assert roles.get_role_by_code(tenant_b.id, "editor").id == editor_b.id
    with pytest.raises(CrossTenantViolationError):
        roles.get_role(tenant_a.id, editor_b.id)


def test_update_role(roles_engine: Engine) -> None:
    tenants, roles, _ = _services(roles_engine)
    tenant = tenants.create_tenant(TenantCreate(name="Acme", code="acme"))
    role = roles.create_role(tenant.id, RoleCreate(name="Editor", code="editor"))

    updated = roles.update_role(tenant.id, role.id, RoleUpdate(description="Edits documents"))

    assert updated.name == "Editor"
    assert updated.description == "Edits documents"
    assert RoleRead.model_validate(updated).code == "editor"
    assert [item.code for item in roles.list_roles(tenant.id)] == ["editor"]


def test_attach_policy_normalizes_input(roles_engine: Engine) -> None:
    tenants, roles, _ = _services(roles_engine)
    tenant = tenants.create_tenant(TenantCreate(name="Acme", code="acme"))
    role = roles.create_role(tenant.id, RoleCreate(name="Editor", code="editor"))

    policy = roles.attach_policy(
        tenant.id,
        role.id,
        "ALLOW",
        "doc:*",
        "write, read, read",
        {"resource.owner_id": "${principal.id}"},
    )

    assert policy.effect == PolicyEffect.ALLOW
    assert policy.actions == ["read", "write"]
    assert json.loads(policy.condition or "") == {"resource.owner_id": "${principal.id}"}
    assert policy.tenant_id == tenant.id
    assert PolicyRead.model_validate(policy).actions == ["read", "write"]

    second = roles.attach_policy_payload(
        tenant.id,
        role.id,
        PolicyCreate(effect="deny", resource="doc:42", actions=["*"], condition="{}"),
    )
    assert second.condition is None
    assert [item.id for item in roles.list_policies(tenant.id, role.id)] == [policy.id, second.id]


@pytest.mark.parametrize(
    ("effect", "resource", "actions", "condition"),
    [
        ("allow", "doc:*", [], None),
        ("allow", "doc:*", " , ", None),
        ("permit", "doc:*", ["read"], None),
        ("allow", "doc:**", ["read"], None),
        ("allow", "", ["read"], None),
        ("allow", "doc:*", ["read"], "{not json"),
        ("allow", "doc:*", ["read"], {"amount": {"between": [1, 2]}}),
    ],
)
def test_attach_policy_rejects_invalid_input(
    roles_engine: Engine,
    effect: str,
    resource: str,
    actions: list[str] | str,
    condition: object,
) -> None:
    tenants, roles, _ = _services(roles_engine)
    tenant = tenants.create_tenant(TenantCreate(name="Acme", code="acme"))
    role = roles.create_role(tenant.id, RoleCreate(name="Editor", code="editor"))

    with pytest.raises(InvalidArgumentError) as exc_info:
        roles.attach_policy(tenant.id, role.id, effect, resource, actions, condition)  # type: ignore[arg-type]

    assert isinstance(exc_info.value, InvalidOperationError)
    assert roles.list_policies(tenant.id, role.id) == []


def test_detach_policy(roles_engine: Engine) -> None:
    tenants, roles, _ = _services(roles_engine)
    tenant_a = tenants.create_tenant(TenantCreate(name="A", code="tenant-a"))
    tenant_b = tenants.create_tenant(TenantCreate(name="B", code="tenant-b"))
    role = roles.create_role(tenant_a.id, RoleCreate(name="Editor", code="editor"))
    policy = roles.attach_policy(tenant_a.id, role.id, "allow", "doc:*", ["read"])

    with pytest.raises(CrossTenantViolationError):
        roles.detach_policy(tenant_b.id, policy.id)

    roles.detach_policy(tenant_a.id, policy.id)

    assert roles.list_policies(tenant_a.id, role.id) == []
    with pytest.raises(NotFoundError):
        roles.detach_policy(tenant_a.id, policy.id)


def test_delete_role_rejected_while_assigned_then_cascades_policies(roles_engine: Engine) -> None:
    tenants, roles, assignments = _services(roles_engine)
    tenant = tenants.create_tenant(TenantCreate(name="Acme", code="acme"))
    user = tenants.create_user(tenant.id, UserCreate(email="alice@acme.test", name="Alice"))
    role = roles.create_role(tenant.id, RoleCreate(name="Editor", code="editor"))
    roles.attach_policy(tenant.id, role.id, "allow", "doc:*", ["read"])
    roles.attach_policy(tenant.id, role.id, "deny", "doc:42", ["*"])
    assignments.assign_role(tenant.id, user.id, role.id)

    with pytest.raises(ConflictError):
        roles.delete_role(tenant.id, role.id)
    assert len(roles.list_policies(tenant.id, role.id)) == 2

    assignments.revoke_role(tenant.id, user.id, role.id)
    roles.delete_role(tenant.id, role.id)

    with pytest.raises(NotFoundError):
        roles.get_role(tenant.id, role.id)
    with Session(roles_engine) as session:
        assert session.exec(select(Policy).where(Policy.role_id == role.id)).all() == []


def test_assign_role_conflicts_and_tenant_mismatch(roles_engine: Engine) -> None:
    tenants, roles, assignments = _services(roles_engine)
    tenant_a = tenants.create_tenant(TenantCreate(name="A", code="tenant-a"))
    tenant_b = tenants.create_tenant(TenantCreate(name="B", code="tenant-b"))
    user_a = tenants.create_user(tenant_a.id, UserCreate(email="alice@a.test", name="Alice"))
    role_a = roles.create_role(tenant_a.id, RoleCreate(name="Editor", code="editor"))
    role_b = roles.create_role(tenant_b.id, RoleCreate(name="Editor", code="editor"))

    link = assignments.assign_role(tenant_a.id, user_a.id, role_a.id)
    assert link.tenant_id == tenant_a.id

    with pytest.raises(ConflictError):
        assignments.assign_role(tenant_a.id, user_a.id, role_a.id)
    with pytest.raises(CrossTenantViolationError) as exc_info:
        assignments.assign_role(tenant_a.id, user_a.id, role_b.id)
    assert isinstance(exc_info.value, InvalidArgumentError)
    with pytest.raises(CrossTenantViolationError):
        assignments.assign_role(tenant_b.id, user_a.id, role_b.id)

    assert [role.id for role in assignments.list_user_roles(tenant_a.id, user_a.id)] == [role_a.id]
    assert [user.id for user in assignments.list_role_users(tenant_a.id, role_a.id)] == [user_a.id]
    assert assignments.list_role_users(tenant_b.id, role_b.id) == []


def test_revoke_twice_fails_with_not_found(roles_engine: Engine) -> None:
    tenants, roles, assignments = _services(roles_engine)
    tenant = tenants.create_tenant(TenantCreate(name="Acme", code="acme"))
    user = tenants.create_user(tenant.id, UserCreate(email="alice@acme.test", name="Alice"))
    role = roles.create_role(tenant.id, RoleCreate(name="Editor", code="editor"))
    assignments.assign_role(tenant.id, user.id, role.id)

    assignments.revoke_role(tenant.id, user.id, role.id)

    with pytest.raises(NotFoundError):
        assignments.revoke_role(tenant.id, user.id, role.id)
    assert assignments.list_user_roles(tenant.id, user.id) == []


def test_user_policies_is_union_over_roles(roles_engine: Engine) -> None:
    tenants, roles, assignments = _services(roles_engine)
    tenant = tenants.create_tenant(TenantCreate(name="Acme", code="acme"))
    user = tenants.create_user(tenant.id, UserCreate(email="alice@acme.test", name="Alice"))
    editor = roles.create_role(tenant.id, RoleCreate(name="Editor", code="editor"))
    blocked = roles.create_role(tenant.id, RoleCreate(name="Blocked", code="blocked"))
    unused = roles.create_role(tenant.id, RoleCreate(name="Unused", code="unused"))
    allow = roles.attach_policy(tenant.id, editor.id, "allow", "doc:*", ["read", "write"])
    deny = roles.attach_policy(tenant.id, blocked.id, "deny", "doc:42", ["*"])
    roles.attach_policy(tenant.id, unused.id, "allow", "*", ["*"])
    assignments.assign_role(tenant.id, user.id, editor.id)
    assignments.assign_role(tenant.id, user.id, blocked.id)

    assert {item.id for item in assignments.user_policies(tenant.id, user.id)} == {allow.id, deny.id}
