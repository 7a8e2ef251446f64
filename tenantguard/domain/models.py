from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=new_id, primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    outcome: str
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    code: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Department(SQLModel, table=True):
    __tablename__ = "departments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_departments_tenant_id_id"),
        ForeignKeyConstraint(
            ["tenant_id", "parent_id"],
            ["departments.tenant_id", "departments.id"],
            ondelete="RESTRICT",
        ),
        Index("ix_departments_tenant_path", "tenant_id", "path"),
        Index("ix_departments_tenant_parent", "tenant_id", "parent_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str
    parent_id: str | None = Field(default=None)
    path: str = Field(default="")
    level: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_users_tenant_id_id"),
        ForeignKeyConstraint(
            ["tenant_id", "department_id"],
            ["departments.tenant_id", "departments.id"],
            ondelete="RESTRICT",
        ),
        Index("ix_users_tenant_department", "tenant_id", "department_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    email: str = Field(index=True, unique=True)
    name: str
    password_hash: str = Field(default="")
    department_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_roles_tenant_code"),
        UniqueConstraint("tenant_id", "id", name="uq_roles_tenant_id_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str
    code: str = Field(index=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class PolicyEffect(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


class Policy(SQLModel, table=True):
    __tablename__ = "policies"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "role_id"],
            ["roles.tenant_id", "roles.id"],
            ondelete="CASCADE",
        ),
        Index("ix_policies_tenant_role", "tenant_id", "role_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    role_id: str = Field(index=True)
    effect: PolicyEffect
    resource: str
    actions: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    condition: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
        ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "role_id"],
            ["roles.tenant_id", "roles.id"],
            ondelete="CASCADE",
        ),
        Index("ix_user_roles_tenant_user", "tenant_id", "user_id"),
        Index("ix_user_roles_tenant_role", "tenant_id", "role_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    tenant_id: str = Field(index=True)
    user_id: str
    role_id: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=new_id)
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class DecisionReason(StrEnum):
    EXPLICIT_DENY = "explicit_deny"
    EXPLICIT_ALLOW = "explicit_allow"
    DEFAULT_DENY = "default_deny"


class Decision(BaseModel):
    allowed: bool
    reason: DecisionReason
    matched_policy_id: str | None = None
    effect: PolicyEffect | None = None
    evaluated_policy_ids: list[str] = PydanticField(default_factory=list)
    errored_policy_ids: list[str] = PydanticField(default_factory=list)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantCreate(BaseModel):
    name: str
    code: str


class TenantRead(ORMReadModel):
    id: str
    name: str
    code: str
    created_at: datetime
    updated_at: datetime


class UserCreate(BaseModel):
    email: str
    name: str
    password_hash: str = ""
    department_id: str | None = None


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    email: str
    name: str
    department_id: str | None
    created_at: datetime


class DepartmentCreate(BaseModel):
    name: str
    parent_id: str | None = None


class DepartmentRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    parent_id: str | None
    path: str
    level: int


class RoleCreate(BaseModel):
    name: str
    code: str
    description: str | None = None


class RoleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None


class RoleRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    code: str
    description: str | None
    created_at: datetime


class PolicyCreate(BaseModel):
    effect: str
    resource: str
    actions: list[str] | str
    condition: str | dict[str, Any] | None = None


class PolicyRead(ORMReadModel):
    id: str
    role_id: str
    effect: PolicyEffect
    resource: str
    actions: list[str]
    condition: str | None
    created_at: datetime


class AuthorizationRequest(BaseModel):
    resource: str
    action: str
    context: dict[str, Any] = PydanticField(default_factory=dict)


class DataScopeRead(BaseModel):
    denied: bool
    allow_all: bool
    allow_conditions: list[dict[str, Any]]
    deny_conditions: list[dict[str, Any]]
