from __future__ import annotations

import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from tenantguard.domain.errors import ConflictError, InvalidArgumentError, NotFoundError
from tenantguard.domain.models import (
    Department,
    EventEnvelope,
    Role,
    Tenant,
    TenantCreate,
    User,
    UserCreate,
    UserRole,
    now_utc,
)
from tenantguard.infra import db, events
from tenantguard.infra.events import EventBus, event_bus
from tenantguard.infra.repository import Repository

logger = logging.getLogger(__name__)

tenants = Repository(Tenant, "tenant")
users = Repository(User, "user")
departments = Repository(Department, "department")


class TenantService:
    """Tenant directory plus the users that live inside each tenant."""

    def __init__(self, engine: Engine | None = None, bus: EventBus | None = None) -> None:
        self._engine = engine
        self._bus = bus or event_bus

    def _session(self) -> Session:
        return Session(self._engine or db.get_engine(), expire_on_commit=False)

    def _record(self, session: Session, event_type: str, tenant_id: str, **payload: object) -> EventEnvelope:
        event = EventEnvelope(event_type=event_type, tenant_id=tenant_id, payload=dict(payload))
        self._bus.record(event, session)
        return event

    def _require_tenant(self, session: Session, tenant_id: str) -> Tenant:
        return tenants.get(session, tenant_id)

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        code = payload.code.strip()
        if not code:
            raise InvalidArgumentError("tenant code must not be empty")
        with self._session() as session:
            if tenants.first_where(session, Tenant.code == code) is not None:
                raise ConflictError("tenant code already exists")
            tenant = tenants.insert(session, Tenant(name=payload.name, code=code))
            event = self._record(session, events.TENANT_CREATED, tenant.id, code=code)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant code already exists") from exc
            session.refresh(tenant)
        self._bus.notify(event)
        logger.info("tenant created id=%s code=%s", tenant.id, tenant.code)
        return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            return self._require_tenant(session, tenant_id)

    def get_tenant_by_code(self, code: str) -> Tenant:
        with self._session() as session:
            tenant = tenants.first_where(session, Tenant.code == code)
            if tenant is None:
                raise NotFoundError("tenant not found")
            return tenant

    def list_tenants(self) -> list[Tenant]:
        with self._session() as session:
            return tenants.find_where(session, order_by=Tenant.code)

    def rename_tenant(self, tenant_id: str, name: str) -> Tenant:
        with self._session() as session:
            tenant = self._require_tenant(session, tenant_id)
            tenants.update(session, tenant, name=name, updated_at=now_utc())
            event = self._record(session, events.TENANT_UPDATED, tenant_id, name=name)
            session.commit()
            session.refresh(tenant)
        self._bus.notify(event)
        return tenant

    def delete_tenant(self, tenant_id: str) -> None:
        with self._session() as session:
            tenant = self._require_tenant(session, tenant_id)
            for model in (Department, User, Role):
                dependent = session.exec(select(model.id).where(model.tenant_id == tenant_id)).first()
                if dependent is not None:
                    raise ConflictError(f"tenant still has {model.__tablename__}")
            tenants.delete(session, tenant)
            event = self._record(session, events.TENANT_DELETED, tenant_id, code=tenant.code)
            session.commit()
        self._bus.notify(event)
        logger.info("tenant deleted id=%s", tenant_id)

    def create_user(self, tenant_id: str, payload: UserCreate) -> User:
        email = payload.email.strip().lower()
        if not email:
            raise InvalidArgumentError("email must not be empty")
        with self._session() as session:
            self._require_tenant(session, tenant_id)
            if payload.department_id is not None:
                departments.get_scoped(session, tenant_id, payload.department_id)
            if users.first_where(session, User.email == email) is not None:
                raise ConflictError("email already exists")
            user = users.insert(
                session,
                User(
                    tenant_id=tenant_id,
                    email=email,
                    name=payload.name,
                    password_hash=payload.password_hash,
                    department_id=payload.department_id,
                ),
            )
            event = self._record(session, events.USER_CREATED, tenant_id, user_id=user.id)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already exists") from exc
            session.refresh(user)
        self._bus.notify(event)
        return user

    def get_user(self, tenant_id: str, user_id: str) -> User:
        with self._session() as session:
            return users.get_scoped(session, tenant_id, user_id)

    def list_users(self, tenant_id: str) -> list[User]:
        with self._session() as session:
            return users.find_where(session, User.tenant_id == tenant_id, order_by=User.email)

    def set_user_department(self, tenant_id: str, user_id: str, department_id: str | None) -> User:
        with self._session() as session:
            user = users.get_scoped(session, tenant_id, user_id)
            if department_id is not None:
                departments.get_scoped(session, tenant_id, department_id)
            users.update(session, user, department_id=department_id, updated_at=now_utc())
            event = self._record(
                session,
                events.USER_UPDATED,
                tenant_id,
                user_id=user_id,
                department_id=department_id,
            )
            session.commit()
            session.refresh(user)
        self._bus.notify(event)
        return user

    def delete_user(self, tenant_id: str, user_id: str) -> None:
        with self._session() as session:
            user = users.get_scoped(session, tenant_id, user_id)
            links = list(session.exec(select(UserRole).where(col(UserRole.user_id) == user_id)).all())
            for link in links:
                session.delete(link)
            session.flush()
            users.delete(session, user)
            event = self._record(session, events.USER_DELETED, tenant_id, user_id=user_id, revoked=len(links))
            session.commit()
        self._bus.notify(event)
        logger.info("user deleted tenant=%s user=%s revoked_roles=%d", tenant_id, user_id, len(links))
