from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from tenantguard.domain.errors import ConflictError, NotFoundError
from tenantguard.domain.models import EventEnvelope, Policy, Role, User, UserRole
from tenantguard.infra import db, events
from tenantguard.infra.events import EventBus, event_bus
from tenantguard.infra.repository import Repository
from tenantguard.infra.tenant import ensure_same_tenant

users = Repository(User, "user")
roles = Repository(Role, "role")
user_roles = Repository(UserRole, "user role")


class AssignmentService:
    def __init__(self, engine: Engine | None = None, bus: EventBus | None = None) -> None:
        self._engine = engine
        self._bus = bus or event_bus

    def _session(self) -> Session:
        return Session(self._engine or db.get_engine(), expire_on_commit=False)

    def _record(self, session: Session, event_type: str, tenant_id: str, **payload: object) -> EventEnvelope:
        event = EventEnvelope(event_type=event_type, tenant_id=tenant_id, payload=dict(payload))
        self._bus.record(event, session)
        return event

    def _resolve_pair(self, session: Session, tenant_id: str, user_id: str, role_id: str) -> tuple[User, Role]:
        user = users.get_scoped(session, tenant_id, user_id)
        role = roles.get_scoped(session, tenant_id, role_id)
        ensure_same_tenant("user role binding", user, role)
        return user, role

    def assign_role(self, tenant_id: str, user_id: str, role_id: str) -> UserRole:
        with self._session() as session:
            self._resolve_pair(session, tenant_id, user_id, role_id)
            existing = user_roles.first_where(session, UserRole.user_id == user_id, UserRole.role_id == role_id)
            if existing is not None:
                raise ConflictError("user already holds role")
            link = user_roles.insert(session, UserRole(tenant_id=tenant_id, user_id=user_id, role_id=role_id))
            event = self._record(session, events.ROLE_ASSIGNED, tenant_id, user_id=user_id, role_id=role_id)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("user already holds role") from exc
            session.refresh(link)
        self._bus.notify(event)
        return link

    def revoke_role(self, tenant_id: str, user_id: str, role_id: str) -> None:
        with self._session() as session:
            self._resolve_pair(session, tenant_id, user_id, role_id)
            link = user_roles.first_where(session, UserRole.user_id == user_id, UserRole.role_id == role_id)
            if link is None:
                raise NotFoundError("user role binding not found")
            user_roles.delete(session, link)
            event = self._record(session, events.ROLE_REVOKED, tenant_id, user_id=user_id, role_id=role_id)
            session.commit()
        self._bus.notify(event)

    def list_user_roles(self, tenant_id: str, user_id: str) -> list[Role]:
        with self._session() as session:
            users.get_scoped(session, tenant_id, user_id)
            statement = (
                select(Role)
                .join(UserRole, col(UserRole.role_id) == col(Role.id))
                .where(UserRole.tenant_id == tenant_id)
                .where(Role.tenant_id == tenant_id)
                .where(UserRole.user_id == user_id)
                .order_by(col(Role.code))
            )
            return list(session.exec(statement).all())

    def list_role_users(self, tenant_id: str, role_id: str) -> list[User]:
        with self._session() as session:
            roles.get_scoped(session, tenant_id, role_id)
            statement = (
                select(User)
                .join(UserRole, col(UserRole.user_id) == col(User.id))
                .where(UserRole.tenant_id == tenant_id)
                .where(User.tenant_id == tenant_id)
                .where(UserRole.role_id == role_id)
                .order_by(col(User.email))
            )
            return list(session.exec(statement).all())

    def user_policies(self, tenant_id: str, user_id: str) -> list[Policy]:
        """Union of the policies attached to every role the user holds."""
        with self._session() as session:
            users.get_scoped(session, tenant_id, user_id)
            statement = (
                select(Policy)
                .join(UserRole, col(UserRole.role_id) == col(Policy.role_id))
                .where(UserRole.tenant_id == tenant_id)
                .where(Policy.tenant_id == tenant_id)
                .where(UserRole.user_id == user_id)
                .order_by(col(Policy.created_at), col(Policy.id))
            )
            return list(session.exec(statement).all())
