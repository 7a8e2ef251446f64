from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from tenantguard.domain.actions import normalize_actions
from tenantguard.domain.conditions import validate_condition
from tenantguard.domain.errors import ConflictError, EvaluationError, InvalidArgumentError, NotFoundError
from tenantguard.domain.models import (
    EventEnvelope,
    Policy,
    PolicyCreate,
    PolicyEffect,
    Role,
    RoleCreate,
    RoleUpdate,
    Tenant,
    UserRole,
    now_utc,
)
from tenantguard.domain.resource_pattern import validate_pattern
from tenantguard.infra import db, events
from tenantguard.infra.events import EventBus, event_bus
from tenantguard.infra.repository import Repository

logger = logging.getLogger(__name__)

roles = Repository(Role, "role")
policies = Repository(Policy, "policy")
tenants = Repository(Tenant, "tenant")


def parse_effect(effect: str | PolicyEffect) -> PolicyEffect:
    try:
        return PolicyEffect(str(effect).strip().lower())
    except ValueError as exc:
        raise InvalidArgumentError(f"effect must be 'allow' or 'deny', got {effect!r}") from exc


def normalize_condition(condition: str | dict[str, Any] | None) -> str | None:
    if isinstance(condition, dict):
        condition = json.dumps(condition)
    try:
        return validate_condition(condition)
    except EvaluationError as exc:
        raise InvalidArgumentError(f"invalid condition: {exc}") from exc


class RoleService:
    def __init__(self, engine: Engine | None = None, bus: EventBus | None = None) -> None:
        self._engine = engine
        self._bus = bus or event_bus

    def _session(self) -> Session:
        return Session(self._engine or db.get_engine(), expire_on_commit=False)

    def _record(self, session: Session, event_type: str, tenant_id: str, **payload: object) -> EventEnvelope:
        event = EventEnvelope(event_type=event_type, tenant_id=tenant_id, payload=dict(payload))
        self._bus.record(event, session)
        return event

    def create_role(self, tenant_id: str, payload: RoleCreate) -> Role:
        code = payload.code.strip()
        if not code:
            raise InvalidArgumentError("role code must not be empty")
        with self._session() as session:
            tenants.get(session, tenant_id)
            if roles.first_where(session, Role.tenant_id == tenant_id, Role.code == code) is not None:
                raise ConflictError("role code already exists in tenant")
            role = roles.insert(
                session,
                Role(tenant_id=tenant_id, name=payload.name, code=code, description=payload.description),
            )
            event = self._record(session, events.ROLE_CREATED, tenant_id, role_id=role.id, code=code)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role code already exists in tenant") from exc
            session.refresh(role)
        self._bus.notify(event)
        return role

    def get_role(self, tenant_id: str, role_id: str) -> Role:
        with self._session() as session:
            return roles.get_scoped(session, tenant_id, role_id)

    def get_role_by_code(self, tenant_id: str, code: str) -> Role:
        with self._session() as session:
            role = roles.first_where(session, Role.tenant_id == tenant_id, Role.code == code)
            if role is None:
                raise NotFoundError("role not found")
            return role

    def list_roles(self, tenant_id: str) -> list[Role]:
        with self._session() as session:
            return roles.find_where(session, Role.tenant_id == tenant_id, order_by=col(Role.code))

    def update_role(self, tenant_id: str, role_id: str, payload: RoleUpdate) -> Role:
        with self._session() as session:
            role = roles.get_scoped(session, tenant_id, role_id)
            if payload.name is not None:
                role.name = payload.name
            if payload.description is not None:
                role.description = payload.description
            roles.update(session, role, updated_at=now_utc())
            event = self._record(session, events.ROLE_UPDATED, tenant_id, role_id=role_id)
            session.commit()
            session.refresh(role)
        self._bus.notify(event)
        return role

    def delete_role(self, tenant_id: str, role_id: str) -> None:
        """Refused while users hold the role; the role's policies are deleted with it."""
        with self._session() as session:
            role = roles.get_scoped(session, tenant_id, role_id)
            assigned = session.exec(select(UserRole.id).where(UserRole.role_id == role_id)).first()
            if assigned is not None:
                raise ConflictError("role is assigned to users")
            owned = policies.find_where(session, Policy.role_id == role_id)
            for policy in owned:
                policies.delete(session, policy)
            session.flush()
            roles.delete(session, role)
            event = self._record(session, events.ROLE_DELETED, tenant_id, role_id=role_id, policies=len(owned))
            session.commit()
        self._bus.notify(event)
        logger.info("role deleted tenant=%s role=%s policies=%d", tenant_id, role_id, len(owned))

    def attach_policy(
        self,
        tenant_id: str,
        role_id: str,
        effect: str | PolicyEffect,
        resource: str,
        actions: str | Iterable[str],
        condition: str | dict[str, Any] | None = None,
    ) -> Policy:
        parsed_effect = parse_effect(effect)
        pattern = validate_pattern(resource)
        normalized_actions = normalize_actions(actions)
        normalized_condition = normalize_condition(condition)
        with self._session() as session:
            role = roles.get_scoped(session, tenant_id, role_id)
            policy = policies.insert(
                session,
                Policy(
                    tenant_id=role.tenant_id,
                    role_id=role.id,
                    effect=parsed_effect,
                    resource=pattern,
                    actions=normalized_actions,
                    condition=normalized_condition,
                ),
            )
            event = self._record(
                session,
                events.POLICY_ATTACHED,
                tenant_id,
                role_id=role_id,
                policy_id=policy.id,
                effect=str(parsed_effect),
            )
            session.commit()
            session.refresh(policy)
        self._bus.notify(event)
        return policy

    def attach_policy_payload(self, tenant_id: str, role_id: str, payload: PolicyCreate) -> Policy:
        return self.attach_policy(
            tenant_id,
            role_id,
            payload.effect,
            payload.resource,
            payload.actions,
            payload.condition,
        )

    def detach_policy(self, tenant_id: str, policy_id: str) -> None:
        with self._session() as session:
            policy = policies.get_scoped(session, tenant_id, policy_id)
            policies.delete(session, policy)
            event = self._record(
                session,
                events.POLICY_DETACHED,
                tenant_id,
                role_id=policy.role_id,
                policy_id=policy_id,
            )
            session.commit()
        self._bus.notify(event)

    def list_policies(self, tenant_id: str, role_id: str) -> list[Policy]:
        with self._session() as session:
            roles.get_scoped(session, tenant_id, role_id)
            statement = (
                select(Policy)
                .where(Policy.tenant_id == tenant_id)
                .where(Policy.role_id == role_id)
                .order_by(col(Policy.created_at), col(Policy.id))
            )
            return list(session.exec(statement).all())
