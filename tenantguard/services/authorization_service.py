from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from tenantguard.domain.actions import action_matches
from tenantguard.domain.conditions import ConditionEvaluator, check_condition, evaluate_condition, resolve_condition
from tenantguard.domain.errors import EvaluationError, NotFoundError
from tenantguard.domain.models import (
    Decision,
    DecisionReason,
    Department,
    Policy,
    PolicyEffect,
    Role,
    Tenant,
    User,
    UserRole,
)
from tenantguard.domain.resource_pattern import resource_matches
from tenantguard.infra import db
from tenantguard.infra.cache import CacheGeneration, PrincipalCache
from tenantguard.infra.deadline import Deadline, DeadlineExceededError
from tenantguard.services.department_service import load_descendants

logger = logging.getLogger(__name__)

AUTHZ_TIMEOUT_S = float(os.getenv("AUTHZ_TIMEOUT_S", "2.0"))


@dataclass(frozen=True)
class PolicyRule:
    id: str
    role_id: str
    effect: PolicyEffect
    resource: str
    actions: frozenset[str]
    condition: str | None
    created_at: datetime

    @classmethod
    def from_policy(cls, policy: Policy) -> PolicyRule:
        return cls(
            id=policy.id,
            role_id=policy.role_id,
            effect=PolicyEffect(policy.effect),
            resource=policy.resource,
            actions=frozenset(policy.actions or []),
            condition=policy.condition,
            created_at=policy.created_at,
        )

    def applies_to(self, resource: str, action: str) -> bool:
        return action_matches(self.actions, action) and resource_matches(self.resource, resource)

    def sort_key(self) -> tuple[datetime, str]:
        return self.created_at, self.id


@dataclass(frozen=True)
class Principal:
    tenant_id: str
    user_id: str
    email: str
    department_id: str | None = None
    department_path: str | None = None
    department_subtree: frozenset[str] = frozenset()
    role_ids: tuple[str, ...] = ()
    role_codes: tuple[str, ...] = ()
    policies: tuple[PolicyRule, ...] = ()

    def as_context(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "department_id": self.department_id,
            "department_path": self.department_path,
            "department_subtree": sorted(self.department_subtree),
            "role_ids": list(self.role_ids),
            "role_codes": list(self.role_codes),
        }


@dataclass(frozen=True)
class DataScope:
    """Row filter derived from allow/deny conditions.

    A record is visible when no deny condition holds for it and either
    ``allow_all`` is set or some allow condition holds.

    Row filtering fails closed: a deny condition that cannot be evaluated
    against a record hides that record, and an allow condition that cannot be
    evaluated grants nothing. This differs from ``evaluate``, where an
    unevaluable deny is skipped. A rule whose placeholders cannot be resolved
    while building the scope is skipped in both.
    """

    denied: bool
    allow_all: bool = False
    allow_conditions: tuple[dict[str, Any], ...] = ()
    deny_conditions: tuple[dict[str, Any], ...] = ()

    def permits(self, record: Mapping[str, Any]) -> bool:
        if self.denied:
            return False
        for condition in self.deny_conditions:
            try:
                if check_condition(condition, record):
                    return False
            except EvaluationError:
                return False
        if self.allow_all:
            return True
        for condition in self.allow_conditions:
            try:
                if check_condition(condition, record):
                    return True
            except EvaluationError:
                continue
        return False

    def as_dict(self) -> dict[str, Any]:
        return {
            "denied": self.denied,
            "allow_all": self.allow_all,
            "allow_conditions": list(self.allow_conditions),
            "deny_conditions": list(self.deny_conditions),
        }


@dataclass
class _Outcome:
    denies: list[PolicyRule] = field(default_factory=list)
    allows: list[PolicyRule] = field(default_factory=list)
    evaluated: list[str] = field(default_factory=list)
    errored: list[str] = field(default_factory=list)


class AuthorizationService:
    """Decides whether a user may perform an action on a resource.

    Storage, condition evaluator and cache are injected. Evaluation is a pure
    function of the loaded principal: explicit deny wins, then explicit allow,
    otherwise default deny. Policies whose condition cannot be evaluated are
    treated as not matching.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        evaluator: ConditionEvaluator | None = None,
        cache: PrincipalCache | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self._engine = engine
        self._evaluator = evaluator or evaluate_condition
        self._cache = cache
        self._timeout_s = AUTHZ_TIMEOUT_S if timeout_s is None else timeout_s

    def _session(self) -> Session:
        return Session(self._engine or db.get_engine(), expire_on_commit=False)

    def resolve_principal(
        self,
        session: Session,
        tenant_id: str,
        user_id: str,
        deadline: Deadline | None = None,
    ) -> Principal:
        deadline = deadline or Deadline()
        deadline.check("principal lookup")
        if session.get(Tenant, tenant_id) is None:
            raise NotFoundError("tenant not found")
        user = session.exec(select(User).where(User.tenant_id == tenant_id).where(User.id == user_id)).first()
        if user is None:
            raise NotFoundError("user not found")

        deadline.check("role lookup")
        held_roles = list(
            session.exec(
                select(Role)
                .join(UserRole, col(UserRole.role_id) == col(Role.id))
                .where(UserRole.tenant_id == tenant_id)
                .where(Role.tenant_id == tenant_id)
                .where(UserRole.user_id == user_id)
                .order_by(col(Role.code))
            ).all()
        )
        role_ids = [role.id for role in held_roles]

        rules: list[PolicyRule] = []
        if role_ids:
            deadline.check("policy lookup")
            rows = session.exec(
                select(Policy).where(Policy.tenant_id == tenant_id).where(col(Policy.role_id).in_(role_ids))
            ).all()
            rules = sorted((PolicyRule.from_policy(item) for item in rows), key=PolicyRule.sort_key)

        department: Department | None = None
        subtree: frozenset[str] = frozenset()
        if user.department_id is not None:
            deadline.check("department lookup")
            department = session.exec(
                select(Department)
                .where(Department.tenant_id == tenant_id)
                .where(Department.id == user.department_id)
            ).first()
            if department is not None:
                subtree = frozenset({department.id, *(item.id for item in load_descendants(session, department))})

        return Principal(
            tenant_id=tenant_id,
            user_id=user.id,
            email=user.email,
            department_id=None if department is None else department.id,
            department_path=None if department is None else department.path,
            department_subtree=subtree,
            role_ids=tuple(role_ids),
            role_codes=tuple(role.code for role in held_roles),
            policies=tuple(rules),
        )

    def load_principal(self, tenant_id: str, user_id: str, deadline: Deadline | None = None) -> Principal:
        generation: CacheGeneration | None = None
        if self._cache is not None:
            cached = self._cache.get(tenant_id, user_id)
            if isinstance(cached, Principal):
                return cached
            generation = self._cache.generation(tenant_id)
        with self._session() as session:
            principal = self.resolve_principal(session, tenant_id, user_id, deadline)
        if self._cache is not None and generation is not None:
            self._cache.store(tenant_id, user_id, principal, generation)
        return principal

    def evaluation_context(self, principal: Principal, context: Mapping[str, Any] | None) -> dict[str, Any]:
        merged = dict(context or {})
        merged["principal"] = principal.as_context()
        return merged

    def _condition_outcome(self, rule: PolicyRule, context: Mapping[str, Any]) -> bool | None:
        if not rule.condition:
            return True
        try:
            return bool(self._evaluator(rule.condition, context))
        except Exception as exc:
            logger.warning("policy %s condition failed to evaluate, treated as non-matching: %s", rule.id, exc)
            return None

    def _collect(self, principal: Principal, resource: str, action: str, context: Mapping[str, Any] | None) -> _Outcome:
        view = self.evaluation_context(principal, context)
        outcome = _Outcome()
        candidates = sorted(
            (rule for rule in principal.policies if rule.applies_to(resource, action)),
            key=PolicyRule.sort_key,
        )
        for rule in candidates:
            outcome.evaluated.append(rule.id)
            holds = self._condition_outcome(rule, view)
            if holds is None:
                outcome.errored.append(rule.id)
                continue
            if not holds:
                continue
            if rule.effect == PolicyEffect.DENY:
                outcome.denies.append(rule)
            else:
                outcome.allows.append(rule)
        return outcome

    def evaluate(
        self,
        principal: Principal,
        resource: str,
        action: str,
        context: Mapping[str, Any] | None = None,
    ) -> Decision:
        outcome = self._collect(principal, resource, action, context)
        if outcome.denies:
            return Decision(
                allowed=False,
                reason=DecisionReason.EXPLICIT_DENY,
                matched_policy_id=outcome.denies[0].id,
                effect=PolicyEffect.DENY,
                evaluated_policy_ids=outcome.evaluated,
                errored_policy_ids=outcome.errored,
            )
        if outcome.allows:
            return Decision(
                allowed=True,
                reason=DecisionReason.EXPLICIT_ALLOW,
                matched_policy_id=outcome.allows[0].id,
                effect=PolicyEffect.ALLOW,
                evaluated_policy_ids=outcome.evaluated,
                errored_policy_ids=outcome.errored,
            )
        return Decision(
            allowed=False,
            reason=DecisionReason.DEFAULT_DENY,
            evaluated_policy_ids=outcome.evaluated,
            errored_policy_ids=outcome.errored,
        )

    def _principal_for(self, tenant_id: str, user_id: str, deadline: Deadline) -> Principal:
        try:
            principal = self.load_principal(tenant_id, user_id, deadline)
            deadline.check("policy evaluation")
        except DeadlineExceededError as exc:
            logger.warning("authorize tenant=%s user=%s could not decide: %s", tenant_id, user_id, exc)
            raise
        return principal

    def _decide(
        self,
        principal: Principal,
        resource: str,
        action: str,
        context: Mapping[str, Any] | None,
    ) -> Decision:
        decision = self.evaluate(principal, resource, action, context)
        logger.debug(
            "authorize tenant=%s user=%s resource=%s action=%s allowed=%s reason=%s policy=%s",
            principal.tenant_id,
            principal.user_id,
            resource,
            action,
            decision.allowed,
            decision.reason,
            decision.matched_policy_id,
        )
        return decision

    def authorize(
        self,
        tenant_id: str,
        user_id: str,
        resource: str,
        action: str,
        context: Mapping[str, Any] | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> Decision:
        deadline = deadline or Deadline.after(self._timeout_s)
        principal = self._principal_for(tenant_id, user_id, deadline)
        return self._decide(principal, resource, action, context)

    def guard(
        self,
        tenant_id: str,
        user_id: str,
        resource: str,
        action: str,
        context: Mapping[str, Any] | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> tuple[Decision, DataScope | None]:
        """Authorize and, when allowed, derive the row filter from the same principal."""
        deadline = deadline or Deadline.after(self._timeout_s)
        principal = self._principal_for(tenant_id, user_id, deadline)
        decision = self._decide(principal, resource, action, context)
        if not decision.allowed:
            return decision, None
        return decision, self.scope_for(principal, resource, action, context)

    def data_scope(
        self,
        tenant_id: str,
        user_id: str,
        resource: str,
        action: str,
        context: Mapping[str, Any] | None = None,
        *,
        deadline: Deadline | None = None,
    ) -> DataScope:
        deadline = deadline or Deadline.after(self._timeout_s)
        principal = self._principal_for(tenant_id, user_id, deadline)
        return self.scope_for(principal, resource, action, context)

    def scope_for(
        self,
        principal: Principal,
        resource: str,
        action: str,
        context: Mapping[str, Any] | None = None,
    ) -> DataScope:
        view = self.evaluation_context(principal, context)
        allow_conditions: list[dict[str, Any]] = []
        deny_conditions: list[dict[str, Any]] = []
        allow_all = False
        candidates = sorted(
            (rule for rule in principal.policies if rule.applies_to(resource, action)),
            key=PolicyRule.sort_key,
        )
        for rule in candidates:
            try:
                resolved = resolve_condition(rule.condition, view)
            except EvaluationError as exc:
                logger.warning("policy %s condition cannot be resolved for data scope: %s", rule.id, exc)
                continue
            if rule.effect == PolicyEffect.DENY:
                if not resolved:
                    return DataScope(denied=True)
                deny_conditions.append(resolved)
            elif not resolved:
                allow_all = True
            else:
                allow_conditions.append(resolved)
        if not allow_all and not allow_conditions:
            return DataScope(denied=True)
        return DataScope(
            denied=False,
            allow_all=allow_all,
            allow_conditions=tuple(allow_conditions),
            deny_conditions=tuple(deny_conditions),
        )
