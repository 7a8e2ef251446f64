from __future__ import annotations

from typing import Any

from sqlmodel import Session

from tenantguard.domain.models import AuditLog, Decision
from tenantguard.infra import db


def write_audit_log(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    outcome: str,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource=resource,
        outcome=outcome,
        detail=detail or {},
    )
    with Session(db.get_engine()) as session:
        session.add(log)
        session.commit()


def audit_decision(
    *,
    tenant_id: str,
    actor_id: str | None,
    resource: str,
    action: str,
    decision: Decision,
) -> None:
    write_audit_log(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="authz.decide",
        resource=resource,
        outcome="allowed" if decision.allowed else "denied",
        detail={
            "what": {"resource": resource, "action": action},
            "result": {
                "allowed": decision.allowed,
                "reason": str(decision.reason),
                "matched_policy_id": decision.matched_policy_id,
                "errored_policy_ids": list(decision.errored_policy_ids),
            },
        },
    )
