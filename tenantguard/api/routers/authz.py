from __future__ import annotations

import os
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from tenantguard.api.deps import get_authorization_service, get_current_claims
from tenantguard.domain.errors import NotFoundError
from tenantguard.domain.models import AuthorizationRequest, Decision, DataScopeRead
from tenantguard.infra.audit import audit_decision
from tenantguard.infra.deadline import DeadlineExceededError
from tenantguard.services.authorization_service import AuthorizationService

AUTHZ_AUDIT_DECISIONS = os.getenv("AUTHZ_AUDIT_DECISIONS", "1") not in {"0", "false", "False", ""}

router = APIRouter()

Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[AuthorizationService, Depends(get_authorization_service)]


def _handle_authz_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, DeadlineExceededError | SQLAlchemyError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authorization unavailable",
        ) from exc
    raise exc


@router.post("/decisions", response_model=Decision)
def decide(payload: AuthorizationRequest, claims: Claims, service: Service) -> Decision:
    try:
        decision = service.authorize(
            claims["tenant_id"],
            claims["sub"],
            payload.resource,
            payload.action,
            payload.context,
        )
    except (NotFoundError, DeadlineExceededError, SQLAlchemyError) as exc:
        _handle_authz_error(exc)
        raise
    if AUTHZ_AUDIT_DECISIONS:
        audit_decision(
            tenant_id=claims["tenant_id"],
            actor_id=claims["sub"],
            resource=payload.resource,
            action=payload.action,
            decision=decision,
        )
    return decision


@router.post("/data-scope", response_model=DataScopeRead)
def data_scope(payload: AuthorizationRequest, claims: Claims, service: Service) -> DataScopeRead:
    try:
        scope = service.data_scope(
            claims["tenant_id"],
            claims["sub"],
            payload.resource,
            payload.action,
            payload.context,
        )
    except (NotFoundError, DeadlineExceededError, SQLAlchemyError) as exc:
        _handle_authz_error(exc)
        raise
    return DataScopeRead(**scope.as_dict())
