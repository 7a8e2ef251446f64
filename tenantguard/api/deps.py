from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError

from tenantguard.domain.errors import NotFoundError
from tenantguard.infra.auth import decode_access_token
from tenantguard.infra.cache import PrincipalCache, build_principal_cache
from tenantguard.infra.deadline import DeadlineExceededError
from tenantguard.infra.events import event_bus
from tenantguard.services.authorization_service import AuthorizationService

bearer_scheme = HTTPBearer(auto_error=False)

principal_cache: PrincipalCache | None = build_principal_cache(event_bus)


def get_authorization_service() -> AuthorizationService:
    return AuthorizationService(cache=principal_cache)


def get_current_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    try:
        claims = decode_access_token(credentials.credentials)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    return claims


def require_access(resource: str, action: str) -> Callable[..., dict[str, Any]]:
    """Route dependency. ``resource`` may reference path params, e.g. ``"doc:{doc_id}"``.

    On success ``request.state.data_scope`` holds the row filter for the same
    resource and action.
    """

    def _checker(
        request: Request,
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
        service: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> dict[str, Any]:
        target = resource.format(**request.path_params)
        context = {
            "path_params": dict(request.path_params),
            "query": dict(request.query_params),
        }
        try:
            decision, scope = service.guard(claims["tenant_id"], claims["sub"], target, action, context)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
        except (DeadlineExceededError, SQLAlchemyError) as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authorization unavailable",
            ) from exc
        request.state.decision = decision
        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"No permission to {action} {target}",
            )
        request.state.data_scope = scope
        return claims

    return _checker
