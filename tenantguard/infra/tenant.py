from __future__ import annotations

from typing import Protocol, TypeVar

from tenantguard.domain.errors import CrossTenantViolationError


class TenantOwned(Protocol):
    tenant_id: str


EntityT = TypeVar("EntityT", bound=TenantOwned)


def ensure_tenant(entity: EntityT, tenant_id: str, label: str) -> EntityT:
    """Single isolation check shared by every component."""
    if entity.tenant_id != tenant_id:
        raise CrossTenantViolationError(f"{label} belongs to another tenant")
    return entity


def ensure_same_tenant(label: str, *entities: TenantOwned) -> str:
    tenants = {item.tenant_id for item in entities}
    if len(tenants) != 1:
        raise CrossTenantViolationError(f"{label} references entities from different tenants")
    return tenants.pop()
