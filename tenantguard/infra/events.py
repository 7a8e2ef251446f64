from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable

from sqlmodel import Session

from tenantguard.domain.models import EventEnvelope, EventRecord

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]

TENANT_CREATED = "tenant.created"
TENANT_UPDATED = "tenant.updated"
TENANT_DELETED = "tenant.deleted"
DEPARTMENT_CREATED = "department.created"
DEPARTMENT_UPDATED = "department.updated"
DEPARTMENT_MOVED = "department.moved"
DEPARTMENT_DELETED = "department.deleted"
USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"
ROLE_CREATED = "role.created"
ROLE_UPDATED = "role.updated"
ROLE_DELETED = "role.deleted"
POLICY_ATTACHED = "policy.attached"
POLICY_DETACHED = "policy.detached"
ROLE_ASSIGNED = "role.assigned"
ROLE_REVOKED = "role.revoked"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def record(self, event: EventEnvelope, session: Session) -> None:
        """Journal the event inside the caller's transaction."""
        session.add(
            EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
        )

    def notify(self, event: EventEnvelope) -> None:
        """Run subscribers synchronously. Call only after the transaction committed."""
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        logger.debug("dispatching %s for tenant %s to %d handlers", event.event_type, event.tenant_id, len(handlers))
        for handler in handlers:
            handler(event)


event_bus = EventBus()
