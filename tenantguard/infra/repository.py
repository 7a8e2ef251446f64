from __future__ import annotations

from typing import Any, Generic, TypeVar

from sqlmodel import Session, SQLModel, select

from tenantguard.domain.errors import NotFoundError
from tenantguard.infra.tenant import ensure_tenant

ModelT = TypeVar("ModelT", bound=SQLModel)


class Repository(Generic[ModelT]):
    """Fixed-shape CRUD over one table. The caller owns the session and commit."""

    def __init__(self, model: type[ModelT], label: str) -> None:
        self.model = model
        self.label = label

    def find_by_id(self, session: Session, entity_id: str) -> ModelT | None:
        return session.get(self.model, entity_id)

    def get(self, session: Session, entity_id: str) -> ModelT:
        entity = self.find_by_id(session, entity_id)
        if entity is None:
            raise NotFoundError(f"{self.label} not found")
        return entity

    def get_scoped(self, session: Session, tenant_id: str, entity_id: str) -> ModelT:
        return ensure_tenant(self.get(session, entity_id), tenant_id, self.label)  # type: ignore[arg-type]

    def find_where(self, session: Session, *clauses: Any, order_by: Any = None) -> list[ModelT]:
        statement = select(self.model)
        for clause in clauses:
            statement = statement.where(clause)
        if order_by is not None:
            statement = statement.order_by(order_by)
        return list(session.exec(statement).all())

    def first_where(self, session: Session, *clauses: Any) -> ModelT | None:
        statement = select(self.model)
        for clause in clauses:
            statement = statement.where(clause)
        return session.exec(statement).first()

    def insert(self, session: Session, entity: ModelT) -> ModelT:
        session.add(entity)
        return entity

    def update(self, session: Session, entity: ModelT, **changes: Any) -> ModelT:
        for key, value in changes.items():
            setattr(entity, key, value)
        session.add(entity)
        return entity

    def delete(self, session: Session, entity: ModelT) -> None:
        session.delete(entity)
