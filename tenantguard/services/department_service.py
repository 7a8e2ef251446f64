from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from tenantguard.domain.errors import ConflictError, InvalidArgumentError, InvalidOperationError, NotFoundError
from tenantguard.domain.models import Department, DepartmentCreate, EventEnvelope, Tenant, User, now_utc
from tenantguard.infra import db, events
from tenantguard.infra.events import EventBus, event_bus
from tenantguard.infra.repository import Repository

logger = logging.getLogger(__name__)

departments = Repository(Department, "department")
tenants = Repository(Tenant, "tenant")


def level_and_path(department_id: str, parent: Department | None) -> tuple[int, str]:
    if parent is None:
        return 0, f"/{department_id}"
    return parent.level + 1, f"{parent.path}/{department_id}"


def path_ids(path: str) -> list[str]:
    """Ancestor chain encoded in ``path``, root first, the department itself last."""
    return [item for item in path.split("/") if item]


def load_descendants(session: Session, department: Department) -> list[Department]:
    statement = (
        select(Department)
        .where(Department.tenant_id == department.tenant_id)
        .where(col(Department.path).startswith(f"{department.path}/", autoescape=True))
        .order_by(col(Department.path))
    )
    return list(session.exec(statement).all())


class DepartmentService:
    def __init__(self, engine: Engine | None = None, bus: EventBus | None = None) -> None:
        self._engine = engine
        self._bus = bus or event_bus

    def _session(self) -> Session:
        return Session(self._engine or db.get_engine(), expire_on_commit=False)

    def _record(self, session: Session, event_type: str, tenant_id: str, **payload: object) -> EventEnvelope:
        event = EventEnvelope(event_type=event_type, tenant_id=tenant_id, payload=dict(payload))
        self._bus.record(event, session)
        return event

    def create_department(self, tenant_id: str, payload: DepartmentCreate) -> Department:
        if not payload.name.strip():
            raise InvalidArgumentError("department name must not be empty")
        with self._session() as session:
            tenants.get(session, tenant_id)
            parent = None
            if payload.parent_id is not None:
                # a parent owned by another tenant is reported as absent
                parent = departments.first_where(
                    session,
                    Department.tenant_id == tenant_id,
                    Department.id == payload.parent_id,
                )
                if parent is None:
                    raise NotFoundError("parent department not found")
            department = Department(tenant_id=tenant_id, name=payload.name, parent_id=payload.parent_id)
            department.level, department.path = level_and_path(department.id, parent)
            departments.insert(session, department)
            event = self._record(
                session,
                events.DEPARTMENT_CREATED,
                tenant_id,
                department_id=department.id,
                parent_id=payload.parent_id,
            )
            session.commit()
            session.refresh(department)
        self._bus.notify(event)
        return department

    def get_department(self, tenant_id: str, department_id: str) -> Department:
        with self._session() as session:
            return departments.get_scoped(session, tenant_id, department_id)

    def list_departments(self, tenant_id: str) -> list[Department]:
        with self._session() as session:
            return departments.find_where(
                session,
                Department.tenant_id == tenant_id,
                order_by=col(Department.path),
            )

    def rename_department(self, tenant_id: str, department_id: str, name: str) -> Department:
        if not name.strip():
            raise InvalidArgumentError("department name must not be empty")
        with self._session() as session:
            department = departments.get_scoped(session, tenant_id, department_id)
            departments.update(session, department, name=name, updated_at=now_utc())
            event = self._record(session, events.DEPARTMENT_UPDATED, tenant_id, department_id=department_id)
            session.commit()
            session.refresh(department)
        self._bus.notify(event)
        return department

    def move_department(self, tenant_id: str, department_id: str, new_parent_id: str | None) -> Department:
        """Re-parent a department and rewrite path/level for its whole subtree in one commit."""
        if new_parent_id == department_id:
            raise InvalidOperationError("department cannot be its own parent")
        with self._session() as session:
            department = departments.get_scoped(session, tenant_id, department_id)
            parent = None
            if new_parent_id is not None:
                parent = departments.get_scoped(session, tenant_id, new_parent_id)
                if parent.path.startswith(f"{department.path}/"):
                    raise InvalidOperationError("department cannot move under its descendant")

            old_path = department.path
            old_level = department.level
            descendants = load_descendants(session, department)

            new_level, new_path = level_and_path(department.id, parent)
            depth_delta = new_level - old_level
            changed_at = now_utc()
            departments.update(
                session,
                department,
                parent_id=new_parent_id,
                level=new_level,
                path=new_path,
                updated_at=changed_at,
            )
            for child in descendants:
                suffix = child.path[len(old_path) :]
                departments.update(
                    session,
                    child,
                    path=f"{new_path}{suffix}",
                    level=child.level + depth_delta,
                    updated_at=changed_at,
                )
            event = self._record(
                session,
                events.DEPARTMENT_MOVED,
                tenant_id,
                department_id=department_id,
                parent_id=new_parent_id,
                subtree_size=len(descendants) + 1,
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("department move violates a storage constraint") from exc
            session.refresh(department)
        self._bus.notify(event)
        logger.info(
            "department moved tenant=%s department=%s parent=%s descendants=%d",
            tenant_id,
            department_id,
            new_parent_id,
            len(descendants),
        )
        return department

    def delete_department(self, tenant_id: str, department_id: str) -> None:
        with self._session() as session:
            department = departments.get_scoped(session, tenant_id, department_id)
            child = session.exec(
                select(Department.id)
                .where(Department.tenant_id == tenant_id)
                .where(Department.parent_id == department_id)
            ).first()
            if child is not None:
                raise ConflictError("department has child departments")
            member = session.exec(
                select(User.id).where(User.tenant_id == tenant_id).where(User.department_id == department_id)
            ).first()
            if member is not None:
                raise ConflictError("department has member users")
            departments.delete(session, department)
            event = self._record(session, events.DEPARTMENT_DELETED, tenant_id, department_id=department_id)
            session.commit()
        self._bus.notify(event)

    def descendants_of(self, tenant_id: str, department_id: str) -> list[Department]:
        with self._session() as session:
            department = departments.get_scoped(session, tenant_id, department_id)
            return load_descendants(session, department)

    def subtree_ids(self, tenant_id: str, department_id: str) -> set[str]:
        with self._session() as session:
            department = departments.get_scoped(session, tenant_id, department_id)
            return {department.id, *(item.id for item in load_descendants(session, department))}

    def is_ancestor(self, tenant_id: str, candidate_ancestor_id: str, department_id: str) -> bool:
        with self._session() as session:
            candidate = departments.get_scoped(session, tenant_id, candidate_ancestor_id)
            department = departments.get_scoped(session, tenant_id, department_id)
            return department.path.startswith(f"{candidate.path}/")

    def department_tree(self, tenant_id: str) -> list[dict[str, Any]]:
        nodes: dict[str, dict[str, Any]] = {}
        roots: list[dict[str, Any]] = []
        for item in self.list_departments(tenant_id):
            nodes[item.id] = {
                "id": item.id,
                "name": item.name,
                "parent_id": item.parent_id,
                "path": item.path,
                "level": item.level,
                "children": [],
            }
        for node in nodes.values():
            parent = nodes.get(node["parent_id"]) if node["parent_id"] is not None else None
            if parent is None:
                roots.append(node)
            else:
                parent["children"].append(node)
        return roots

    def users_in_subtree(self, tenant_id: str, department_id: str) -> list[User]:
        with self._session() as session:
            department = departments.get_scoped(session, tenant_id, department_id)
            ids = [department.id, *(item.id for item in load_descendants(session, department))]
            statement = (
                select(User)
                .where(User.tenant_id == tenant_id)
                .where(col(User.department_id).in_(ids))
                .order_by(col(User.email))
            )
            return list(session.exec(statement).all())
