from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from masterdata.domain.models import (
    Role,
    RoleAssignment,
    RoleHierarchyEdge,
    RoleHierarchyRevision,
    RolePermission,
)
from masterdata.persistence.guards import require_tenant_id, tenant_predicate


def _visible_role(tenant_id: str) -> Any:
    # Tenant roles plus platform roles (null tenant) shared by every tenant.
    return or_(tenant_predicate(Role, tenant_id), Role.tenant_id.is_(None))


async def insert_role(
    session: AsyncSession,
    *,
    role_id: str,
    tenant_id: str | None,
    name: str,
    description: str | None,
    priority: int,
    is_system: bool,
) -> Role:
    role = Role(
        id=role_id,
        tenant_id=tenant_id,
        name=name,
        description=description,
        priority=priority,
        is_system=is_system,
    )
    session.add(role)
    await session.flush()
    return role


async def get_role(session: AsyncSession, *, tenant_id: str, role_id: str) -> Role | None:
    result = await session.execute(select(Role).where(and_(Role.id == role_id, _visible_role(tenant_id))))
    return result.scalar_one_or_none()


async def list_roles(session: AsyncSession, *, tenant_id: str, role_ids: Iterable[str]) -> list[Role]:
    ids = list(role_ids)
    if not ids:
        return []
    result = await session.execute(select(Role).where(Role.id.in_(ids), _visible_role(tenant_id)))
    return list(result.scalars().all())


async def insert_permission(session: AsyncSession, **fields: Any) -> RolePermission:
    permission = RolePermission(**fields)
    session.add(permission)
    await session.flush()
    return permission


async def list_permissions(
    session: AsyncSession,
    *,
    role_ids: Iterable[str],
    resource_type: str,
    action: str,
) -> list[RolePermission]:
    # Exact or wildcard matches on resource type and action.
    ids = list(role_ids)
    if not ids:
        return []
    result = await session.execute(
        select(RolePermission)
        .where(
            RolePermission.role_id.in_(ids),
            RolePermission.resource_type.in_([resource_type, "*"]),
            RolePermission.action.in_([action, "*"]),
        )
        .order_by(RolePermission.id.asc())
    )
    return list(result.scalars().all())


async def list_assigned_role_ids(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    now: datetime,
) -> list[str]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(RoleAssignment.role_id).where(
            tenant_predicate(RoleAssignment, tenant_id),
            RoleAssignment.actor_id == actor_id,
            or_(RoleAssignment.expires_at.is_(None), RoleAssignment.expires_at > now),
        )
    )
    return [row[0] for row in result.fetchall()]


async def upsert_assignment(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    role_id: str,
    assigned_by: str | None,
    assigned_at: datetime,
    expires_at: datetime | None,
) -> RoleAssignment:
    # Re-assigning refreshes the grant metadata instead of duplicating it.
    require_tenant_id(tenant_id)
    existing = await session.get(RoleAssignment, (tenant_id, actor_id, role_id))
    if existing is None:
        existing = RoleAssignment(tenant_id=tenant_id, actor_id=actor_id, role_id=role_id)
        session.add(existing)
    existing.assigned_by = assigned_by
    existing.assigned_at = assigned_at
    existing.expires_at = expires_at
    await session.flush()
    return existing


async def delete_assignment(session: AsyncSession, *, tenant_id: str, actor_id: str, role_id: str) -> bool:
    result = await session.execute(
        delete(RoleAssignment).where(
            tenant_predicate(RoleAssignment, tenant_id),
            RoleAssignment.actor_id == actor_id,
            RoleAssignment.role_id == role_id,
        )
    )
    return (result.rowcount or 0) > 0


async def list_edges(session: AsyncSession, *, tenant_id: str) -> list[tuple[str, str]]:
    result = await session.execute(
        select(RoleHierarchyEdge.parent_role_id, RoleHierarchyEdge.child_role_id).where(
            tenant_predicate(RoleHierarchyEdge, tenant_id)
        )
    )
    return [(row[0], row[1]) for row in result.fetchall()]


async def insert_edge(session: AsyncSession, *, tenant_id: str, parent_role_id: str, child_role_id: str) -> None:
    require_tenant_id(tenant_id)
    session.add(RoleHierarchyEdge(tenant_id=tenant_id, parent_role_id=parent_role_id, child_role_id=child_role_id))
    await session.flush()


async def delete_edge(session: AsyncSession, *, tenant_id: str, parent_role_id: str, child_role_id: str) -> bool:
    result = await session.execute(
        delete(RoleHierarchyEdge).where(
            tenant_predicate(RoleHierarchyEdge, tenant_id),
            RoleHierarchyEdge.parent_role_id == parent_role_id,
            RoleHierarchyEdge.child_role_id == child_role_id,
        )
    )
    return (result.rowcount or 0) > 0


async def get_revision(session: AsyncSession, *, tenant_id: str) -> int:
    result = await session.execute(
        select(RoleHierarchyRevision.revision).where(tenant_predicate(RoleHierarchyRevision, tenant_id))
    )
    revision = result.scalar_one_or_none()
    return int(revision or 0)


async def bump_revision(session: AsyncSession, *, tenant_id: str, expected: int) -> bool:
    # Compare-and-set on the hierarchy revision; False means another writer got there first.
    require_tenant_id(tenant_id)
    if expected == 0:
        existing = await session.get(RoleHierarchyRevision, tenant_id)
        if existing is None:
            session.add(RoleHierarchyRevision(tenant_id=tenant_id, revision=1))
            await session.flush()
            return True
    result = await session.execute(
        update(RoleHierarchyRevision)
        .where(
            tenant_predicate(RoleHierarchyRevision, tenant_id),
            RoleHierarchyRevision.revision == expected,
        )
        .values(revision=expected + 1)
    )
    return (result.rowcount or 0) == 1
