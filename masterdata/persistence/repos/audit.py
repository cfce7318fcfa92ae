from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from masterdata.domain.models import AuditEntry


async def insert_entries(session: AsyncSession, rows: Iterable[dict[str, Any]]) -> int:
    # Write-once inserts; audit rows are never updated.
    values = list(rows)
    if not values:
        return 0
    await session.execute(insert(AuditEntry), values)
    return len(values)


async def list_entries(
    session: AsyncSession,
    *,
    tenant_id: str,
    category: str | None = None,
    actor_id: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    granted: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[AuditEntry]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditEntry).where(AuditEntry.tenant_id == tenant_id)
    if category:
        stmt = stmt.where(AuditEntry.category == category)
    if actor_id:
        stmt = stmt.where(AuditEntry.actor_id == actor_id)
    if outcome:
        stmt = stmt.where(AuditEntry.outcome == outcome)
    if resource_type:
        stmt = stmt.where(AuditEntry.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEntry.resource_id == resource_id)
    if granted is not None:
        stmt = stmt.where(AuditEntry.granted == granted)
    if occurred_from:
        stmt = stmt.where(AuditEntry.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEntry.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEntry.occurred_at.asc(), AuditEntry.id.asc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())



async def delete_expired(session: AsyncSession, *, now: datetime) -> int:
    # Only rows past their retention horizon are removed; rows without one are kept.
    result = await session.execute(
        delete(AuditEntry).where(AuditEntry.retention_until.is_not(None), AuditEntry.retention_until < now)
    )
    return result.rowcount or 0
