from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from masterdata.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def list_tenants(session: AsyncSession, *, status: str | None = None) -> list[Tenant]:
    stmt = select(Tenant).order_by(Tenant.created_at.asc(), Tenant.id.asc())
    if status:
        stmt = stmt.where(Tenant.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def insert_tenant(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    partition_key: str,
    status: str,
) -> Tenant:
    tenant = Tenant(
        id=tenant_id,
        name=name,
        partition_key=partition_key,
        status=status,
    )
    session.add(tenant)
    await session.flush()
    return tenant


async def update_status(
    session: AsyncSession,
    tenant: Tenant,
    *,
    status: str,
    changed_at: datetime,
) -> Tenant:
    # Status is the only mutable tenant attribute.
    tenant.status = status
    tenant.status_changed_at = changed_at
    await session.flush()
    return tenant
