from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from masterdata.domain.models import CustomerSnapshot
from masterdata.persistence.guards import tenant_predicate


async def get_snapshot(
    session: AsyncSession,
    *,
    tenant_id: str,
    aggregate_id: str,
) -> CustomerSnapshot | None:
    result = await session.execute(
        select(CustomerSnapshot).where(
            tenant_predicate(CustomerSnapshot, tenant_id),
            CustomerSnapshot.aggregate_id == aggregate_id,
        ),
    )
    return result.scalar_one_or_none()


async def upsert_snapshot(
    session: AsyncSession,
    *,
    tenant_id: str,
    aggregate_id: str,
    version: int,
    state_json: dict[str, Any],
) -> bool:
    # Keep only the newest snapshot; an older version never overwrites a newer one.
    existing = await get_snapshot(
        session,
        tenant_id=tenant_id,
        aggregate_id=aggregate_id,
    )
    if existing is not None:
        if existing.version >= version:
            return False
        existing.version = version
        existing.state_json = state_json
    else:
        session.add(
            CustomerSnapshot(
                tenant_id=tenant_id,
                aggregate_id=aggregate_id,
                version=version,
                state_json=state_json,
            )
        )
    await session.flush()
    return True
