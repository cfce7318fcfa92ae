from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from masterdata.domain.models import CustomerEvent
from masterdata.persistence.guards import tenant_predicate


async def current_version(
    session: AsyncSession,
    *,
    tenant_id: str,
    aggregate_id: str,
) -> int:
    stmt = select(func.coalesce(func.max(CustomerEvent.sequence_number), 0)).where(
        tenant_predicate(CustomerEvent, tenant_id),
        CustomerEvent.aggregate_id == aggregate_id,
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def insert_events(
    session: AsyncSession,
    rows: Iterable[dict[str, Any]],
) -> None:
    # The unique (tenant, aggregate, sequence) constraint rejects a lost race here.
    await session.execute(insert(CustomerEvent), list(rows))


async def fetch_page(
    session: AsyncSession,
    *,
    tenant_id: str,
    aggregate_id: str,
    from_sequence: int,
    limit: int,
) -> list[CustomerEvent]:
    stmt = (
        select(CustomerEvent)
        .where(
            tenant_predicate(CustomerEvent, tenant_id),
            CustomerEvent.aggregate_id == aggregate_id,
            CustomerEvent.sequence_number >= from_sequence,
        )
        .order_by(CustomerEvent.sequence_number.asc(), CustomerEvent.id.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def fetch_by_type(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_types: Sequence[str],
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    limit: int = 500,
) -> list[CustomerEvent]:
    stmt = select(CustomerEvent).where(
        tenant_predicate(CustomerEvent, tenant_id),
        CustomerEvent.event_type.in_(list(event_types)),
    )
    if occurred_from:
        stmt = stmt.where(CustomerEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(CustomerEvent.occurred_at <= occurred_to)
    stmt = stmt.order_by(CustomerEvent.occurred_at.asc(), CustomerEvent.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def counts_by_type(
    session: AsyncSession,
    *,
    tenant_id: str,
) -> dict[str, int]:
    stmt = (
        select(CustomerEvent.event_type, func.count())
        .where(tenant_predicate(CustomerEvent, tenant_id))
        .group_by(CustomerEvent.event_type)
    )
    result = await session.execute(stmt)
    return {event_type: int(count) for event_type, count in result.all()}


async def stream_summary(
    session: AsyncSession,
    *,
    tenant_id: str,
) -> tuple[int, datetime | None, datetime | None]:
    stmt = select(
        func.count(func.distinct(CustomerEvent.aggregate_id)),
        func.min(CustomerEvent.occurred_at),
        func.max(CustomerEvent.occurred_at),
    ).where(tenant_predicate(CustomerEvent, tenant_id))
    result = await session.execute(stmt)
    unique_aggregates, first_at, last_at = result.one()
    return int(unique_aggregates or 0), first_at, last_at
