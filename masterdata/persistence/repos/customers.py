from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from masterdata.domain.models import CustomerNumber
from masterdata.persistence.guards import tenant_predicate


async def claim_customer_number(
    session: AsyncSession,
    *,
    tenant_id: str,
    customer_number: str,
    customer_id: str,
) -> None:
    # The (tenant_id, customer_number) primary key rejects duplicates at flush.
    session.add(CustomerNumber(tenant_id=tenant_id, customer_number=customer_number, customer_id=customer_id))
    await session.flush()


async def find_customer_id(
    session: AsyncSession,
    *,
    tenant_id: str,
    customer_number: str,
) -> str | None:
    result = await session.execute(
        select(CustomerNumber.customer_id).where(
            tenant_predicate(CustomerNumber, tenant_id),
            CustomerNumber.customer_number == customer_number,
        ),
    )
    return result.scalar_one_or_none()
