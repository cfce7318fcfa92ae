from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from masterdata.domain.models import EncryptedField
from masterdata.persistence.guards import tenant_predicate
from masterdata.services.crypto.envelope import FieldContext, FieldEnvelope


def _occurrence(context: FieldContext) -> list[object]:
    return [
        tenant_predicate(EncryptedField, context.tenant_id),
        EncryptedField.table_name == context.table,
        EncryptedField.column_name == context.column,
        EncryptedField.record_id == context.record_id,
    ]


async def supersede_field(session: AsyncSession, *, context: FieldContext, envelope: FieldEnvelope) -> None:
    # Envelopes are never updated in place: drop the old occurrence, insert the new one.
    await session.execute(delete(EncryptedField).where(*_occurrence(context)))
    session.add(
        EncryptedField(
            tenant_id=context.tenant_id,
            table_name=context.table,
            column_name=context.column,
            record_id=context.record_id,
            classification=envelope.classification,
            ciphertext=envelope.ciphertext,
            nonce=envelope.nonce,
            algorithm=envelope.algorithm,
            key_id=envelope.key_id or "",
            integrity_hash=envelope.integrity_hash,
        )
    )


async def delete_field(session: AsyncSession, *, context: FieldContext) -> int:
    result = await session.execute(delete(EncryptedField).where(*_occurrence(context)))
    return result.rowcount or 0


async def get_field(session: AsyncSession, *, context: FieldContext) -> FieldEnvelope | None:
    row = (await session.execute(select(EncryptedField).where(*_occurrence(context)))).scalar_one_or_none()
    if row is None:
        return None
    return FieldEnvelope(
        classification=row.classification,
        algorithm=row.algorithm,
        key_id=row.key_id or None,
        nonce=row.nonce,
        ciphertext=row.ciphertext,
        integrity_hash=row.integrity_hash,
    )



async def count_fields_for_key(session: AsyncSession, *, tenant_id: str, key_id: str) -> int:
    # Used before revoking a key to report how many fields become unreadable.
    count = await session.scalar(
        select(func.count())
        .select_from(EncryptedField)
        .where(tenant_predicate(EncryptedField, tenant_id), EncryptedField.key_id == key_id)
    )
    return int(count or 0)
