from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from masterdata.core.errors import SchemaVersionMismatchError, StorageUnavailableError
from masterdata.domain.models import Base, SchemaVersion


logger = logging.getLogger(__name__)

# Must match the head Alembic revision under persistence/alembic/versions.
SCHEMA_VERSION = "0001_initial_schema"
_SCHEMA_ROW_ID = 1


async def read_schema_version(session: AsyncSession) -> str | None:
    try:
        row = (
            await session.execute(select(SchemaVersion).where(SchemaVersion.id == _SCHEMA_ROW_ID))
        ).scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageUnavailableError("schema version could not be read") from exc
    return row.version if row is not None else None


async def ensure_schema_version(session: AsyncSession) -> str:
    # Refuse to operate against a database migrated to a different revision.
    found = await read_schema_version(session)
    if found != SCHEMA_VERSION:
        logger.error("schema_version_mismatch expected=%s found=%s", SCHEMA_VERSION, found)
        raise SchemaVersionMismatchError(f"expected schema {SCHEMA_VERSION} but database reports {found}")
    return found


async def stamp_schema_version(session: AsyncSession, version: str = SCHEMA_VERSION) -> None:
    row = await session.get(SchemaVersion, _SCHEMA_ROW_ID)
    if row is None:
        session.add(SchemaVersion(id=_SCHEMA_ROW_ID, version=version))
    else:
        row.version = version
    await session.commit()


async def create_schema(engine: AsyncEngine) -> None:
    # Dev/test bootstrap; production databases are migrated with Alembic.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSession(engine, expire_on_commit=False) as session:
        await stamp_schema_version(session)
    logger.info("schema_created version=%s", SCHEMA_VERSION)
