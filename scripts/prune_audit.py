from __future__ import annotations

import asyncio
import logging

from masterdata.core.config import get_settings
from masterdata.persistence.db import get_session
from masterdata.persistence.schema import ensure_schema_version
from masterdata.services.store import build_store


async def prune() -> None:
    async with get_session() as session:
        await ensure_schema_version(session)
    store = build_store()
    deleted = await store.audit.purge_expired()
    print(f"pruned_audit_entries={deleted}")


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(prune())
