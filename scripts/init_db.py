from __future__ import annotations

import argparse
import asyncio
import logging

from masterdata.core.config import get_settings
from masterdata.persistence.db import build_engine
from masterdata.persistence.schema import SCHEMA_VERSION, create_schema


async def _init(database_url: str | None) -> None:
    # Dev bootstrap only; production schemas are managed by the Alembic migration.
    engine = build_engine(database_url)
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()
    print(f"schema_version={SCHEMA_VERSION}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create the customer store schema")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_init(args.database_url))


if __name__ == "__main__":
    main()
