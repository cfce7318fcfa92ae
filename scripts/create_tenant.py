from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from masterdata.core.config import get_settings
from masterdata.core.errors import MasterDataError
from masterdata.services.store import build_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a tenant")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--actor-id", default=None)
    return parser


async def _create(args: argparse.Namespace) -> int:
    store = build_store()
    boundary = await store.tenants.register(
        args.tenant_id,
        args.name,
        actor_id=args.actor_id,
    )
    print(f"tenant_id={boundary.tenant_id}")
    print(f"partition_key={boundary.partition_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(level=get_settings().log_level)
    try:
        return asyncio.run(_create(args))
    except MasterDataError as exc:
        print(f"create_tenant failed: {exc.code} {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
