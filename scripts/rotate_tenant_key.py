from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from masterdata.core.config import get_settings
from masterdata.core.errors import MasterDataError
from masterdata.persistence.db import get_session
from masterdata.persistence.schema import ensure_schema_version
from masterdata.services.store import build_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rotate or revoke a tenant field-encryption key")
    parser.add_argument("--tenant-id", required=True)
    # Revoking makes every envelope sealed under the key unreadable; reads redact those fields.
    parser.add_argument("--revoke", default=None, metavar="KEY_REF")
    parser.add_argument("--reason", default=None)
    parser.add_argument("--actor-id", default=None)
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with get_session() as session:
        await ensure_schema_version(session)
    store = build_store()
    await store.tenants.resolve(args.tenant_id)
    if args.revoke:
        key = await store.key_ring.revoke(args.tenant_id, args.revoke, actor_id=args.actor_id, reason=args.reason)
        print("Tenant key revoked:")
    else:
        key = await store.key_ring.rotate(args.tenant_id, actor_id=args.actor_id, reason=args.reason)
        print("Tenant key rotated:")
    print(f"  key_ref: {key.key_ref}")
    print(f"  key_version: {key.key_version}")
    print(f"  status: {key.status}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(level=get_settings().log_level)
    try:
        return asyncio.run(_run(args))
    except MasterDataError as exc:
        print(f"rotate_tenant_key failed: {exc.code} {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
