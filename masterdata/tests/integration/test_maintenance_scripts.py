from __future__ import annotations

from datetime import datetime, timezone

import pytest

from masterdata.persistence.db import get_engine, get_session_factory
from masterdata.services.audit import AUDIT_CATEGORY_ACCESS, OUTCOME_GRANTED
from scripts.prune_audit import prune


@pytest.fixture
async def default_engine(engine):
    # Scripts use the cached process-wide engine; point it at this test's database.
    get_session_factory.cache_clear()
    get_engine.cache_clear()
    yield get_engine()
    await get_engine().dispose()
    get_session_factory.cache_clear()
    get_engine.cache_clear()


@pytest.mark.asyncio
async def test_prune_audit_only_purges(default_engine, store, capsys) -> None:
    await store.audit.record(
        category=AUDIT_CATEGORY_ACCESS,
        tenant_id="t1",
        actor_id="u1",
        action="read",
        outcome=OUTCOME_GRANTED,
        granted=True,
        occurred_at=datetime(2001, 1, 1, tzinfo=timezone.utc),
    )

    await prune()

    assert capsys.readouterr().out.splitlines() == ["pruned_audit_entries=1"]
    assert await store.audit.list_entries(tenant_id="t1") == []
