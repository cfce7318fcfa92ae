from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from masterdata.core.errors import AuditSinkUnavailableError
from masterdata.services.audit import (
    AUDIT_CATEGORY_ACCESS,
    AUDIT_CATEGORY_SECURITY,
    OUTCOME_DENIED,
    OUTCOME_GRANTED,
    OUTCOME_SUCCESS,
    AuditLogger,
)
from masterdata.services.authz.rbac import AccessControlEngine, Actor
from masterdata.services.telemetry import get_counter
from masterdata.tests.utils.sinks import FlakySessionFactory


@pytest.mark.asyncio
async def test_buffered_entries_flush_in_order_after_recovery(session_factory) -> None:
    flaky = FlakySessionFactory(session_factory)
    audit = AuditLogger(flaky)
    flaky.down = True
    for action in ("key.revoked", "role.assigned"):
        with pytest.raises(AuditSinkUnavailableError):
            await audit.record(
                category=AUDIT_CATEGORY_SECURITY,
                tenant_id="t1",
                actor_id="admin",
                action=action,
                outcome=OUTCOME_SUCCESS,
            )
    assert audit.pending == 2

    flaky.down = False
    await audit.record(
        category=AUDIT_CATEGORY_ACCESS,
        tenant_id="t1",
        actor_id="u1",
        action="read",
        outcome=OUTCOME_GRANTED,
        granted=True,
    )
    assert audit.pending == 0
    assert get_counter("audit_buffer_flushed_total") == 2
    entries = await audit.list_entries(tenant_id="t1")
    assert [entry.action for entry in entries] == ["key.revoked", "role.assigned", "read"]


@pytest.mark.asyncio
async def test_explicit_flush(session_factory) -> None:
    flaky = FlakySessionFactory(session_factory)
    audit = AuditLogger(flaky)
    flaky.down = True
    with pytest.raises(AuditSinkUnavailableError):
        await audit.record(
            category=AUDIT_CATEGORY_ACCESS,
            tenant_id="t1",
            actor_id="u1",
            action="read",
            outcome=OUTCOME_DENIED,
            granted=False,
        )
    with pytest.raises(AuditSinkUnavailableError):
        await audit.flush()
    assert audit.pending == 1
    flaky.down = False
    assert await audit.flush() == 1
    assert await audit.flush() == 0
    assert len(await audit.list_entries(tenant_id="t1", granted=False)) == 1


@pytest.mark.asyncio
async def test_denials_during_outage_are_delivered(store, tenant_id, session_factory) -> None:
    flaky = FlakySessionFactory(session_factory)
    audit = AuditLogger(flaky)
    engine = AccessControlEngine(session_factory, tenants=store.tenants, audit=audit)
    flaky.down = True
    decision = await engine.authorize(Actor(actor_id="intruder", tenant_id=tenant_id), "customers", "c1", "delete")
    assert not decision.granted
    assert audit.pending == 1
    flaky.down = False
    assert await audit.flush() == 1
    denied = await audit.list_entries(tenant_id=tenant_id, granted=False)
    assert [(entry.actor_id, entry.action) for entry in denied] == [("intruder", "delete")]


@pytest.mark.asyncio
async def test_purge_expired_respects_retention(session_factory) -> None:
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    audit = AuditLogger(session_factory, retention_days=30, security_retention_days=365, clock=lambda: now)
    old = now - timedelta(days=60)
    await audit.record(
        category=AUDIT_CATEGORY_ACCESS,
        tenant_id="t1",
        actor_id="u1",
        action="read",
        outcome=OUTCOME_GRANTED,
        granted=True,
        occurred_at=old,
    )
    await audit.record(
        category=AUDIT_CATEGORY_ACCESS,
        tenant_id="t1",
        actor_id="u1",
        action="read",
        outcome=OUTCOME_DENIED,
        granted=False,
        occurred_at=old,
    )
    assert await audit.purge_expired() == 1
    remaining = await audit.list_entries(tenant_id="t1")
    assert [entry.granted for entry in remaining] == [False]
