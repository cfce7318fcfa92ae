from __future__ import annotations

import pytest

from masterdata.core.errors import (
    AggregateNotFoundError,
    CustomerValidationError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
    TenantUnavailableError,
)
from masterdata.services.audit import AUDIT_CATEGORY_ADMIN, AUDIT_CATEGORY_MUTATION
from masterdata.services.tenants import IsolationBoundary, TenantRegistry
from masterdata.tests.utils.customers import create_customer


@pytest.mark.asyncio
async def test_register_and_resolve(store) -> None:
    boundary = await store.tenants.register("acme", "Acme Holding", actor_id="platform")
    assert boundary == IsolationBoundary(tenant_id="acme", partition_key="acme")
    assert await store.tenants.resolve("acme") == boundary


@pytest.mark.asyncio
async def test_partitioned_tenants_write_side_by_side(store) -> None:
    await store.tenants.register("acme", "Acme Holding")
    await store.tenants.register("bank", "Bank")
    acme = await create_customer(store, "acme", customer_number="C-1", attributes={"email": "ap@acme.example"})
    bank = await create_customer(store, "bank", customer_number="C-1", attributes={"email": "ap@bank.example"})
    acme_id = acme.events[0].aggregate_id
    bank_id = bank.events[0].aggregate_id

    assert await store.customers.find_by_number("acme", "C-1") == acme_id
    assert await store.customers.find_by_number("bank", "C-1") == bank_id
    loaded = await store.customers.load("bank", bank_id, fields=["email"])
    assert loaded.revealed == {"email": "ap@bank.example"}
    with pytest.raises(AggregateNotFoundError):
        await store.customers.load("acme", bank_id)

    # Mutation audits stay in the shared trail for both tenants.
    for tenant_id in ("acme", "bank"):
        entries = await store.audit.list_entries(tenant_id=tenant_id, category=AUDIT_CATEGORY_MUTATION)
        assert [entry.outcome for entry in entries] == ["success"]


@pytest.mark.parametrize(
    ("kwargs", "field"),
    [
        ({"tenant_id": ""}, "tenant_id"),
        ({"name": "  "}, "name"),
    ],
)
@pytest.mark.asyncio
async def test_register_validation(store, kwargs, field) -> None:
    values = {"tenant_id": "t9", "name": "Tenant"}
    values.update(kwargs)
    tenant_id = values.pop("tenant_id")
    name = values.pop("name")
    with pytest.raises(CustomerValidationError) as excinfo:
        await store.tenants.register(tenant_id, name, **values)
    assert excinfo.value.field == field


@pytest.mark.asyncio
async def test_duplicate_registration(store, tenant_id) -> None:
    with pytest.raises(TenantAlreadyExistsError):
        await store.tenants.register(tenant_id, "Again")


@pytest.mark.asyncio
async def test_unknown_tenant(store) -> None:
    with pytest.raises(TenantNotFoundError):
        await store.tenants.resolve("nobody")
    with pytest.raises(TenantNotFoundError):
        await store.tenants.set_status("nobody", "suspended")


@pytest.mark.asyncio
async def test_status_changes_gate_resolution(store, tenant_id) -> None:
    await store.tenants.set_status(tenant_id, "suspended", actor_id="platform", reason="unpaid")
    with pytest.raises(TenantUnavailableError) as excinfo:
        await store.tenants.resolve(tenant_id)
    assert excinfo.value.status == "suspended"
    await store.tenants.set_status(tenant_id, "active", actor_id="platform")
    assert (await store.tenants.resolve(tenant_id)).tenant_id == tenant_id
    with pytest.raises(CustomerValidationError):
        await store.tenants.set_status(tenant_id, "paused")

    entries = await store.audit.list_entries(tenant_id=tenant_id, category=AUDIT_CATEGORY_ADMIN)
    assert [entry.action for entry in entries] == ["tenant.registered", "tenant.status_changed", "tenant.status_changed"]
    assert entries[1].details_json == {"from": "active", "to": "suspended", "reason": "unpaid"}


@pytest.mark.asyncio
async def test_cache_serves_until_ttl_expires(store, session_factory, tenant_id) -> None:
    now = [0.0]
    other_process = TenantRegistry(session_factory, cache_ttl_s=10, clock=lambda: now[0])
    await other_process.resolve(tenant_id)
    await store.tenants.set_status(tenant_id, "suspended")
    # A second registry instance keeps its cached view inside the window.
    assert (await other_process.resolve(tenant_id)).tenant_id == tenant_id
    now[0] = 11.0
    with pytest.raises(TenantUnavailableError):
        await other_process.resolve(tenant_id)


@pytest.mark.asyncio
async def test_list_tenants_by_status(store, tenant_id) -> None:
    await store.tenants.register("t2", "Tenant Two")
    await store.tenants.set_status("t2", "deleted")
    active = await store.tenants.list_tenants(status="active")
    assert [boundary.tenant_id for boundary in active] == [tenant_id]
    assert {boundary.tenant_id for boundary in await store.tenants.list_tenants()} == {tenant_id, "t2"}
