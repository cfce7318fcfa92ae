from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from masterdata.core.errors import (
    AggregateNotFoundError,
    CustomerValidationError,
    DuplicateCustomerNumberError,
    InvalidTransitionError,
    KeyUnavailableError,
    TenantUnavailableError,
)
from masterdata.domain.customer import (
    AddAddress,
    ChangeCreditTerms,
    ChangeLifecycleStage,
    ClearAttribute,
    SetAttributes,
)
from masterdata.domain.events import EVENT_ATTRIBUTES_SET, EVENT_CUSTOMER_CREATED
from masterdata.domain.references import CustomerOwner, owner_from_dict
from masterdata.persistence.repos import envelopes as envelopes_repo
from masterdata.persistence.repos import snapshots as snapshots_repo
from masterdata.services.audit import AUDIT_CATEGORY_MUTATION
from masterdata.services.customers import SAVE_CONFLICT, CustomerRepository, field_context
from masterdata.services.telemetry import get_counter
from masterdata.tests.utils.customers import create_customer


@pytest.mark.asyncio
async def test_create_then_load(store, tenant_id) -> None:
    result = await create_customer(
        store,
        tenant_id,
        customer_number="C-100",
        attributes={"email": "ap@acme.example", "website": "acme.example"},
    )
    assert result.version == 1
    assert [event.event_type for event in result.events] == [EVENT_CUSTOMER_CREATED]
    customer_id = result.events[0].aggregate_id

    loaded = await store.customers.load(tenant_id, customer_id)
    assert loaded.version == 1
    assert loaded.revealed == {}
    assert loaded.state.customer_number == "C-100"
    assert set(loaded.state.attributes) == {"legal_name", "email", "website"}

    loaded = await store.customers.load(tenant_id, customer_id, fields=["email", "legal_name", "phone"])
    assert loaded.revealed == {"email": "ap@acme.example", "legal_name": "Acme GmbH"}
    assert loaded.redacted_fields == ()
    assert await store.customers.find_by_number(tenant_id, "C-100") == customer_id


@pytest.mark.asyncio
async def test_load_unknown_customer(store, tenant_id) -> None:
    with pytest.raises(AggregateNotFoundError):
        await store.customers.load(tenant_id, "missing")


@pytest.mark.asyncio
async def test_duplicate_customer_number_is_rejected(store, tenant_id) -> None:
    await create_customer(store, tenant_id, customer_number="C-1")
    with pytest.raises(DuplicateCustomerNumberError):
        await create_customer(store, tenant_id, customer_number="C-1")
    await store.tenants.register("t2", "Tenant Two")
    await create_customer(store, "t2", customer_number="C-1")


@pytest.mark.asyncio
async def test_envelope_ciphertext_lives_in_event_payload(store, tenant_id, session_factory) -> None:
    result = await create_customer(store, tenant_id, attributes={"tax_number": "DE999", "website": "acme.example"})
    customer_id = result.events[0].aggregate_id
    boundary = await store.tenants.resolve(tenant_id)
    events = await store.events.load_all(boundary, customer_id)
    payload = events[0].payload
    assert "DE999" not in str(payload)
    stored = payload["attributes"]["tax_number"]
    assert stored["classification"] == "restricted"
    async with session_factory() as session:
        envelope = await envelopes_repo.get_field(
            session, context=field_context(tenant_id, customer_id, "tax_number")
        )
        public = await envelopes_repo.get_field(session, context=field_context(tenant_id, customer_id, "website"))
    assert envelope is not None
    assert envelope.ciphertext == stored["envelope"]["ciphertext"]
    assert public is None


@pytest.mark.asyncio
async def test_stale_save_returns_conflict(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    first = await store.customers.save(tenant_id, customer_id, 1, SetAttributes(values={"notes": "a"}), actor_id="u1")
    assert first.committed and first.version == 2
    stale = await store.customers.save(tenant_id, customer_id, 1, SetAttributes(values={"notes": "b"}), actor_id="u2")
    assert stale.status == SAVE_CONFLICT
    assert stale.version == 2
    assert stale.conflict.actual_version == 2
    loaded = await store.customers.load(tenant_id, customer_id, fields=["notes"])
    assert loaded.revealed == {"notes": "a"}


@pytest.mark.asyncio
async def test_concurrent_saves_commit_exactly_one(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    outcomes = await asyncio.gather(
        store.customers.save(tenant_id, customer_id, 1, SetAttributes(values={"notes": "first"}), actor_id="u1"),
        store.customers.save(tenant_id, customer_id, 1, SetAttributes(values={"notes": "second"}), actor_id="u2"),
    )
    assert sorted(outcome.committed for outcome in outcomes) == [False, True]
    assert (await store.customers.load(tenant_id, customer_id)).version == 2


@pytest.mark.asyncio
async def test_save_with_retry_applies_both_writers(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    outcomes = await asyncio.gather(
        store.customers.save_with_retry(tenant_id, customer_id, SetAttributes(values={"notes": "x"}), actor_id="u1"),
        store.customers.save_with_retry(tenant_id, customer_id, SetAttributes(values={"industry": "retail"}), actor_id="u2"),
    )
    assert all(outcome.committed for outcome in outcomes)
    loaded = await store.customers.load(tenant_id, customer_id, fields=["notes", "industry"])
    assert loaded.version == 3
    assert loaded.revealed == {"notes": "x", "industry": "retail"}


@pytest.mark.asyncio
async def test_business_rule_violation_appends_nothing(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    with pytest.raises(InvalidTransitionError):
        await store.customers.save(
            tenant_id, customer_id, 1, ChangeLifecycleStage(to_stage="vip_customer"), actor_id="u1"
        )
    with pytest.raises(CustomerValidationError):
        await store.customers.save(tenant_id, customer_id, 1, ClearAttribute(name="legal_name"), actor_id="u1")
    assert (await store.customers.load(tenant_id, customer_id)).version == 1


@pytest.mark.asyncio
async def test_snapshot_plus_tail_matches_full_replay(store, tenant_id, session_factory) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    for index in range(6):
        saved = await store.customers.save(
            tenant_id, customer_id, index + 1, SetAttributes(values={"notes": f"note {index}"}), actor_id="u1"
        )
        assert saved.committed
    boundary = await store.tenants.resolve(tenant_id)
    async with session_factory() as session:
        snapshot = await snapshots_repo.get_snapshot(session, tenant_id=tenant_id, aggregate_id=customer_id)
    assert snapshot is not None
    assert snapshot.version == 5

    from_snapshot = await store.customers.load_state(tenant_id, customer_id)
    replay_only = CustomerRepository(
        session_factory,
        tenants=store.tenants,
        event_store=store.events,
        crypto=store.crypto,
        snapshot_enabled=False,
    )
    replayed = await replay_only.load_state(tenant_id, customer_id)
    assert from_snapshot == replayed
    assert from_snapshot.version == 7
    assert await store.events.current_version(boundary, customer_id) == 7


@pytest.mark.asyncio
async def test_snapshot_ahead_of_stream_is_ignored(store, tenant_id, session_factory) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    state = await store.customers.load_state(tenant_id, customer_id)
    bogus = state.to_dict()
    bogus["version"] = 99
    bogus["lifecycle_stage"] = "vip_customer"
    async with session_factory() as session:
        await snapshots_repo.upsert_snapshot(
            session, tenant_id=tenant_id, aggregate_id=customer_id, version=99, state_json=bogus
        )
        await session.commit()
    reloaded = await store.customers.load_state(tenant_id, customer_id)
    assert reloaded.version == 1
    assert reloaded.lifecycle_stage == "lead"
    assert get_counter("customer_snapshot_discarded_total") == 1


@pytest.mark.asyncio
async def test_clear_attribute_removes_envelope(store, tenant_id, session_factory) -> None:
    result = await create_customer(store, tenant_id, attributes={"phone": "+49 30 1234"})
    customer_id = result.events[0].aggregate_id
    cleared = await store.customers.save(tenant_id, customer_id, 1, ClearAttribute(name="phone"), actor_id="u1")
    assert cleared.committed
    async with session_factory() as session:
        envelope = await envelopes_repo.get_field(session, context=field_context(tenant_id, customer_id, "phone"))
    assert envelope is None
    loaded = await store.customers.load(tenant_id, customer_id, fields=["phone"])
    assert "phone" not in loaded.state.attributes
    assert loaded.revealed == {}


@pytest.mark.asyncio
async def test_revoked_key_redacts_reads_and_blocks_credit_checks(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id, attributes={"email": "ap@acme.example"})
    customer_id = result.events[0].aggregate_id
    terms = await store.customers.save(
        tenant_id,
        customer_id,
        1,
        ChangeCreditTerms(credit_status="good", reason="onboarding", credit_limit=Decimal("1000")),
        actor_id="u1",
    )
    assert terms.version == 3
    old_key = (await store.key_ring.active_key(tenant_id))[0]
    await store.key_ring.rotate(tenant_id, actor_id="security")
    await store.key_ring.revoke(tenant_id, old_key, actor_id="security", reason="compromised")

    loaded = await store.customers.load(tenant_id, customer_id, fields=["*"])
    assert set(loaded.redacted_fields) == {"credit_limit", "email", "legal_name"}
    assert loaded.revealed == {}
    assert get_counter("customer_fields_redacted_total") == 3

    with pytest.raises(KeyUnavailableError):
        await store.customers.save(
            tenant_id,
            customer_id,
            3,
            ChangeCreditTerms(credit_status="good", reason="growth", credit_limit=Decimal("1200")),
            actor_id="u1",
        )
    assert (await store.customers.load(tenant_id, customer_id)).version == 3

    rewritten = await store.customers.save(
        tenant_id, customer_id, 3, SetAttributes(values={"email": "new@acme.example"}), actor_id="u1"
    )
    assert rewritten.committed
    loaded = await store.customers.load(tenant_id, customer_id, fields=["email"])
    assert loaded.revealed == {"email": "new@acme.example"}


@pytest.mark.asyncio
async def test_mutation_audit_commits_with_events(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id, actor_id="creator")
    customer_id = result.events[0].aggregate_id
    await store.customers.save(tenant_id, customer_id, 1, SetAttributes(values={"email": "x@acme.example"}), actor_id="editor")
    await store.customers.save(tenant_id, customer_id, 1, SetAttributes(values={"notes": "stale"}), actor_id="editor")
    entries = await store.audit.list_entries(tenant_id=tenant_id, category=AUDIT_CATEGORY_MUTATION)
    assert [(entry.actor_id, entry.action, entry.outcome) for entry in entries] == [
        ("creator", "customer.create_customer", "success"),
        ("editor", "customer.set_attributes", "success"),
        ("editor", "customer.set_attributes", "conflict"),
    ]
    assert entries[1].resource_id == customer_id
    assert entries[1].details_json == {
        "version": 2,
        "event_types": [EVENT_ATTRIBUTES_SET],
        "fields": ["email"],
    }
    assert entries[2].details_json == {"error": "CONFLICT", "expected_version": 1, "actual_version": 2}


@pytest.mark.asyncio
async def test_rejected_mutations_are_audited(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id, customer_number="C-1", actor_id="creator")
    customer_id = result.events[0].aggregate_id
    with pytest.raises(InvalidTransitionError):
        await store.customers.save(
            tenant_id, customer_id, 1, ChangeLifecycleStage(to_stage="former_customer"), actor_id="editor"
        )
    with pytest.raises(CustomerValidationError):
        await store.customers.save(tenant_id, customer_id, 1, ClearAttribute(name="legal_name"), actor_id="editor")
    with pytest.raises(DuplicateCustomerNumberError):
        await create_customer(store, tenant_id, customer_number="C-1", actor_id="importer")

    entries = await store.audit.list_entries(tenant_id=tenant_id, category=AUDIT_CATEGORY_MUTATION)
    assert [(entry.actor_id, entry.action, entry.outcome) for entry in entries] == [
        ("creator", "customer.create_customer", "success"),
        ("editor", "customer.change_lifecycle_stage", "failure"),
        ("editor", "customer.clear_attribute", "failure"),
        ("importer", "customer.create_customer", "failure"),
    ]
    assert entries[1].details_json == {"error": "INVALID_TRANSITION"}
    assert entries[2].details_json == {"error": "VALIDATION_ERROR", "field": "legal_name"}
    assert entries[3].details_json == {"error": "DUPLICATE_CUSTOMER_NUMBER", "field": "customer_number"}
    assert (await store.customers.load(tenant_id, customer_id)).version == 1


@pytest.mark.asyncio
async def test_suspended_tenant_blocks_repository(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    await store.tenants.set_status(tenant_id, "suspended", actor_id="platform")
    with pytest.raises(TenantUnavailableError):
        await store.customers.load(tenant_id, customer_id)
    with pytest.raises(TenantUnavailableError):
        await store.customers.save(tenant_id, customer_id, 1, SetAttributes(values={"notes": "n"}), actor_id="u1")


@pytest.mark.asyncio
async def test_addresses_keep_owner_reference(store, tenant_id) -> None:
    result = await create_customer(store, tenant_id)
    customer_id = result.events[0].aggregate_id
    saved = await store.customers.save(
        tenant_id,
        customer_id,
        1,
        AddAddress(address_id="billing", owner=CustomerOwner(customer_id=customer_id), address={"city": "Berlin"}),
        actor_id="u1",
    )
    assert saved.committed
    loaded = await store.customers.load(tenant_id, customer_id, fields=["address:billing"])
    assert loaded.revealed == {"address:billing": {"city": "Berlin"}}
    owner = loaded.state.attributes["address:billing"].owner
    assert owner_from_dict(owner) == CustomerOwner(customer_id=customer_id)
    assert loaded.state.attributes["address:billing"].classification == "confidential"
