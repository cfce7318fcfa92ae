from __future__ import annotations

from decimal import Decimal

import pytest

from masterdata.core.errors import CustomerValidationError, EventStreamCorruptError, InvalidTransitionError
from masterdata.domain.customer import (
    AddAddress,
    ChangeCreditTerms,
    ChangeLifecycleStage,
    ClearAttribute,
    CreateCustomer,
    CustomerState,
    DeleteCustomer,
    LifecyclePolicy,
    LifecycleStage,
    RecordMetrics,
    RestoreCustomer,
    SetAttributes,
    UpdateInformation,
    classify_attribute,
    decide,
    decide_create,
    fold,
)
from masterdata.domain.events import (
    EVENT_ATTRIBUTES_SET,
    EVENT_CREDIT_TERMS_CHANGED,
    EVENT_CUSTOMER_CREATED,
    EVENT_CUSTOMER_DELETED,
    EVENT_LIFECYCLE_CHANGED,
    EVENT_METRICS_RECORDED,
    EVENT_RISK_SIGNAL_RAISED,
)
from masterdata.domain.references import CustomerOwner, SupplierOwner
from masterdata.services.crypto.envelope import Classification
from masterdata.tests.utils.customers import created_payload, domain_event


POLICY = LifecyclePolicy(vip_min_revenue=Decimal("100000"), vip_min_orders=20, vip_min_satisfaction=9.0)


def _state(stage: str = "lead", **fields) -> CustomerState:
    state = CustomerState(tenant_id="t1", customer_id="c1", customer_number="C-1", lifecycle_stage=stage, version=1)
    for name, value in fields.items():
        setattr(state, name, value)
    return state


def test_fold_is_deterministic() -> None:
    events = [
        domain_event(1, EVENT_CUSTOMER_CREATED, created_payload()),
        domain_event(2, EVENT_LIFECYCLE_CHANGED, {"from": "lead", "to": "prospect", "reason": None}),
        domain_event(3, EVENT_METRICS_RECORDED, {"total_revenue": "1200.50", "total_orders": 3}),
    ]
    first = fold(events, tenant_id="t1", customer_id="c1")
    second = fold(events, tenant_id="t1", customer_id="c1")
    assert first == second
    assert first.version == 3
    assert first.lifecycle_stage == "prospect"
    assert first.total_revenue == Decimal("1200.50")
    assert first.total_orders == 3
    assert first.created_by == "tester"


def test_fold_from_snapshot_matches_full_replay() -> None:
    events = [
        domain_event(1, EVENT_CUSTOMER_CREATED, created_payload()),
        domain_event(2, EVENT_RISK_SIGNAL_RAISED, {"signal": "late_payment", "severity": "high"}),
        domain_event(3, EVENT_CUSTOMER_DELETED, {"reason": "duplicate"}),
    ]
    snapshot = fold(events[:2], tenant_id="t1", customer_id="c1")
    resumed = fold(events[2:], tenant_id="t1", customer_id="c1", initial=snapshot)
    assert resumed == fold(events, tenant_id="t1", customer_id="c1")
    assert snapshot.version == 2
    assert resumed.is_deleted


def test_fold_rejects_sequence_gap() -> None:
    events = [
        domain_event(1, EVENT_CUSTOMER_CREATED, created_payload()),
        domain_event(3, EVENT_LIFECYCLE_CHANGED, {"from": "lead", "to": "prospect"}),
    ]
    with pytest.raises(EventStreamCorruptError):
        fold(events, tenant_id="t1", customer_id="c1")


def test_fold_requires_creation_first() -> None:
    with pytest.raises(EventStreamCorruptError):
        fold(
            [domain_event(1, EVENT_LIFECYCLE_CHANGED, {"from": "lead", "to": "prospect"})],
            tenant_id="t1",
            customer_id="c1",
        )


def test_fold_rejects_unknown_event_type() -> None:
    events = [
        domain_event(1, EVENT_CUSTOMER_CREATED, created_payload()),
        domain_event(2, "customer.teleported", {}),
    ]
    with pytest.raises(EventStreamCorruptError):
        fold(events, tenant_id="t1", customer_id="c1")


def test_state_dict_roundtrip_preserves_metrics() -> None:
    events = [
        domain_event(1, EVENT_CUSTOMER_CREATED, created_payload()),
        domain_event(2, EVENT_METRICS_RECORDED, {"total_revenue": "10", "satisfaction_score": 7.5}),
    ]
    state = fold(events, tenant_id="t1", customer_id="c1")
    assert CustomerState.from_dict(state.to_dict()) == state


def test_create_classifies_attributes() -> None:
    pending = decide_create(
        CreateCustomer(
            customer_number="C-1",
            legal_name="  Acme GmbH ",
            attributes={"email": "a@example.com", "website": "acme.example", "tax_number": "DE123"},
        ),
        customer_id="c1",
    )
    assert [event.event_type for event in pending] == [EVENT_CUSTOMER_CREATED]
    attributes = pending[0].attributes
    assert attributes["legal_name"].value == "Acme GmbH"
    assert attributes["legal_name"].classification == Classification.INTERNAL
    assert attributes["email"].classification == Classification.CONFIDENTIAL
    assert attributes["website"].classification == Classification.PUBLIC
    assert attributes["tax_number"].classification == Classification.RESTRICTED


@pytest.mark.parametrize(
    "command",
    [
        CreateCustomer(customer_number="", legal_name="Acme"),
        CreateCustomer(customer_number="C 1", legal_name="Acme"),
        CreateCustomer(customer_number="C-1", legal_name=" "),
        CreateCustomer(customer_number="C-1", legal_name="Acme", customer_type="alien"),
        CreateCustomer(customer_number="C-1", legal_name="Acme", lifecycle_stage="vip_customer"),
        CreateCustomer(customer_number="C-1", legal_name="Acme", attributes={"favourite_colour": "red"}),
    ],
)
def test_create_rejects_invalid_commands(command) -> None:
    with pytest.raises(CustomerValidationError):
        decide_create(command, customer_id="c1")


def test_classification_for_prefixed_names() -> None:
    assert classify_attribute("address:billing") == Classification.CONFIDENTIAL
    assert classify_attribute("contact:ceo") == Classification.CONFIDENTIAL
    with pytest.raises(CustomerValidationError):
        classify_attribute("address:")


def test_former_customer_cannot_become_lead() -> None:
    with pytest.raises(InvalidTransitionError):
        decide(_state("former_customer"), ChangeLifecycleStage(to_stage="lead"), policy=POLICY)


def test_same_stage_move_is_rejected() -> None:
    with pytest.raises(InvalidTransitionError):
        decide(_state("prospect"), ChangeLifecycleStage(to_stage="prospect"), policy=POLICY)


def test_allowed_transition_emits_lifecycle_event() -> None:
    pending = decide(_state("lead"), ChangeLifecycleStage(to_stage="prospect", reason="qualified"), policy=POLICY)
    assert pending[0].event_type == EVENT_LIFECYCLE_CHANGED
    assert pending[0].payload == {"from": "lead", "to": "prospect", "reason": "qualified"}


@pytest.mark.parametrize(
    ("revenue", "orders", "satisfaction"),
    [
        (None, 25, 9.5),
        (Decimal("150000"), None, 9.5),
        (Decimal("150000"), 25, None),
        (Decimal("99999"), 25, 9.5),
        (Decimal("150000"), 19, 9.5),
        (Decimal("150000"), 25, 8.9),
    ],
)
def test_vip_gate_requires_every_threshold(revenue, orders, satisfaction) -> None:
    state = _state(
        "active_customer",
        total_revenue=revenue,
        total_orders=orders,
        satisfaction_score=satisfaction,
    )
    with pytest.raises(InvalidTransitionError):
        decide(state, ChangeLifecycleStage(to_stage="vip_customer"), policy=POLICY)


def test_vip_gate_passes_when_all_thresholds_met() -> None:
    state = _state(
        "active_customer",
        total_revenue=Decimal("100000"),
        total_orders=20,
        satisfaction_score=9.0,
    )
    pending = decide(state, ChangeLifecycleStage(to_stage="vip_customer"), policy=POLICY)
    assert pending[-1].payload["to"] == LifecycleStage.VIP_CUSTOMER.value


def test_at_risk_requires_signal() -> None:
    with pytest.raises(InvalidTransitionError):
        decide(_state("active_customer"), ChangeLifecycleStage(to_stage="at_risk_customer"), policy=POLICY)
    pending = decide(
        _state("active_customer"),
        ChangeLifecycleStage(to_stage="at_risk_customer", risk_signal="missed_payments"),
        policy=POLICY,
    )
    assert [event.event_type for event in pending] == [EVENT_RISK_SIGNAL_RAISED, EVENT_LIFECYCLE_CHANGED]


def test_credit_limit_increase_over_threshold_is_rejected() -> None:
    command = ChangeCreditTerms(credit_status="good", reason="growth", credit_limit=Decimal("1600"))
    with pytest.raises(CustomerValidationError):
        decide(_state(), command, policy=POLICY, revealed={"credit_limit": "1000"})


def test_credit_limit_increase_within_threshold() -> None:
    command = ChangeCreditTerms(credit_status="watch", reason="growth", credit_limit=Decimal("1500"))
    pending = decide(_state(), command, policy=POLICY, revealed={"credit_limit": "1000"})
    assert [event.event_type for event in pending] == [EVENT_CREDIT_TERMS_CHANGED, EVENT_ATTRIBUTES_SET]
    assert pending[0].payload["credit_status"] == "watch"
    assert pending[1].attributes["credit_limit"].value == "1500"


def test_credit_limit_raise_from_zero_is_rejected() -> None:
    command = ChangeCreditTerms(credit_status="good", reason="first limit", credit_limit=Decimal("10"))
    with pytest.raises(CustomerValidationError):
        decide(_state(), command, policy=POLICY, revealed={"credit_limit": "0"})


def test_first_credit_limit_has_no_baseline() -> None:
    command = ChangeCreditTerms(credit_status="good", reason="onboarding", credit_limit=Decimal("5000"))
    pending = decide(_state(), command, policy=POLICY, revealed={})
    assert pending[0].payload["limit_changed"] is True


def test_credit_limit_is_not_settable_directly() -> None:
    with pytest.raises(CustomerValidationError):
        decide(_state(), SetAttributes(values={"credit_limit": "10"}), policy=POLICY)


def test_vip_customers_cannot_be_deleted() -> None:
    with pytest.raises(CustomerValidationError):
        decide(_state("vip_customer"), DeleteCustomer(reason="cleanup"), policy=POLICY)


def test_deleted_customer_only_accepts_restore() -> None:
    state = _state(status="deleted")
    with pytest.raises(CustomerValidationError):
        decide(state, SetAttributes(values={"notes": "hello"}), policy=POLICY)
    pending = decide(state, RestoreCustomer(reason="mistake"), policy=POLICY)
    assert pending[0].payload == {"reason": "mistake"}


def test_customer_type_change_blocked_with_orders() -> None:
    with pytest.raises(CustomerValidationError):
        decide(_state(total_orders=2), UpdateInformation(customer_type="individual"), policy=POLICY)
    pending = decide(_state(total_orders=0), UpdateInformation(customer_type="individual"), policy=POLICY)
    assert pending[0].payload == {"previous_customer_type": "business", "customer_type": "individual"}


def test_metrics_validation() -> None:
    with pytest.raises(CustomerValidationError):
        decide(_state(), RecordMetrics(satisfaction_score=11), policy=POLICY)
    with pytest.raises(CustomerValidationError):
        decide(_state(), RecordMetrics(), policy=POLICY)


def test_clear_attribute_rules() -> None:
    with pytest.raises(CustomerValidationError):
        decide(_state(), ClearAttribute(name="legal_name"), policy=POLICY)
    with pytest.raises(CustomerValidationError):
        decide(_state(), ClearAttribute(name="notes"), policy=POLICY)


def test_address_owner_must_reference_customer() -> None:
    with pytest.raises(CustomerValidationError):
        decide(
            _state(),
            AddAddress(address_id="billing", owner=CustomerOwner(customer_id="other"), address={"city": "Berlin"}),
            policy=POLICY,
        )
    pending = decide(
        _state(),
        AddAddress(address_id="depot", owner=SupplierOwner(supplier_id="s9"), address={"city": "Hamburg"}),
        policy=POLICY,
    )
    assert pending[0].attributes["address:depot"].owner == SupplierOwner(supplier_id="s9")
