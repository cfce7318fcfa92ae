from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from masterdata.domain.customer import (
    AddAddress,
    AddContact,
    ChangeCreditTerms,
    DeleteCustomer,
    RecordMetrics,
    SetAttributes,
)
from masterdata.domain.references import SupplierOwner
from masterdata.services.authz.rbac import EFFECT_ALLOW, AccessContext, Actor, PermissionRule, evaluate_rules
from masterdata.services.customer_access import ALL_FIELDS, command_fields


@dataclass(frozen=True)
class MergeCustomers:
    source_id: str


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        (SetAttributes(values={"phone": "1", "notes": "x"}), ("notes", "phone")),
        (AddAddress(address_id="depot", owner=SupplierOwner("s9"), address={"city": "Bonn"}), ("address:depot",)),
        (AddContact(contact_id="ap", owner=SupplierOwner("s9"), contact={"name": "A"}), ("contact:ap",)),
        (ChangeCreditTerms(credit_status="good", reason="r"), ("credit_status",)),
        (
            ChangeCreditTerms(credit_status="good", reason="r", credit_limit=Decimal("10")),
            ("credit_limit", "credit_status"),
        ),
        (RecordMetrics(total_orders=3), ("total_orders",)),
        (DeleteCustomer(reason="dup"), ("status",)),
        (MergeCustomers(source_id="c2"), (ALL_FIELDS,)),
    ],
)
def test_command_fields(command, expected) -> None:
    assert command_fields(command) == expected


def test_unknown_command_needs_unrestricted_grant() -> None:
    actor = Actor(actor_id="u1", tenant_id="t1")
    context = AccessContext(requested_fields=command_fields(MergeCustomers(source_id="c2")))

    def decide(allowed_fields):
        rule = PermissionRule(
            permission_id="p1",
            role_id="r1",
            role_priority=10,
            resource_type="customers",
            action="update",
            effect=EFFECT_ALLOW,
            allowed_fields=allowed_fields,
        )
        return evaluate_rules(
            [rule],
            actor=actor,
            resource_type="customers",
            resource_id="c1",
            action="update",
            context=context,
            now=datetime(2026, 3, 4, 10, 30, tzinfo=timezone.utc),
        )

    assert not decide(("notes",)).granted
    assert decide(None).granted
