from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable

from masterdata.core.config import Settings, get_settings
from masterdata.core.errors import CustomerValidationError, EventStreamCorruptError, InvalidTransitionError
from masterdata.domain.events import (
    EVENT_ATTRIBUTE_CLEARED,
    EVENT_ATTRIBUTES_SET,
    EVENT_CREDIT_TERMS_CHANGED,
    EVENT_CUSTOMER_CREATED,
    EVENT_CUSTOMER_DELETED,
    EVENT_CUSTOMER_RESTORED,
    EVENT_INFORMATION_UPDATED,
    EVENT_LIFECYCLE_CHANGED,
    EVENT_METRICS_RECORDED,
    EVENT_RISK_SIGNAL_RAISED,
    DomainEvent,
)
from masterdata.domain.references import CustomerOwner, OwnerRef, owner_id, owner_to_dict
from masterdata.services.crypto.envelope import Classification


CUSTOMER_TABLE = "customers"

STATUS_ACTIVE = "active"
STATUS_DELETED = "deleted"

CUSTOMER_TYPES = {"business", "individual", "government", "non_profit"}
CREDIT_STATUSES = {"good", "watch", "on_hold", "blocked"}
RISK_SEVERITIES = {"low", "medium", "high", "critical"}

_CUSTOMER_NUMBER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class LifecycleStage(str, Enum):
    LEAD = "lead"
    PROSPECT = "prospect"
    NEW_CUSTOMER = "new_customer"
    ACTIVE_CUSTOMER = "active_customer"
    VIP_CUSTOMER = "vip_customer"
    AT_RISK_CUSTOMER = "at_risk_customer"
    WON_BACK_CUSTOMER = "won_back_customer"
    FORMER_CUSTOMER = "former_customer"


# Every legal edge; anything absent (including same-stage moves) is rejected.
LIFECYCLE_TRANSITIONS: dict[LifecycleStage, frozenset[LifecycleStage]] = {
    LifecycleStage.LEAD: frozenset({LifecycleStage.PROSPECT}),
    LifecycleStage.PROSPECT: frozenset({LifecycleStage.NEW_CUSTOMER}),
    LifecycleStage.NEW_CUSTOMER: frozenset({LifecycleStage.ACTIVE_CUSTOMER}),
    LifecycleStage.ACTIVE_CUSTOMER: frozenset({LifecycleStage.VIP_CUSTOMER, LifecycleStage.AT_RISK_CUSTOMER}),
    LifecycleStage.AT_RISK_CUSTOMER: frozenset(
        {LifecycleStage.WON_BACK_CUSTOMER, LifecycleStage.FORMER_CUSTOMER}
    ),
    LifecycleStage.VIP_CUSTOMER: frozenset(),
    LifecycleStage.WON_BACK_CUSTOMER: frozenset(),
    LifecycleStage.FORMER_CUSTOMER: frozenset(),
}

INITIAL_STAGES = frozenset({LifecycleStage.LEAD, LifecycleStage.PROSPECT})

# Classified attribute catalogue; names outside it are rejected.
ATTRIBUTE_CLASSIFICATIONS: dict[str, Classification] = {
    "legal_name": Classification.INTERNAL,
    "trading_name": Classification.PUBLIC,
    "website": Classification.PUBLIC,
    "industry": Classification.PUBLIC,
    "currency_code": Classification.PUBLIC,
    "payment_terms": Classification.INTERNAL,
    "notes": Classification.INTERNAL,
    "email": Classification.CONFIDENTIAL,
    "phone": Classification.CONFIDENTIAL,
    "credit_limit": Classification.CONFIDENTIAL,
    "tax_number": Classification.RESTRICTED,
    "vat_number": Classification.RESTRICTED,
    "bank_account": Classification.RESTRICTED,
    "kyc_document": Classification.TOP_SECRET,
}
ADDRESS_PREFIX = "address:"
CONTACT_PREFIX = "contact:"
_PREFIX_CLASSIFICATIONS: dict[str, Classification] = {
    ADDRESS_PREFIX: Classification.CONFIDENTIAL,
    CONTACT_PREFIX: Classification.CONFIDENTIAL,
}
# Attributes that cannot be cleared once set.
_MANDATORY_ATTRIBUTES = {"legal_name"}


def classify_attribute(name: str) -> Classification:
    classification = ATTRIBUTE_CLASSIFICATIONS.get(name)
    if classification is not None:
        return classification
    for prefix, prefixed in _PREFIX_CLASSIFICATIONS.items():
        if name.startswith(prefix) and len(name) > len(prefix):
            return prefixed
    raise CustomerValidationError(name, "unknown attribute")


@dataclass
class AttributeValue:
    classification: str
    envelope: dict[str, Any]
    owner: dict[str, str] | None = None


@dataclass
class CustomerState:
    tenant_id: str
    customer_id: str
    customer_number: str = ""
    customer_type: str = "business"
    lifecycle_stage: str = LifecycleStage.LEAD.value
    status: str = STATUS_ACTIVE
    credit_status: str = "good"
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    total_revenue: Decimal | None = None
    total_orders: int | None = None
    satisfaction_score: float | None = None
    last_order_date: datetime | None = None
    risk_signals: list[dict[str, Any]] = field(default_factory=list)
    version: int = 0
    created_at: datetime | None = None
    created_by: str | None = None
    modified_at: datetime | None = None
    modified_by: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.status == STATUS_DELETED

    @property
    def stage(self) -> LifecycleStage:
        return LifecycleStage(self.lifecycle_stage)

    def to_dict(self) -> dict[str, Any]:
        # JSON-safe form used for snapshots.
        return {
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "customer_number": self.customer_number,
            "customer_type": self.customer_type,
            "lifecycle_stage": self.lifecycle_stage,
            "status": self.status,
            "credit_status": self.credit_status,
            "attributes": {
                name: {"classification": value.classification, "envelope": value.envelope, "owner": value.owner}
                for name, value in sorted(self.attributes.items())
            },
            "total_revenue": str(self.total_revenue) if self.total_revenue is not None else None,
            "total_orders": self.total_orders,
            "satisfaction_score": self.satisfaction_score,
            "last_order_date": _iso(self.last_order_date),
            "risk_signals": list(self.risk_signals),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
            "modified_at": _iso(self.modified_at),
            "modified_by": self.modified_by,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CustomerState":
        revenue = payload.get("total_revenue")
        return cls(
            tenant_id=payload["tenant_id"],
            customer_id=payload["customer_id"],
            customer_number=payload.get("customer_number", ""),
            customer_type=payload.get("customer_type", "business"),
            lifecycle_stage=payload.get("lifecycle_stage", LifecycleStage.LEAD.value),
            status=payload.get("status", STATUS_ACTIVE),
            credit_status=payload.get("credit_status", "good"),
            attributes={
                name: AttributeValue(
                    classification=value["classification"],
                    envelope=dict(value["envelope"]),
                    owner=value.get("owner"),
                )
                for name, value in (payload.get("attributes") or {}).items()
            },
            total_revenue=Decimal(revenue) if revenue is not None else None,
            total_orders=payload.get("total_orders"),
            satisfaction_score=payload.get("satisfaction_score"),
            last_order_date=_parse_dt(payload.get("last_order_date")),
            risk_signals=list(payload.get("risk_signals") or []),
            version=int(payload.get("version", 0)),
            created_at=_parse_dt(payload.get("created_at")),
            created_by=payload.get("created_by"),
            modified_at=_parse_dt(payload.get("modified_at")),
            modified_by=payload.get("modified_by"),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_decimal(value: Any, field_name: str) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise CustomerValidationError(field_name, "must be a decimal number") from exc
    if not parsed.is_finite():
        raise CustomerValidationError(field_name, "must be finite")
    return parsed


def _apply_created(state: CustomerState, payload: dict[str, Any]) -> None:
    state.customer_number = payload["customer_number"]
    state.customer_type = payload["customer_type"]
    state.lifecycle_stage = payload["lifecycle_stage"]
    state.status = STATUS_ACTIVE
    _apply_attributes_set(state, payload)


def _apply_information_updated(state: CustomerState, payload: dict[str, Any]) -> None:
    if "customer_type" in payload:
        state.customer_type = payload["customer_type"]


def _apply_attributes_set(state: CustomerState, payload: dict[str, Any]) -> None:
    for name, value in (payload.get("attributes") or {}).items():
        state.attributes[name] = AttributeValue(
            classification=value["classification"],
            envelope=dict(value["envelope"]),
            owner=value.get("owner"),
        )


def _apply_attribute_cleared(state: CustomerState, payload: dict[str, Any]) -> None:
    state.attributes.pop(payload["name"], None)


def _apply_lifecycle_changed(state: CustomerState, payload: dict[str, Any]) -> None:
    state.lifecycle_stage = payload["to"]


def _apply_metrics_recorded(state: CustomerState, payload: dict[str, Any]) -> None:
    if "total_revenue" in payload:
        state.total_revenue = Decimal(payload["total_revenue"])
    if "total_orders" in payload:
        state.total_orders = int(payload["total_orders"])
    if "satisfaction_score" in payload:
        state.satisfaction_score = float(payload["satisfaction_score"])
    if "last_order_date" in payload:
        state.last_order_date = _parse_dt(payload["last_order_date"])


def _apply_risk_signal_raised(state: CustomerState, payload: dict[str, Any]) -> None:
    state.risk_signals.append({"signal": payload["signal"], "severity": payload["severity"]})


def _apply_credit_terms_changed(state: CustomerState, payload: dict[str, Any]) -> None:
    state.credit_status = payload["credit_status"]


def _apply_deleted(state: CustomerState, payload: dict[str, Any]) -> None:
    state.status = STATUS_DELETED


def _apply_restored(state: CustomerState, payload: dict[str, Any]) -> None:
    state.status = STATUS_ACTIVE


_APPLIERS: dict[str, Callable[[CustomerState, dict[str, Any]], None]] = {
    EVENT_CUSTOMER_CREATED: _apply_created,
    EVENT_INFORMATION_UPDATED: _apply_information_updated,
    EVENT_ATTRIBUTES_SET: _apply_attributes_set,
    EVENT_ATTRIBUTE_CLEARED: _apply_attribute_cleared,
    EVENT_LIFECYCLE_CHANGED: _apply_lifecycle_changed,
    EVENT_METRICS_RECORDED: _apply_metrics_recorded,
    EVENT_RISK_SIGNAL_RAISED: _apply_risk_signal_raised,
    EVENT_CREDIT_TERMS_CHANGED: _apply_credit_terms_changed,
    EVENT_CUSTOMER_DELETED: _apply_deleted,
    EVENT_CUSTOMER_RESTORED: _apply_restored,
}


def _apply(state: CustomerState, event: DomainEvent) -> None:
    if event.sequence_number != state.version + 1:
        raise EventStreamCorruptError(
            f"aggregate {state.customer_id} expected sequence {state.version + 1} got {event.sequence_number}"
        )
    if state.version == 0 and event.event_type != EVENT_CUSTOMER_CREATED:
        raise EventStreamCorruptError(f"aggregate {state.customer_id} does not start with a creation event")
    applier = _APPLIERS.get(event.event_type)
    if applier is None:
        raise EventStreamCorruptError(f"unknown event type {event.event_type}")
    applier(state, event.payload)
    state.version = event.sequence_number
    if state.created_at is None:
        state.created_at = event.occurred_at
        state.created_by = event.actor_id
    state.modified_at = event.occurred_at
    state.modified_by = event.actor_id


def fold(
    events: Iterable[DomainEvent],
    *,
    tenant_id: str,
    customer_id: str,
    initial: CustomerState | None = None,
) -> CustomerState:
    # Pure and deterministic: state depends only on the events and the starting snapshot.
    state = copy.deepcopy(initial) if initial is not None else CustomerState(tenant_id=tenant_id, customer_id=customer_id)
    for event in events:
        _apply(state, event)
    return state


@dataclass(frozen=True)
class LifecyclePolicy:
    vip_min_revenue: Decimal
    vip_min_orders: int
    vip_min_satisfaction: float
    credit_limit_max_increase_pct: Decimal = Decimal("50")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LifecyclePolicy":
        settings = settings or get_settings()
        return cls(
            vip_min_revenue=Decimal(settings.lifecycle_vip_min_revenue),
            vip_min_orders=int(settings.lifecycle_vip_min_orders),
            vip_min_satisfaction=float(settings.lifecycle_vip_min_satisfaction),
            credit_limit_max_increase_pct=Decimal(settings.credit_limit_max_increase_pct),
        )

    def vip_shortfalls(self, state: CustomerState) -> list[str]:
        # All three thresholds are hard gates; a missing metric counts as unmet.
        shortfalls: list[str] = []
        if state.total_revenue is None or state.total_revenue < self.vip_min_revenue:
            shortfalls.append(f"revenue below {self.vip_min_revenue}")
        if state.total_orders is None or state.total_orders < self.vip_min_orders:
            shortfalls.append(f"orders below {self.vip_min_orders}")
        if state.satisfaction_score is None or state.satisfaction_score < self.vip_min_satisfaction:
            shortfalls.append(f"satisfaction below {self.vip_min_satisfaction}")
        return shortfalls


def parse_stage(value: LifecycleStage | str) -> LifecycleStage:
    try:
        return LifecycleStage(value)
    except ValueError as exc:
        raise CustomerValidationError("lifecycle_stage", f"unknown stage {value}") from exc


def validate_transition(
    state: CustomerState,
    to_stage: LifecycleStage,
    *,
    policy: LifecyclePolicy,
    risk_signal_pending: bool = False,
) -> None:
    from_stage = state.stage
    if to_stage not in LIFECYCLE_TRANSITIONS[from_stage]:
        raise InvalidTransitionError(from_stage.value, to_stage.value)
    if to_stage == LifecycleStage.VIP_CUSTOMER:
        shortfalls = policy.vip_shortfalls(state)
        if shortfalls:
            raise InvalidTransitionError(from_stage.value, to_stage.value, "; ".join(shortfalls))
    if to_stage == LifecycleStage.AT_RISK_CUSTOMER and not (state.risk_signals or risk_signal_pending):
        raise InvalidTransitionError(from_stage.value, to_stage.value, "no risk signal recorded")


@dataclass(frozen=True)
class CreateCustomer:
    customer_number: str
    legal_name: str
    customer_type: str = "business"
    lifecycle_stage: str = LifecycleStage.LEAD.value
    attributes: dict[str, Any] = field(default_factory=dict)
    customer_id: str | None = None


@dataclass(frozen=True)
class UpdateInformation:
    legal_name: str | None = None
    customer_type: str | None = None


@dataclass(frozen=True)
class SetAttributes:
    values: dict[str, Any]


@dataclass(frozen=True)
class ClearAttribute:
    name: str


@dataclass(frozen=True)
class ChangeLifecycleStage:
    to_stage: str
    reason: str | None = None
    # Raising a signal in the same command satisfies the at-risk precondition.
    risk_signal: str | None = None


@dataclass(frozen=True)
class RecordMetrics:
    total_revenue: Decimal | None = None
    total_orders: int | None = None
    satisfaction_score: float | None = None
    last_order_date: datetime | None = None
    calculation_method: str = "reported"


@dataclass(frozen=True)
class RaiseRiskSignal:
    signal: str
    severity: str = "medium"


@dataclass(frozen=True)
class ChangeCreditTerms:
    credit_status: str
    reason: str
    credit_limit: Decimal | None = None

    # The current limit must be decrypted to validate the increase.
    required_fields = ("credit_limit",)


@dataclass(frozen=True)
class AddAddress:
    address_id: str
    owner: OwnerRef
    address: dict[str, Any]


@dataclass(frozen=True)
class AddContact:
    contact_id: str
    owner: OwnerRef
    contact: dict[str, Any]


@dataclass(frozen=True)
class DeleteCustomer:
    reason: str


@dataclass(frozen=True)
class RestoreCustomer:
    reason: str


@dataclass(frozen=True)
class PlainAttribute:
    value: Any
    classification: Classification
    owner: OwnerRef | None = None


@dataclass(frozen=True)
class PendingEvent:
    """Validated event whose classified attributes still need sealing."""

    event_type: str
    payload: dict[str, Any]
    attributes: dict[str, PlainAttribute] = field(default_factory=dict)


def required_fields(command: object) -> tuple[str, ...]:
    return tuple(getattr(command, "required_fields", ()))


def _plain(name: str, value: Any, owner: OwnerRef | None = None) -> PlainAttribute:
    return PlainAttribute(value=value, classification=classify_attribute(name), owner=owner)


def _require_text(value: str | None, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise CustomerValidationError(field_name, "must not be empty")
    return str(value).strip()


def _validate_owner(state: CustomerState, owner: OwnerRef) -> None:
    identifier = owner_id(owner)
    if not identifier:
        raise CustomerValidationError("owner", "owner id is required")
    if isinstance(owner, CustomerOwner) and identifier != state.customer_id:
        raise CustomerValidationError("owner", "customer-owned records must reference this customer")


def _attribute_value(name: str, value: Any) -> Any:
    if name == "legal_name":
        return _require_text(value, name)
    if name == "credit_limit":
        limit = _to_decimal(value, name)
        if limit < 0:
            raise CustomerValidationError(name, "must not be negative")
        return str(limit)
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass(frozen=True)
class _DecideContext:
    policy: LifecyclePolicy
    revealed: dict[str, Any]


def decide_create(
    command: CreateCustomer,
    *,
    customer_id: str,
) -> list[PendingEvent]:
    customer_number = _require_text(command.customer_number, "customer_number")
    if not _CUSTOMER_NUMBER_RE.match(customer_number):
        raise CustomerValidationError("customer_number", "must be alphanumeric with - or _")
    if command.customer_type not in CUSTOMER_TYPES:
        raise CustomerValidationError("customer_type", f"unsupported type {command.customer_type}")
    stage = parse_stage(command.lifecycle_stage)
    if stage not in INITIAL_STAGES:
        raise CustomerValidationError("lifecycle_stage", f"customers cannot start as {stage.value}")
    attributes = {"legal_name": _plain("legal_name", _require_text(command.legal_name, "legal_name"))}
    for name, value in command.attributes.items():
        if name in attributes:
            continue
        attributes[name] = _plain(name, _attribute_value(name, value))
    return [
        PendingEvent(
            event_type=EVENT_CUSTOMER_CREATED,
            payload={
                "customer_id": customer_id,
                "customer_number": customer_number,
                "customer_type": command.customer_type,
                "lifecycle_stage": stage.value,
            },
            attributes=attributes,
        )
    ]


def _decide_update_information(
    state: CustomerState, command: UpdateInformation, ctx: _DecideContext
) -> list[PendingEvent]:
    events: list[PendingEvent] = []
    if command.customer_type is not None and command.customer_type != state.customer_type:
        if command.customer_type not in CUSTOMER_TYPES:
            raise CustomerValidationError("customer_type", f"unsupported type {command.customer_type}")
        if (state.total_orders or 0) > 0:
            raise CustomerValidationError(
                "customer_type", "cannot change customer type for customers with existing orders"
            )
        events.append(
            PendingEvent(
                event_type=EVENT_INFORMATION_UPDATED,
                payload={"previous_customer_type": state.customer_type, "customer_type": command.customer_type},
            )
        )
    if command.legal_name is not None:
        events.append(
            PendingEvent(
                event_type=EVENT_ATTRIBUTES_SET,
                payload={},
                attributes={"legal_name": _plain("legal_name", _require_text(command.legal_name, "legal_name"))},
            )
        )
    return events


def _decide_set_attributes(state: CustomerState, command: SetAttributes, ctx: _DecideContext) -> list[PendingEvent]:
    if not command.values:
        raise CustomerValidationError("attributes", "at least one attribute is required")
    attributes: dict[str, PlainAttribute] = {}
    for name, value in sorted(command.values.items()):
        if name == "credit_limit":
            raise CustomerValidationError(name, "credit limit changes go through credit terms")
        if name.startswith(ADDRESS_PREFIX) or name.startswith(CONTACT_PREFIX):
            raise CustomerValidationError(name, "addresses and contacts need an owner reference")
        attributes[name] = _plain(name, _attribute_value(name, value))
    return [PendingEvent(event_type=EVENT_ATTRIBUTES_SET, payload={}, attributes=attributes)]


def _decide_clear_attribute(state: CustomerState, command: ClearAttribute, ctx: _DecideContext) -> list[PendingEvent]:
    classify_attribute(command.name)
    if command.name in _MANDATORY_ATTRIBUTES:
        raise CustomerValidationError(command.name, "mandatory attribute cannot be cleared")
    if command.name not in state.attributes:
        raise CustomerValidationError(command.name, "attribute is not set")
    return [PendingEvent(event_type=EVENT_ATTRIBUTE_CLEARED, payload={"name": command.name})]


def _decide_lifecycle(
    state: CustomerState, command: ChangeLifecycleStage, ctx: _DecideContext
) -> list[PendingEvent]:
    to_stage = parse_stage(command.to_stage)
    events: list[PendingEvent] = []
    if command.risk_signal:
        events.extend(_decide_risk_signal(state, RaiseRiskSignal(signal=command.risk_signal), ctx))
    validate_transition(state, to_stage, policy=ctx.policy, risk_signal_pending=bool(command.risk_signal))
    events.append(
        PendingEvent(
            event_type=EVENT_LIFECYCLE_CHANGED,
            payload={"from": state.lifecycle_stage, "to": to_stage.value, "reason": command.reason},
        )
    )
    return events


def _decide_metrics(state: CustomerState, command: RecordMetrics, ctx: _DecideContext) -> list[PendingEvent]:
    payload: dict[str, Any] = {"calculation_method": command.calculation_method}
    if command.total_revenue is not None:
        revenue = _to_decimal(command.total_revenue, "total_revenue")
        if revenue < 0:
            raise CustomerValidationError("total_revenue", "must not be negative")
        payload["total_revenue"] = str(revenue)
    if command.total_orders is not None:
        if int(command.total_orders) < 0:
            raise CustomerValidationError("total_orders", "must not be negative")
        payload["total_orders"] = int(command.total_orders)
    if command.satisfaction_score is not None:
        score = float(command.satisfaction_score)
        if not 0.0 <= score <= 10.0:
            raise CustomerValidationError("satisfaction_score", "must be between 0 and 10")
        payload["satisfaction_score"] = score
    if command.last_order_date is not None:
        payload["last_order_date"] = command.last_order_date.isoformat()
    if len(payload) == 1:
        raise CustomerValidationError("metrics", "at least one metric is required")
    return [PendingEvent(event_type=EVENT_METRICS_RECORDED, payload=payload)]


def _decide_risk_signal(state: CustomerState, command: RaiseRiskSignal, ctx: _DecideContext) -> list[PendingEvent]:
    signal = _require_text(command.signal, "signal")
    if command.severity not in RISK_SEVERITIES:
        raise CustomerValidationError("severity", f"unsupported severity {command.severity}")
    return [
        PendingEvent(
            event_type=EVENT_RISK_SIGNAL_RAISED,
            payload={"signal": signal, "severity": command.severity},
        )
    ]


def _decide_credit_terms(
    state: CustomerState, command: ChangeCreditTerms, ctx: _DecideContext
) -> list[PendingEvent]:
    if command.credit_status not in CREDIT_STATUSES:
        raise CustomerValidationError("credit_status", f"unsupported credit status {command.credit_status}")
    reason = _require_text(command.reason, "reason")
    attributes: dict[str, PlainAttribute] = {}
    if command.credit_limit is not None:
        new_limit = _to_decimal(command.credit_limit, "credit_limit")
        if new_limit < 0:
            raise CustomerValidationError("credit_limit", "must not be negative")
        current_raw = ctx.revealed.get("credit_limit")
        if current_raw is not None:
            current = _to_decimal(current_raw, "credit_limit")
            if new_limit > current:
                if current > 0:
                    increase_pct = (new_limit - current) / current * Decimal(100)
                else:
                    increase_pct = Decimal(100)
                if increase_pct > ctx.policy.credit_limit_max_increase_pct:
                    raise CustomerValidationError(
                        "credit_limit",
                        f"increase of {increase_pct:.2f}% exceeds {ctx.policy.credit_limit_max_increase_pct}% threshold",
                    )
        attributes["credit_limit"] = _plain("credit_limit", str(new_limit))
    events = [
        PendingEvent(
            event_type=EVENT_CREDIT_TERMS_CHANGED,
            payload={
                "previous_credit_status": state.credit_status,
                "credit_status": command.credit_status,
                "reason": reason,
                "limit_changed": bool(attributes),
            },
        )
    ]
    if attributes:
        events.append(PendingEvent(event_type=EVENT_ATTRIBUTES_SET, payload={}, attributes=attributes))
    return events


def _decide_address(state: CustomerState, command: AddAddress, ctx: _DecideContext) -> list[PendingEvent]:
    address_id = _require_text(command.address_id, "address_id")
    _validate_owner(state, command.owner)
    if not command.address:
        raise CustomerValidationError("address", "address details are required")
    name = f"{ADDRESS_PREFIX}{address_id}"
    return [
        PendingEvent(
            event_type=EVENT_ATTRIBUTES_SET,
            payload={},
            attributes={name: _plain(name, dict(command.address), owner=command.owner)},
        )
    ]


def _decide_contact(state: CustomerState, command: AddContact, ctx: _DecideContext) -> list[PendingEvent]:
    contact_id = _require_text(command.contact_id, "contact_id")
    _validate_owner(state, command.owner)
    if not command.contact:
        raise CustomerValidationError("contact", "contact details are required")
    name = f"{CONTACT_PREFIX}{contact_id}"
    return [
        PendingEvent(
            event_type=EVENT_ATTRIBUTES_SET,
            payload={},
            attributes={name: _plain(name, dict(command.contact), owner=command.owner)},
        )
    ]


def _decide_delete(state: CustomerState, command: DeleteCustomer, ctx: _DecideContext) -> list[PendingEvent]:
    if state.stage == LifecycleStage.VIP_CUSTOMER:
        raise CustomerValidationError("lifecycle_stage", "VIP customers require special approval for deletion")
    return [PendingEvent(event_type=EVENT_CUSTOMER_DELETED, payload={"reason": _require_text(command.reason, "reason")})]


def _decide_restore(state: CustomerState, command: RestoreCustomer, ctx: _DecideContext) -> list[PendingEvent]:
    if not state.is_deleted:
        raise CustomerValidationError("customer", "customer is not deleted")
    return [PendingEvent(event_type=EVENT_CUSTOMER_RESTORED, payload={"reason": _require_text(command.reason, "reason")})]


_DECIDERS: dict[type, Callable[[CustomerState, Any, _DecideContext], list[PendingEvent]]] = {
    UpdateInformation: _decide_update_information,
    SetAttributes: _decide_set_attributes,
    ClearAttribute: _decide_clear_attribute,
    ChangeLifecycleStage: _decide_lifecycle,
    RecordMetrics: _decide_metrics,
    RaiseRiskSignal: _decide_risk_signal,
    ChangeCreditTerms: _decide_credit_terms,
    AddAddress: _decide_address,
    AddContact: _decide_contact,
    DeleteCustomer: _decide_delete,
    RestoreCustomer: _decide_restore,
}


def decide(
    state: CustomerState,
    command: object,
    *,
    policy: LifecyclePolicy,
    revealed: dict[str, Any] | None = None,
) -> list[PendingEvent]:
    """Validate a command against current state and return the events it produces.

    ``revealed`` carries decrypted values for the command's ``required_fields``.
    """
    decider = _DECIDERS.get(type(command))
    if decider is None:
        raise CustomerValidationError("command", f"unsupported command {type(command).__name__}")
    if state.is_deleted and not isinstance(command, RestoreCustomer):
        raise CustomerValidationError("customer", "cannot modify a deleted customer")
    return decider(state, command, _DecideContext(policy=policy, revealed=revealed or {}))


def owner_payload(owner: OwnerRef | None) -> dict[str, str] | None:
    return owner_to_dict(owner) if owner is not None else None
