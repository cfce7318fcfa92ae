from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4


EVENT_CUSTOMER_CREATED = "customer.created"
EVENT_INFORMATION_UPDATED = "customer.information_updated"
EVENT_ATTRIBUTES_SET = "customer.attributes_set"
EVENT_ATTRIBUTE_CLEARED = "customer.attribute_cleared"
EVENT_LIFECYCLE_CHANGED = "customer.lifecycle_changed"
EVENT_METRICS_RECORDED = "customer.metrics_recorded"
EVENT_RISK_SIGNAL_RAISED = "customer.risk_signal_raised"
EVENT_CREDIT_TERMS_CHANGED = "customer.credit_terms_changed"
EVENT_CUSTOMER_DELETED = "customer.deleted"
EVENT_CUSTOMER_RESTORED = "customer.restored"


@dataclass(frozen=True)
class NewEvent:
    """Event validated by the domain and waiting for its sequence slot."""

    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime
    actor_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass(frozen=True)
class DomainEvent:
    tenant_id: str
    aggregate_id: str
    sequence_number: int
    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime
    event_id: str
    actor_id: str | None = None
    recorded_at: datetime | None = None
