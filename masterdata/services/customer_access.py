from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable

from masterdata.domain.customer import (
    ADDRESS_PREFIX,
    CONTACT_PREFIX,
    AddAddress,
    AddContact,
    ChangeCreditTerms,
    ChangeLifecycleStage,
    ClearAttribute,
    CreateCustomer,
    DeleteCustomer,
    RaiseRiskSignal,
    RecordMetrics,
    RestoreCustomer,
    SetAttributes,
    UpdateInformation,
)
from masterdata.services.authz.rbac import WILDCARD, AccessContext, AccessControlEngine, Actor
from masterdata.services.customers import CustomerRepository, LoadedCustomer, SaveResult


logger = logging.getLogger(__name__)

RESOURCE_CUSTOMERS = "customers"
ACTION_READ = "read"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"

ALL_FIELDS = WILDCARD
METRIC_FIELDS = ("total_revenue", "total_orders", "satisfaction_score", "last_order_date")


def command_fields(command: object) -> tuple[str, ...]:
    # Field names a command writes; field-restricted grants must cover all of them.
    if isinstance(command, CreateCustomer):
        return tuple(sorted({"legal_name", *command.attributes}))
    if isinstance(command, SetAttributes):
        return tuple(sorted(command.values))
    if isinstance(command, ClearAttribute):
        return (command.name,)
    if isinstance(command, UpdateInformation):
        return tuple(
            name
            for name, value in (("customer_type", command.customer_type), ("legal_name", command.legal_name))
            if value is not None
        )
    if isinstance(command, ChangeCreditTerms):
        return ("credit_limit", "credit_status") if command.credit_limit is not None else ("credit_status",)
    if isinstance(command, AddAddress):
        return (f"{ADDRESS_PREFIX}{command.address_id}",)
    if isinstance(command, AddContact):
        return (f"{CONTACT_PREFIX}{command.contact_id}",)
    if isinstance(command, ChangeLifecycleStage):
        return ("lifecycle_stage", "risk_signals") if command.risk_signal else ("lifecycle_stage",)
    if isinstance(command, RecordMetrics):
        return tuple(name for name in METRIC_FIELDS if getattr(command, name) is not None)
    if isinstance(command, RaiseRiskSignal):
        return ("risk_signals",)
    if isinstance(command, (DeleteCustomer, RestoreCustomer)):
        return ("status",)
    # Unknown commands request a field no restricted grant lists.
    return (ALL_FIELDS,)


class CustomerAccessService:
    """Authorize first, then touch the aggregate; nothing is decrypted for a denied caller."""

    def __init__(self, *, access: AccessControlEngine, repository: CustomerRepository) -> None:
        self._access = access
        self._repository = repository

    async def read_customer(
        self,
        actor: Actor,
        customer_id: str,
        *,
        fields: Iterable[str] = (),
        context: AccessContext | None = None,
    ) -> LoadedCustomer:
        requested = tuple(fields)
        context = replace(context or AccessContext(), requested_fields=requested)
        await self._access.require(actor, RESOURCE_CUSTOMERS, customer_id, ACTION_READ, context)
        return await self._repository.load(actor.tenant_id, customer_id, fields=requested or None)

    async def create_customer(
        self,
        actor: Actor,
        command: CreateCustomer,
        *,
        context: AccessContext | None = None,
    ) -> SaveResult:
        context = replace(context or AccessContext(), requested_fields=command_fields(command))
        await self._access.require(actor, RESOURCE_CUSTOMERS, command.customer_id, ACTION_CREATE, context)
        return await self._repository.create(actor.tenant_id, command, actor_id=actor.actor_id)

    async def update_customer(
        self,
        actor: Actor,
        customer_id: str,
        expected_version: int,
        command: object,
        *,
        context: AccessContext | None = None,
    ) -> SaveResult:
        action = ACTION_DELETE if isinstance(command, DeleteCustomer) else ACTION_UPDATE
        context = replace(context or AccessContext(), requested_fields=command_fields(command))
        await self._access.require(actor, RESOURCE_CUSTOMERS, customer_id, action, context)
        result = await self._repository.save(
            actor.tenant_id,
            customer_id,
            expected_version,
            command,
            actor_id=actor.actor_id,
        )
        if not result.committed:
            logger.info(
                "customer_update_conflict tenant_id=%s customer_id=%s actor_id=%s version=%s",
                actor.tenant_id,
                customer_id,
                actor.actor_id,
                result.version,
            )
        return result
