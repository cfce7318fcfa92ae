from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from masterdata.core.config import get_settings
from masterdata.core.errors import (
    AuditSinkUnavailableError,
    ConflictError,
    CustomerValidationError,
    DuplicateCustomerNumberError,
    FieldCryptoError,
    InvalidTransitionError,
    StorageUnavailableError,
)
from masterdata.domain.customer import (
    CUSTOMER_TABLE,
    CreateCustomer,
    CustomerState,
    LifecyclePolicy,
    PendingEvent,
    decide,
    decide_create,
    fold,
    owner_payload,
    required_fields,
)
from masterdata.domain.events import EVENT_ATTRIBUTE_CLEARED, DomainEvent, NewEvent
from masterdata.persistence.db import read_only_session
from masterdata.persistence.repos import customers as customers_repo
from masterdata.persistence.repos import envelopes as envelopes_repo
from masterdata.persistence.repos import snapshots as snapshots_repo
from masterdata.services.audit import (
    AUDIT_CATEGORY_MUTATION,
    OUTCOME_CONFLICT,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    AuditLogger,
)
from masterdata.services.crypto.envelope import FieldContext, FieldEnvelope
from masterdata.services.crypto.service import FieldCryptoService
from masterdata.services.event_store import EventStore
from masterdata.services.telemetry import increment_counter
from masterdata.services.tenants import IsolationBoundary, TenantRegistry


logger = logging.getLogger(__name__)

SAVE_COMMITTED = "committed"
SAVE_CONFLICT = "conflict"
ALL_FIELDS = "*"

# Command rejections that are audited before they propagate.
_REJECTIONS = (InvalidTransitionError, CustomerValidationError, FieldCryptoError)


@dataclass(frozen=True)
class SaveResult:
    status: str
    version: int
    events: list[DomainEvent] = field(default_factory=list)
    conflict: ConflictError | None = None

    @property
    def committed(self) -> bool:
        return self.status == SAVE_COMMITTED


@dataclass(frozen=True)
class LoadedCustomer:
    state: CustomerState
    revealed: dict[str, Any] = field(default_factory=dict)
    # Fields that were requested but could not be decrypted.
    redacted_fields: tuple[str, ...] = ()

    @property
    def version(self) -> int:
        return self.state.version


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _command_action(command: object) -> str:
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", type(command).__name__).lower()
    return f"customer.{snake}"


def field_context(tenant_id: str, customer_id: str, name: str) -> FieldContext:
    return FieldContext(tenant_id=tenant_id, table=CUSTOMER_TABLE, column=name, record_id=customer_id)


class CustomerRepository:
    """Loads and saves Customer aggregates over the event store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        tenants: TenantRegistry,
        event_store: EventStore,
        crypto: FieldCryptoService,
        audit: AuditLogger | None = None,
        policy: LifecyclePolicy | None = None,
        snapshot_enabled: bool | None = None,
        snapshot_interval: int | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._tenants = tenants
        self._event_store = event_store
        self._crypto = crypto
        self._audit = audit
        self._policy = policy or LifecyclePolicy.from_settings(settings)
        self._snapshot_enabled = settings.snapshot_enabled if snapshot_enabled is None else snapshot_enabled
        self._snapshot_interval = max(1, snapshot_interval or settings.snapshot_interval)
        self._max_attempts = max(1, max_attempts or settings.customer_save_max_attempts)
        self._clock = clock

    @property
    def policy(self) -> LifecyclePolicy:
        return self._policy

    async def load_state(self, tenant_id: str, customer_id: str) -> CustomerState:
        boundary = await self._tenants.resolve(tenant_id)
        return await self._load_state(boundary, customer_id)

    async def load(
        self,
        tenant_id: str,
        customer_id: str,
        *,
        fields: Iterable[str] | None = None,
    ) -> LoadedCustomer:
        """Fold the aggregate and decrypt only the requested fields.

        A field that fails integrity or key checks is redacted rather than
        failing the whole load.
        """
        boundary = await self._tenants.resolve(tenant_id)
        state = await self._load_state(boundary, customer_id)
        if not fields:
            return LoadedCustomer(state=state)
        requested = list(fields)
        if ALL_FIELDS in requested:
            requested = sorted(state.attributes)
        revealed, redacted = await self._reveal(state, requested, strict=False)
        return LoadedCustomer(state=state, revealed=revealed, redacted_fields=tuple(redacted))

    async def find_by_number(self, tenant_id: str, customer_number: str) -> str | None:
        boundary = await self._tenants.resolve(tenant_id)
        try:
            async with read_only_session(self._session_factory) as session:
                return await customers_repo.find_customer_id(
                    session,
                    tenant_id=boundary.tenant_id,
                    customer_number=customer_number,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("customer number lookup failed") from exc

    async def create(self, tenant_id: str, command: CreateCustomer, *, actor_id: str | None) -> SaveResult:
        boundary = await self._tenants.resolve(tenant_id)
        customer_id = command.customer_id or str(uuid4())
        try:
            pending = decide_create(command, customer_id=customer_id)
            state = CustomerState(tenant_id=boundary.tenant_id, customer_id=customer_id)
            return await self._commit(
                boundary,
                state,
                pending,
                command=command,
                actor_id=actor_id,
                claim_number=pending[0].payload["customer_number"],
            )
        except _REJECTIONS as exc:
            await self._audit_unsaved(
                boundary, customer_id, command, actor_id=actor_id, outcome=OUTCOME_FAILURE, error=exc
            )
            raise

    async def save(
        self,
        tenant_id: str,
        customer_id: str,
        expected_version: int,
        command: object,
        *,
        actor_id: str | None,
    ) -> SaveResult:
        """Validate ``command`` and append its events at ``expected_version``.

        Returns a conflict result when the aggregate moved on; every other
        error propagates. Never retries.
        """
        boundary = await self._tenants.resolve(tenant_id)
        state = await self._load_state(boundary, customer_id)
        if state.version != expected_version:
            conflict = ConflictError(customer_id, expected_version=expected_version, actual_version=state.version)
            increment_counter("customer_save_conflicts_total")
            logger.info(
                "customer_save_stale tenant_id=%s customer_id=%s expected=%s actual=%s",
                tenant_id,
                customer_id,
                expected_version,
                state.version,
            )
            await self._audit_unsaved(
                boundary, customer_id, command, actor_id=actor_id, outcome=OUTCOME_CONFLICT, error=conflict
            )
            return SaveResult(status=SAVE_CONFLICT, version=state.version, conflict=conflict)
        return await self._decide_and_commit(boundary, state, command, actor_id=actor_id)

    async def save_with_retry(
        self,
        tenant_id: str,
        customer_id: str,
        command: object,
        *,
        actor_id: str | None,
        attempts: int | None = None,
    ) -> SaveResult:
        # Reload, re-validate and reattempt; the last conflict is returned, not raised.
        max_attempts = max(1, attempts or self._max_attempts)
        boundary = await self._tenants.resolve(tenant_id)
        result: SaveResult | None = None
        for attempt in range(1, max_attempts + 1):
            state = await self._load_state(boundary, customer_id)
            result = await self._decide_and_commit(boundary, state, command, actor_id=actor_id)
            if result.committed:
                return result
            increment_counter("customer_save_retries_total")
            logger.info(
                "customer_save_retry tenant_id=%s customer_id=%s attempt=%s/%s",
                tenant_id,
                customer_id,
                attempt,
                max_attempts,
            )
        assert result is not None
        return result

    async def _decide_and_commit(
        self,
        boundary: IsolationBoundary,
        state: CustomerState,
        command: object,
        *,
        actor_id: str | None,
    ) -> SaveResult:
        try:
            # Fields needed for validation must decrypt; a failure aborts the write.
            revealed, _ = await self._reveal(state, required_fields(command), strict=True)
            pending = decide(state, command, policy=self._policy, revealed=revealed)
            if not pending:
                return SaveResult(status=SAVE_COMMITTED, version=state.version)
            return await self._commit(boundary, state, pending, command=command, actor_id=actor_id)
        except _REJECTIONS as exc:
            await self._audit_unsaved(
                boundary, state.customer_id, command, actor_id=actor_id, outcome=OUTCOME_FAILURE, error=exc
            )
            raise

    async def _audit_unsaved(
        self,
        boundary: IsolationBoundary,
        customer_id: str,
        command: object,
        *,
        actor_id: str | None,
        outcome: str,
        error: Exception,
    ) -> None:
        # Rejected and conflicting mutations leave an entry; the original outcome still reaches the caller.
        if self._audit is None:
            return
        details: dict[str, Any] = {"error": getattr(error, "code", type(error).__name__)}
        if isinstance(error, ConflictError):
            details["expected_version"] = error.expected_version
            details["actual_version"] = error.actual_version
        elif isinstance(error, (CustomerValidationError, FieldCryptoError)) and error.field:
            details["field"] = error.field
        try:
            await self._audit.record(
                category=AUDIT_CATEGORY_MUTATION,
                tenant_id=boundary.tenant_id,
                actor_id=actor_id,
                resource_type="customer",
                resource_id=customer_id,
                action=_command_action(command),
                outcome=outcome,
                details=details,
            )
        except AuditSinkUnavailableError as exc:
            logger.warning(
                "customer_mutation_audit_failed tenant_id=%s customer_id=%s outcome=%s",
                boundary.tenant_id,
                customer_id,
                outcome,
                exc_info=exc,
            )

    async def _load_state(self, boundary: IsolationBoundary, customer_id: str) -> CustomerState:
        snapshot_state = await self._read_snapshot(boundary, customer_id) if self._snapshot_enabled else None
        if snapshot_state is not None:
            tail = await self._event_store.load_all(boundary, customer_id, from_sequence=snapshot_state.version + 1)
            if tail or await self._event_store.current_version(boundary, customer_id) == snapshot_state.version:
                return fold(
                    tail,
                    tenant_id=boundary.tenant_id,
                    customer_id=customer_id,
                    initial=snapshot_state,
                )
            # Snapshot claims a version the stream does not have; replay from the start.
            increment_counter("customer_snapshot_discarded_total")
            logger.warning(
                "customer_snapshot_ahead_of_stream tenant_id=%s customer_id=%s snapshot_version=%s",
                boundary.tenant_id,
                customer_id,
                snapshot_state.version,
            )
        events = await self._event_store.load_all(boundary, customer_id)
        return fold(events, tenant_id=boundary.tenant_id, customer_id=customer_id)

    async def _read_snapshot(self, boundary: IsolationBoundary, customer_id: str) -> CustomerState | None:
        try:
            async with read_only_session(self._session_factory) as session:
                row = await snapshots_repo.get_snapshot(
                    session,
                    tenant_id=boundary.tenant_id,
                    aggregate_id=customer_id,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"snapshot read failed for {customer_id}") from exc
        if row is None:
            return None
        try:
            state = CustomerState.from_dict(row.state_json)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "customer_snapshot_unreadable tenant_id=%s customer_id=%s",
                boundary.tenant_id,
                customer_id,
                exc_info=exc,
            )
            return None
        if state.version != row.version or state.customer_id != customer_id:
            return None
        return state

    async def _reveal(
        self,
        state: CustomerState,
        names: Iterable[str],
        *,
        strict: bool,
    ) -> tuple[dict[str, Any], list[str]]:
        revealed: dict[str, Any] = {}
        redacted: list[str] = []
        for name in names:
            attribute = state.attributes.get(name)
            if attribute is None:
                continue
            context = field_context(state.tenant_id, state.customer_id, name)
            try:
                revealed[name] = await self._crypto.decrypt(FieldEnvelope.from_dict(attribute.envelope), context)
            except FieldCryptoError as exc:
                if strict:
                    raise
                redacted.append(name)
                increment_counter("customer_fields_redacted_total")
                logger.warning(
                    "customer_field_redacted tenant_id=%s customer_id=%s field=%s error=%s",
                    state.tenant_id,
                    state.customer_id,
                    name,
                    exc.code,
                )
        return revealed, redacted

    async def _seal(
        self,
        state: CustomerState,
        pending: list[PendingEvent],
        *,
        actor_id: str | None,
    ) -> tuple[list[NewEvent], dict[str, tuple[FieldContext, FieldEnvelope]], set[str]]:
        # Encrypt before opening the write transaction so no key lookup runs inside it.
        occurred_at = self._clock()
        new_events: list[NewEvent] = []
        sealed: dict[str, tuple[FieldContext, FieldEnvelope]] = {}
        cleared: set[str] = set()
        for item in pending:
            payload = dict(item.payload)
            if item.attributes:
                attributes_payload: dict[str, Any] = {}
                for name, plain in item.attributes.items():
                    context = field_context(state.tenant_id, state.customer_id, name)
                    envelope = await self._crypto.encrypt(plain.value, plain.classification, context)
                    attributes_payload[name] = {
                        "classification": envelope.classification,
                        "envelope": envelope.to_dict(),
                        "owner": owner_payload(plain.owner),
                    }
                    sealed[name] = (context, envelope)
                    cleared.discard(name)
                payload["attributes"] = attributes_payload
            if item.event_type == EVENT_ATTRIBUTE_CLEARED:
                cleared.add(payload["name"])
                sealed.pop(payload["name"], None)
            new_events.append(
                NewEvent(event_type=item.event_type, payload=payload, occurred_at=occurred_at, actor_id=actor_id)
            )
        return new_events, sealed, cleared

    async def _commit(
        self,
        boundary: IsolationBoundary,
        state: CustomerState,
        pending: list[PendingEvent],
        *,
        command: object,
        actor_id: str | None,
        claim_number: str | None = None,
    ) -> SaveResult:
        customer_id = state.customer_id
        new_events, sealed, cleared = await self._seal(state, pending, actor_id=actor_id)
        expected_version = state.version
        try:
            async with self._session_factory() as session:
                if claim_number is not None:
                    try:
                        await customers_repo.claim_customer_number(
                            session,
                            tenant_id=boundary.tenant_id,
                            customer_number=claim_number,
                            customer_id=customer_id,
                        )
                    except IntegrityError as exc:
                        raise DuplicateCustomerNumberError(
                            "customer_number", f"{claim_number} already exists in tenant"
                        ) from exc
                new_version = await self._event_store.append(
                    boundary,
                    customer_id,
                    expected_version,
                    new_events,
                    session=session,
                )
                for context, envelope in sealed.values():
                    if envelope.encrypted:
                        await envelopes_repo.supersede_field(session, context=context, envelope=envelope)
                    else:
                        await envelopes_repo.delete_field(session, context=context)
                for name in sorted(cleared):
                    await envelopes_repo.delete_field(
                        session,
                        context=field_context(boundary.tenant_id, customer_id, name),
                    )
                if self._audit is not None:
                    # The mutation entry commits or rolls back with the events.
                    await self._audit.stage(
                        session,
                        self._audit.build_record(
                            category=AUDIT_CATEGORY_MUTATION,
                            tenant_id=boundary.tenant_id,
                            actor_id=actor_id,
                            resource_type="customer",
                            resource_id=customer_id,
                            action=_command_action(command),
                            outcome=OUTCOME_SUCCESS,
                            details={
                                "version": new_version,
                                "event_types": [event.event_type for event in new_events],
                                "fields": sorted(set(sealed) | cleared),
                            },
                        ),
                    )
                await session.commit()
        except ConflictError as exc:
            increment_counter("customer_save_conflicts_total")
            await self._audit_unsaved(
                boundary, customer_id, command, actor_id=actor_id, outcome=OUTCOME_CONFLICT, error=exc
            )
            return SaveResult(status=SAVE_CONFLICT, version=exc.actual_version, conflict=exc)
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"customer {customer_id} could not be saved") from exc

        committed = [
            DomainEvent(
                tenant_id=boundary.tenant_id,
                aggregate_id=customer_id,
                sequence_number=expected_version + offset,
                event_type=event.event_type,
                payload=event.payload,
                occurred_at=event.occurred_at,
                event_id=event.event_id,
                actor_id=event.actor_id,
            )
            for offset, event in enumerate(new_events, start=1)
        ]
        logger.info(
            "customer_saved tenant_id=%s customer_id=%s version=%s events=%s",
            boundary.tenant_id,
            customer_id,
            new_version,
            len(committed),
        )
        if self._snapshot_enabled and new_version // self._snapshot_interval > expected_version // self._snapshot_interval:
            await self._write_snapshot(boundary, fold(committed, tenant_id=boundary.tenant_id, customer_id=customer_id, initial=state))
        return SaveResult(status=SAVE_COMMITTED, version=new_version, events=committed)

    async def _write_snapshot(self, boundary: IsolationBoundary, state: CustomerState) -> None:
        # Snapshots are a cache; failing to write one never fails the save.
        try:
            async with self._session_factory() as session:
                await snapshots_repo.upsert_snapshot(
                    session,
                    tenant_id=boundary.tenant_id,
                    aggregate_id=state.customer_id,
                    version=state.version,
                    state_json=state.to_dict(),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            increment_counter("customer_snapshot_failures_total")
            logger.warning(
                "customer_snapshot_write_failed tenant_id=%s customer_id=%s version=%s",
                boundary.tenant_id,
                state.customer_id,
                state.version,
                exc_info=exc,
            )
            return
        logger.debug(
            "customer_snapshot_written tenant_id=%s customer_id=%s version=%s",
            boundary.tenant_id,
            state.customer_id,
            state.version,
        )
