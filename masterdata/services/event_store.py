from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from masterdata.core.config import get_settings
from masterdata.core.errors import (
    AggregateNotFoundError,
    ConflictError,
    EventStreamCorruptError,
    StorageUnavailableError,
)
from masterdata.domain.events import DomainEvent, NewEvent
from masterdata.domain.models import CustomerEvent
from masterdata.persistence.db import read_only_session
from masterdata.persistence.repos import events as events_repo
from masterdata.services.telemetry import increment_counter, record_operation
from masterdata.services.tenants import IsolationBoundary


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventStatistics:
    total_events: int
    unique_aggregates: int
    events_by_type: dict[str, int]
    first_event_at: datetime | None
    last_event_at: datetime | None


def _to_domain(row: CustomerEvent) -> DomainEvent:
    return DomainEvent(
        tenant_id=row.tenant_id,
        aggregate_id=row.aggregate_id,
        sequence_number=row.sequence_number,
        event_type=row.event_type,
        payload=dict(row.payload_json or {}),
        occurred_at=row.occurred_at,
        event_id=row.event_id,
        actor_id=row.actor_id,
        recorded_at=row.recorded_at,
    )


class EventStore:
    """Append-only per-aggregate event log with compare-and-append writes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        page_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._page_size = max(1, page_size or get_settings().event_store_page_size)

    @asynccontextmanager
    async def _session(self, session: AsyncSession | None) -> AsyncIterator[tuple[AsyncSession, bool]]:
        if session is not None:
            yield session, False
            return
        async with self._session_factory() as owned:
            yield owned, True

    async def append(
        self,
        boundary: IsolationBoundary,
        aggregate_id: str,
        expected_version: int,
        events: Sequence[NewEvent],
        *,
        session: AsyncSession | None = None,
    ) -> int:
        """Append ``events`` only if the stream is still at ``expected_version``.

        With a caller-supplied ``session`` the rows are flushed but not committed,
        so other writes can join the same transaction.
        """
        if expected_version < 0:
            raise ValueError("expected_version must be >= 0")
        if not events:
            raise ValueError("append requires at least one event")
        started = time.monotonic()
        async with self._session(session) as (active, owned):
            try:
                current = await events_repo.current_version(
                    active,
                    tenant_id=boundary.tenant_id,
                    aggregate_id=aggregate_id,
                )
                if current != expected_version:
                    raise ConflictError(aggregate_id, expected_version=expected_version, actual_version=current)
                rows = [
                    {
                        "event_id": event.event_id,
                        "tenant_id": boundary.tenant_id,
                        "aggregate_id": aggregate_id,
                        "sequence_number": expected_version + offset,
                        "event_type": event.event_type,
                        "payload_json": event.payload,
                        "actor_id": event.actor_id,
                        "occurred_at": event.occurred_at,
                    }
                    for offset, event in enumerate(events, start=1)
                ]
                await events_repo.insert_events(active, rows)
                if owned:
                    await active.commit()
            except ConflictError as exc:
                await active.rollback()
                self._record_conflict(boundary, exc)
                raise
            except IntegrityError as exc:
                # A concurrent writer claimed the sequence slot between our check and insert.
                await active.rollback()
                actual = await self._version_after_conflict(boundary, aggregate_id)
                conflict = ConflictError(aggregate_id, expected_version=expected_version, actual_version=actual)
                self._record_conflict(boundary, conflict)
                raise conflict from exc
            except SQLAlchemyError as exc:
                await active.rollback()
                increment_counter("event_store_storage_errors_total")
                record_operation(
                    operation="event_store.append",
                    latency_ms=(time.monotonic() - started) * 1000,
                    success=False,
                )
                raise StorageUnavailableError(f"append failed for aggregate {aggregate_id}") from exc
        new_version = expected_version + len(events)
        increment_counter("event_store_events_appended_total", len(events))
        record_operation(
            operation="event_store.append",
            latency_ms=(time.monotonic() - started) * 1000,
            success=True,
        )
        logger.debug(
            "events_appended tenant_id=%s aggregate_id=%s version=%s",
            boundary.tenant_id,
            aggregate_id,
            new_version,
        )
        return new_version

    def _record_conflict(self, boundary: IsolationBoundary, exc: ConflictError) -> None:
        increment_counter("event_store_conflicts_total")
        logger.info(
            "event_append_conflict tenant_id=%s aggregate_id=%s expected=%s actual=%s",
            boundary.tenant_id,
            exc.aggregate_id,
            exc.expected_version,
            exc.actual_version,
        )

    async def _version_after_conflict(self, boundary: IsolationBoundary, aggregate_id: str) -> int:
        try:
            return await self.current_version(boundary, aggregate_id)
        except StorageUnavailableError:
            return -1

    async def current_version(self, boundary: IsolationBoundary, aggregate_id: str) -> int:
        try:
            async with read_only_session(self._session_factory) as session:
                return await events_repo.current_version(
                    session,
                    tenant_id=boundary.tenant_id,
                    aggregate_id=aggregate_id,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"version lookup failed for aggregate {aggregate_id}") from exc

    async def load(
        self,
        boundary: IsolationBoundary,
        aggregate_id: str,
        *,
        from_sequence: int = 1,
    ) -> AsyncIterator[DomainEvent]:
        """Yield events in ascending order starting at ``from_sequence``.

        Pages are read in short transactions so a slow consumer never holds a
        lock. Raises ``AggregateNotFoundError`` for an unknown aggregate and
        ``EventStreamCorruptError`` on a sequence gap or duplicate.
        """
        if from_sequence < 1:
            raise ValueError("from_sequence must be >= 1")
        expected = from_sequence
        while True:
            try:
                async with read_only_session(self._session_factory) as session:
                    rows = await events_repo.fetch_page(
                        session,
                        tenant_id=boundary.tenant_id,
                        aggregate_id=aggregate_id,
                        from_sequence=expected,
                        limit=self._page_size,
                    )
            except SQLAlchemyError as exc:
                raise StorageUnavailableError(f"event load failed for aggregate {aggregate_id}") from exc
            if not rows:
                if expected == from_sequence and await self.current_version(boundary, aggregate_id) == 0:
                    raise AggregateNotFoundError(boundary.tenant_id, aggregate_id)
                return
            for row in rows:
                if row.sequence_number != expected:
                    increment_counter("event_store_corrupt_streams_total")
                    logger.error(
                        "event_stream_corrupt tenant_id=%s aggregate_id=%s expected=%s found=%s",
                        boundary.tenant_id,
                        aggregate_id,
                        expected,
                        row.sequence_number,
                    )
                    raise EventStreamCorruptError(
                        f"aggregate {aggregate_id} expected sequence {expected} found {row.sequence_number}"
                    )
                expected += 1
                yield _to_domain(row)
            if len(rows) < self._page_size:
                return

    async def load_all(
        self,
        boundary: IsolationBoundary,
        aggregate_id: str,
        *,
        from_sequence: int = 1,
    ) -> list[DomainEvent]:
        return [event async for event in self.load(boundary, aggregate_id, from_sequence=from_sequence)]

    async def load_by_type(
        self,
        boundary: IsolationBoundary,
        event_types: Sequence[str],
        *,
        occurred_from: datetime | None = None,
        occurred_to: datetime | None = None,
        limit: int = 500,
    ) -> list[DomainEvent]:
        # Read-only cross-aggregate query for analytics consumers; holds no per-aggregate lock.
        try:
            async with read_only_session(self._session_factory) as session:
                rows = await events_repo.fetch_by_type(
                    session,
                    tenant_id=boundary.tenant_id,
                    event_types=event_types,
                    occurred_from=occurred_from,
                    occurred_to=occurred_to,
                    limit=limit,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("event query by type failed") from exc
        return [_to_domain(row) for row in rows]

    async def statistics(self, boundary: IsolationBoundary) -> EventStatistics:
        try:
            async with read_only_session(self._session_factory) as session:
                by_type = await events_repo.counts_by_type(
                    session,
                    tenant_id=boundary.tenant_id,
                )
                unique_aggregates, first_at, last_at = await events_repo.stream_summary(
                    session,
                    tenant_id=boundary.tenant_id,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("event statistics query failed") from exc
        return EventStatistics(
            total_events=sum(by_type.values()),
            unique_aggregates=unique_aggregates,
            events_by_type=by_type,
            first_event_at=first_at,
            last_event_at=last_at,
        )
