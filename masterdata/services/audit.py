from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from masterdata.core.config import get_settings
from masterdata.core.errors import AuditBufferFullError, AuditSinkUnavailableError, StorageUnavailableError
from masterdata.domain.models import AuditEntry
from masterdata.persistence.db import read_only_session
from masterdata.persistence.repos import audit as audit_repo
from masterdata.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

AUDIT_CATEGORY_ACCESS = "access"
AUDIT_CATEGORY_MUTATION = "mutation"
AUDIT_CATEGORY_SECURITY = "security"
AUDIT_CATEGORY_ADMIN = "admin"

OUTCOME_GRANTED = "granted"
OUTCOME_DENIED = "denied"
OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_CONFLICT = "conflict"

_SENSITIVE_KEY_PATTERNS = [
    "api_key",
    "authorization",
    "token",
    "secret",
    "password",
    "plaintext",
    "ciphertext",
    "master_key",
    "value",
]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


@dataclass(frozen=True)
class AuditRecord:
    entry_id: str
    occurred_at: datetime
    tenant_id: str | None
    category: str
    actor_type: str
    actor_id: str | None
    resource_type: str | None
    resource_id: str | None
    action: str
    outcome: str
    granted: bool | None
    policy_decision: dict[str, Any] | None
    details: dict[str, Any]
    request_id: str | None
    ip_address: str | None
    session_id: str | None
    retention_until: datetime | None

    @property
    def security_relevant(self) -> bool:
        return (
            self.category == AUDIT_CATEGORY_SECURITY
            or self.granted is False
            or self.outcome == OUTCOME_DENIED
        )

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["policy_decision_json"] = row.pop("policy_decision")
        row["details_json"] = row.pop("details")
        return row


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogger:
    """Durable audit trail with a bounded local buffer for security entries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retention_days: int | None = None,
        security_retention_days: int | None = None,
        buffer_max_entries: int | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._retention_days = retention_days or settings.audit_retention_days
        self._security_retention_days = security_retention_days or settings.audit_security_retention_days
        self._buffer_max_entries = buffer_max_entries or settings.audit_buffer_max_entries
        self._clock = clock
        self._buffer: Deque[AuditRecord] = deque()
        self._flush_lock = asyncio.Lock()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def build_record(
        self,
        *,
        category: str,
        tenant_id: str | None,
        actor_id: str | None,
        action: str,
        outcome: str,
        actor_type: str = "user",
        resource_type: str | None = None,
        resource_id: str | None = None,
        granted: bool | None = None,
        policy_decision: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
        ip_address: str | None = None,
        session_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> AuditRecord:
        occurred = occurred_at or self._clock()
        security = category == AUDIT_CATEGORY_SECURITY or granted is False or outcome == OUTCOME_DENIED
        days = self._security_retention_days if security else self._retention_days
        return AuditRecord(
            entry_id=str(uuid4()),
            occurred_at=occurred,
            tenant_id=tenant_id,
            category=category,
            actor_type=actor_type,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            outcome=outcome,
            granted=granted,
            policy_decision=sanitize_metadata(policy_decision) if policy_decision is not None else None,
            details=sanitize_metadata(details or {}),
            request_id=request_id,
            ip_address=ip_address,
            session_id=session_id,
            retention_until=occurred + timedelta(days=days),
        )

    async def record(self, **fields: Any) -> AuditRecord:
        # Build, then persist one entry; buffered entries are flushed first to keep order.
        entry = self.build_record(**fields)
        await self.write(entry)
        return entry

    async def write(self, entry: AuditRecord) -> None:
        try:
            await self.flush()
            await self._persist([entry])
        except AuditSinkUnavailableError as exc:
            increment_counter("audit_sink_failures_total")
            if not entry.security_relevant:
                logger.error(
                    "audit_write_failed action=%s tenant_id=%s",
                    entry.action,
                    entry.tenant_id,
                    exc_info=exc,
                )
                raise
            self._buffer_entry(entry)
            logger.warning(
                "audit_write_buffered action=%s tenant_id=%s pending=%s",
                entry.action,
                entry.tenant_id,
                len(self._buffer),
            )
            raise AuditSinkUnavailableError("audit sink unavailable; entry buffered", buffered=True) from exc

    async def stage(self, session: AsyncSession, entry: AuditRecord) -> None:
        # Insert into the caller's transaction; the entry commits or rolls back with it.
        await audit_repo.insert_entries(session, [entry.to_row()])

    async def flush(self) -> int:
        # Drain buffered entries in order; at-least-once delivery may repeat an entry_id.
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch = list(self._buffer)
            await self._persist(batch)
            for _ in batch:
                self._buffer.popleft()
            increment_counter("audit_buffer_flushed_total", len(batch))
            logger.info("audit_buffer_flushed count=%s", len(batch))
            return len(batch)

    def _buffer_entry(self, entry: AuditRecord) -> None:
        if len(self._buffer) >= self._buffer_max_entries:
            increment_counter("audit_buffer_full_total")
            logger.error(
                "audit_buffer_full action=%s tenant_id=%s capacity=%s",
                entry.action,
                entry.tenant_id,
                self._buffer_max_entries,
            )
            raise AuditBufferFullError("audit buffer is full; entry was not accepted")
        self._buffer.append(entry)

    async def _persist(self, entries: list[AuditRecord]) -> None:
        try:
            async with self._session_factory() as session:
                await audit_repo.insert_entries(session, (entry.to_row() for entry in entries))
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise AuditSinkUnavailableError("audit sink unavailable") from exc

    async def list_entries(
        self,
        *,
        tenant_id: str,
        occurred_from: datetime | None = None,
        occurred_to: datetime | None = None,
        actor_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        outcome: str | None = None,
        category: str | None = None,
        granted: bool | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> list[AuditEntry]:
        try:
            async with read_only_session(self._session_factory) as session:
                return await audit_repo.list_entries(
                    session,
                    tenant_id=tenant_id,
                    category=category,
                    actor_id=actor_id,
                    outcome=outcome,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    granted=granted,
                    occurred_from=occurred_from,
                    occurred_to=occurred_to,
                    offset=offset,
                    limit=limit,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("audit entries could not be listed") from exc

    async def purge_expired(self, *, now: datetime | None = None) -> int:
        cutoff = now or self._clock()
        try:
            async with self._session_factory() as session:
                deleted = await audit_repo.delete_expired(session, now=cutoff)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("audit purge failed") from exc
        logger.info("audit_entries_purged count=%s cutoff=%s", deleted, cutoff.isoformat())
        return deleted
