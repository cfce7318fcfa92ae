from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from masterdata.core.config import get_settings
from masterdata.core.errors import (
    AuditSinkUnavailableError,
    CustomerValidationError,
    StorageUnavailableError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
    TenantUnavailableError,
)
from masterdata.domain.models import Tenant
from masterdata.persistence.db import read_only_session
from masterdata.persistence.repos import tenants as tenants_repo
from masterdata.services.audit import AUDIT_CATEGORY_ADMIN, OUTCOME_SUCCESS, AuditLogger


logger = logging.getLogger(__name__)

TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_SUSPENDED = "suspended"
TENANT_STATUS_DELETED = "deleted"
TENANT_STATUSES = {TENANT_STATUS_ACTIVE, TENANT_STATUS_SUSPENDED, TENANT_STATUS_DELETED}


@dataclass(frozen=True)
class IsolationBoundary:
    """Explicit tenant handle threaded through every store call; there is no ambient tenant."""

    tenant_id: str
    partition_key: str


def _boundary_from_row(tenant: Tenant) -> IsolationBoundary:
    return IsolationBoundary(tenant_id=tenant.id, partition_key=tenant.partition_key)


class TenantRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        audit: AuditLogger | None = None,
        cache_ttl_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._cache_ttl_s = cache_ttl_s if cache_ttl_s is not None else get_settings().tenant_cache_ttl_s
        self._clock = clock
        self._cache: dict[str, tuple[IsolationBoundary, str, float]] = {}

    def invalidate(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._cache.clear()
        else:
            self._cache.pop(tenant_id, None)

    async def resolve(self, tenant_id: str) -> IsolationBoundary:
        # Every request path starts here; nothing downstream runs for an unavailable tenant.
        cached = self._cache.get(tenant_id)
        if cached is not None and cached[2] > self._clock():
            boundary, status, _ = cached
        else:
            try:
                async with read_only_session(self._session_factory) as session:
                    tenant = await tenants_repo.get_tenant(session, tenant_id)
            except SQLAlchemyError as exc:
                raise StorageUnavailableError(f"tenant lookup failed for {tenant_id}") from exc
            if tenant is None:
                raise TenantNotFoundError(tenant_id)
            boundary, status = _boundary_from_row(tenant), tenant.status
            self._cache[tenant_id] = (boundary, status, self._clock() + self._cache_ttl_s)
        if status != TENANT_STATUS_ACTIVE:
            raise TenantUnavailableError(tenant_id, status)
        return boundary

    async def register(
        self,
        tenant_id: str,
        name: str,
        *,
        actor_id: str | None = None,
    ) -> IsolationBoundary:
        if not tenant_id:
            raise CustomerValidationError("tenant_id", "must not be empty")
        if not name or not name.strip():
            raise CustomerValidationError("name", "must not be empty")
        try:
            async with self._session_factory() as session:
                tenant = await tenants_repo.insert_tenant(
                    session,
                    tenant_id=tenant_id,
                    name=name,
                    partition_key=tenant_id,
                    status=TENANT_STATUS_ACTIVE,
                )
                await session.commit()
        except IntegrityError as exc:
            raise TenantAlreadyExistsError(f"tenant {tenant_id} already exists") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"tenant {tenant_id} could not be registered") from exc
        boundary = _boundary_from_row(tenant)
        logger.info("tenant_registered tenant_id=%s partition_key=%s", tenant_id, boundary.partition_key)
        await self._audit_platform_op(
            tenant_id,
            actor_id=actor_id,
            action="tenant.registered",
            details={"name": name, "partition_key": boundary.partition_key},
        )
        return boundary

    async def set_status(
        self,
        tenant_id: str,
        status: str,
        *,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> str:
        if status not in TENANT_STATUSES:
            raise CustomerValidationError("status", f"unsupported tenant status {status}")
        try:
            async with self._session_factory() as session:
                tenant = await tenants_repo.get_tenant(session, tenant_id)
                if tenant is None:
                    raise TenantNotFoundError(tenant_id)
                previous = tenant.status
                await tenants_repo.update_status(
                    session,
                    tenant,
                    status=status,
                    changed_at=datetime.now(timezone.utc),
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"tenant {tenant_id} status update failed") from exc
        self.invalidate(tenant_id)
        logger.info("tenant_status_changed tenant_id=%s from=%s to=%s", tenant_id, previous, status)
        await self._audit_platform_op(
            tenant_id,
            actor_id=actor_id,
            action="tenant.status_changed",
            details={"from": previous, "to": status, "reason": reason},
        )
        return status

    async def list_tenants(self, *, status: str | None = None) -> list[IsolationBoundary]:
        try:
            async with read_only_session(self._session_factory) as session:
                rows = await tenants_repo.list_tenants(session, status=status)
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("tenant listing failed") from exc
        return [_boundary_from_row(row) for row in rows]

    async def _audit_platform_op(
        self,
        tenant_id: str,
        *,
        actor_id: str | None,
        action: str,
        details: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record(
                category=AUDIT_CATEGORY_ADMIN,
                tenant_id=tenant_id,
                actor_id=actor_id,
                actor_type="platform",
                resource_type="tenant",
                resource_id=tenant_id,
                action=action,
                outcome=OUTCOME_SUCCESS,
                details=details,
            )
        except AuditSinkUnavailableError as exc:
            logger.warning("tenant_audit_failed action=%s tenant_id=%s", action, tenant_id, exc_info=exc)
