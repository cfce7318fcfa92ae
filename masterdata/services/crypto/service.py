from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from masterdata.core.config import get_settings
from masterdata.core.errors import (
    AuditSinkUnavailableError,
    FieldCryptoError,
    KeyUnavailableError,
    StorageUnavailableError,
)
from masterdata.domain.models import TenantKey
from masterdata.persistence.db import read_only_session
from masterdata.persistence.guards import tenant_predicate
from masterdata.persistence.repos import envelopes as envelopes_repo
from masterdata.services.audit import AUDIT_CATEGORY_SECURITY, OUTCOME_SUCCESS, AuditLogger
from masterdata.services.crypto.envelope import (
    ALGORITHM_NONE,
    CLASSIFICATION_POLICY,
    Classification,
    FieldContext,
    FieldEnvelope,
    open_field,
    resolve_classification,
    seal_field,
)
from masterdata.services.crypto.kms import get_kms_provider, unwrap_data_key
from masterdata.services.crypto.kms.base import KmsProvider
from masterdata.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

KEY_STATUS_ACTIVE = "active"
KEY_STATUS_RETIRING = "retiring"
KEY_STATUS_RETIRED = "retired"
KEY_STATUS_REVOKED = "revoked"
# Retired keys stay readable so old envelopes keep decrypting after rotation.
_READABLE_KEY_STATUSES = {KEY_STATUS_ACTIVE, KEY_STATUS_RETIRING, KEY_STATUS_RETIRED}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _audit_key_event(
    audit: AuditLogger | None,
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    key: TenantKey,
    details: dict[str, Any],
) -> None:
    if audit is None:
        return
    try:
        await audit.record(
            category=AUDIT_CATEGORY_SECURITY,
            tenant_id=tenant_id,
            actor_id=actor_id,
            actor_type="user" if actor_id else "system",
            resource_type="tenant_key",
            resource_id=key.key_ref,
            action=action,
            outcome=OUTCOME_SUCCESS,
            details={"key_version": key.key_version, **details},
        )
    except AuditSinkUnavailableError as exc:
        # Key lifecycle audit is best-effort; buffered entries are retried on the next write.
        logger.warning("crypto_key_audit_failed action=%s tenant_id=%s", action, tenant_id, exc_info=exc)


async def get_key(session: AsyncSession, *, tenant_id: str, key_ref: str) -> TenantKey | None:
    result = await session.execute(
        select(TenantKey).where(tenant_predicate(TenantKey, tenant_id), TenantKey.key_ref == key_ref)
    )
    return result.scalar_one_or_none()


async def _select_active_key(session: AsyncSession, tenant_id: str) -> TenantKey | None:
    query = (
        select(TenantKey)
        .where(tenant_predicate(TenantKey, tenant_id), TenantKey.status == KEY_STATUS_ACTIVE)
        .order_by(TenantKey.key_version.desc())
        .limit(1)
    )
    return (await session.execute(query)).scalar_one_or_none()


async def get_active_key(
    session: AsyncSession,
    tenant_id: str,
    *,
    kms: KmsProvider | None = None,
    audit: AuditLogger | None = None,
) -> TenantKey:
    active = await _select_active_key(session, tenant_id)
    if active is not None:
        return active

    # Mint the next version lazily when the tenant has no active key (first use or after revocation).
    settings = get_settings()
    kms = kms or get_kms_provider()
    key_alias = settings.crypto_default_key_alias
    latest = await session.scalar(select(func.max(TenantKey.key_version)).where(tenant_predicate(TenantKey, tenant_id)))
    key_version = int(latest or 0) + 1
    new_key = TenantKey(
        tenant_id=tenant_id,
        key_alias=key_alias,
        key_version=key_version,
        provider=kms.provider,
        key_ref=kms.build_key_ref(tenant_id=tenant_id, key_alias=key_alias, key_version=key_version),
        status=KEY_STATUS_ACTIVE,
        activated_at=_utc_now(),
    )
    session.add(new_key)
    try:
        await session.commit()
    except IntegrityError:
        # Another request minted the key concurrently; use theirs.
        await session.rollback()
        active = await _select_active_key(session, tenant_id)
        if active is None:
            raise KeyUnavailableError(f"no active key for tenant {tenant_id}")
        return active
    logger.info("crypto_key_created tenant_id=%s key_ref=%s", tenant_id, new_key.key_ref)
    await _audit_key_event(
        audit,
        tenant_id=tenant_id,
        actor_id=None,
        action="crypto.key.created",
        key=new_key,
        details={"key_alias": key_alias},
    )
    return new_key


async def rotate_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None,
    reason: str | None = None,
    kms: KmsProvider | None = None,
    audit: AuditLogger | None = None,
) -> TenantKey:
    kms = kms or get_kms_provider()
    active = await get_active_key(session, tenant_id, kms=kms, audit=audit)
    next_version = active.key_version + 1
    active.status = KEY_STATUS_RETIRING
    active.retired_at = _utc_now()
    new_key = TenantKey(
        tenant_id=tenant_id,
        key_alias=active.key_alias,
        key_version=next_version,
        provider=kms.provider,
        key_ref=kms.build_key_ref(tenant_id=tenant_id, key_alias=active.key_alias, key_version=next_version),
        status=KEY_STATUS_ACTIVE,
        activated_at=_utc_now(),
    )
    session.add(new_key)
    await session.commit()
    increment_counter("crypto_key_rotations_total")
    logger.info(
        "crypto_key_rotated tenant_id=%s from_key=%s to_key=%s",
        tenant_id,
        active.key_ref,
        new_key.key_ref,
    )
    await _audit_key_event(
        audit,
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="crypto.key.rotated",
        key=new_key,
        details={"from_key_ref": active.key_ref, "reason": reason},
    )
    return new_key


async def revoke_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    key_ref: str,
    actor_id: str | None,
    reason: str | None = None,
    audit: AuditLogger | None = None,
) -> TenantKey:
    key = await get_key(session, tenant_id=tenant_id, key_ref=key_ref)
    if key is None:
        raise KeyUnavailableError(f"key {key_ref} not found for tenant {tenant_id}")
    affected = await envelopes_repo.count_fields_for_key(session, tenant_id=tenant_id, key_id=key_ref)
    key.status = KEY_STATUS_REVOKED
    key.retired_at = _utc_now()
    await session.commit()
    increment_counter("crypto_key_revocations_total")
    logger.warning(
        "crypto_key_revoked tenant_id=%s key_ref=%s affected_fields=%s",
        tenant_id,
        key_ref,
        affected,
    )
    await _audit_key_event(
        audit,
        tenant_id=tenant_id,
        actor_id=actor_id,
        action="crypto.key.revoked",
        key=key,
        details={"reason": reason, "affected_fields": affected},
    )
    return key


class KeyRing(Protocol):
    async def active_key(self, tenant_id: str) -> tuple[str, bytes]:
        ...

    async def resolve_key(self, tenant_id: str, key_id: str) -> bytes:
        ...


class TenantKeyRing:
    """Resolves tenant key material from the tenant_keys table through the KMS provider."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        kms: KmsProvider | None = None,
        audit: AuditLogger | None = None,
        cache_ttl_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._kms = kms or get_kms_provider()
        self._audit = audit
        self._cache_ttl_s = cache_ttl_s if cache_ttl_s is not None else get_settings().tenant_cache_ttl_s
        self._clock = clock
        self._active: dict[str, tuple[str, bytes, float]] = {}
        self._resolved: dict[tuple[str, str], tuple[bytes, float]] = {}

    def invalidate(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._active.clear()
            self._resolved.clear()
            return
        self._active.pop(tenant_id, None)
        for cache_key in [item for item in self._resolved if item[0] == tenant_id]:
            self._resolved.pop(cache_key, None)

    def _material(self, key: TenantKey) -> bytes:
        return unwrap_data_key(self._kms, tenant_id=key.tenant_id, provider=key.provider, key_ref=key.key_ref)

    async def active_key(self, tenant_id: str) -> tuple[str, bytes]:
        now = self._clock()
        cached = self._active.get(tenant_id)
        if cached is not None and cached[2] > now:
            return cached[0], cached[1]
        try:
            async with self._session_factory() as session:
                key = await get_active_key(session, tenant_id, kms=self._kms, audit=self._audit)
        except SQLAlchemyError as exc:
            raise KeyUnavailableError(f"active key lookup failed for tenant {tenant_id}") from exc
        material = self._material(key)
        self._active[tenant_id] = (key.key_ref, material, now + self._cache_ttl_s)
        return key.key_ref, material

    async def resolve_key(self, tenant_id: str, key_id: str) -> bytes:
        now = self._clock()
        cached = self._resolved.get((tenant_id, key_id))
        if cached is not None and cached[1] > now:
            return cached[0]
        try:
            async with read_only_session(self._session_factory) as session:
                key = await get_key(session, tenant_id=tenant_id, key_ref=key_id)
        except SQLAlchemyError as exc:
            raise KeyUnavailableError(f"key lookup failed for {key_id}") from exc
        if key is None or key.status not in _READABLE_KEY_STATUSES:
            increment_counter("crypto_key_unavailable_total")
            raise KeyUnavailableError(f"key {key_id} is not available")
        material = self._material(key)
        self._resolved[(tenant_id, key_id)] = (material, now + self._cache_ttl_s)
        return material

    async def rotate(self, tenant_id: str, *, actor_id: str | None, reason: str | None = None) -> TenantKey:
        try:
            async with self._session_factory() as session:
                key = await rotate_key(
                    session,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    reason=reason,
                    kms=self._kms,
                    audit=self._audit,
                )
        except IntegrityError as exc:
            raise KeyUnavailableError(f"key rotation for tenant {tenant_id} raced another rotation") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"key rotation failed for tenant {tenant_id}") from exc
        self.invalidate(tenant_id)
        return key

    async def revoke(
        self,
        tenant_id: str,
        key_id: str,
        *,
        actor_id: str | None,
        reason: str | None = None,
    ) -> TenantKey:
        try:
            async with self._session_factory() as session:
                key = await revoke_key(
                    session,
                    tenant_id=tenant_id,
                    key_ref=key_id,
                    actor_id=actor_id,
                    reason=reason,
                    audit=self._audit,
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"key revocation failed for {key_id}") from exc
        self.invalidate(tenant_id)
        return key


class FieldCryptoService:
    """Field-level encrypt/decrypt bound to a tenant/table/column/record context."""

    def __init__(self, key_ring: KeyRing) -> None:
        self._key_ring = key_ring

    async def encrypt(
        self,
        value: Any,
        classification: Classification | str,
        context: FieldContext,
    ) -> FieldEnvelope:
        level = resolve_classification(classification)
        key_id: str | None = None
        key: bytes | None = None
        if CLASSIFICATION_POLICY[level].algorithm != ALGORITHM_NONE:
            key_id, key = await self._key_ring.active_key(context.tenant_id)
        try:
            envelope = seal_field(value, classification=level, context=context, key_id=key_id, key=key)
        except FieldCryptoError:
            increment_counter("crypto_failures_total")
            raise
        increment_counter("crypto_encrypt_ops_total")
        return envelope

    async def decrypt(self, envelope: FieldEnvelope, context: FieldContext) -> Any:
        key: bytes | None = None
        if envelope.encrypted:
            if not envelope.key_id:
                raise KeyUnavailableError("envelope does not reference a key", field=context.column)
            try:
                key = await self._key_ring.resolve_key(context.tenant_id, envelope.key_id)
            except KeyUnavailableError as exc:
                raise KeyUnavailableError(str(exc), field=context.column) from exc
        try:
            value = open_field(envelope, context=context, key=key)
        except FieldCryptoError:
            increment_counter("crypto_failures_total")
            logger.warning(
                "field_decrypt_failed tenant_id=%s table=%s column=%s record_id=%s",
                context.tenant_id,
                context.table,
                context.column,
                context.record_id,
            )
            raise
        increment_counter("crypto_decrypt_ops_total")
        return value
