from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from masterdata.core.config import get_settings
from masterdata.persistence.db import get_session_factory
from masterdata.services.audit import AuditLogger
from masterdata.services.authz.rbac import AccessControlEngine
from masterdata.services.crypto.kms.base import KmsProvider
from masterdata.services.crypto.service import FieldCryptoService, TenantKeyRing
from masterdata.services.customer_access import CustomerAccessService
from masterdata.services.customers import CustomerRepository
from masterdata.services.event_store import EventStore
from masterdata.services.tenants import TenantRegistry


@dataclass(frozen=True)
class CustomerStore:
    audit: AuditLogger
    tenants: TenantRegistry
    key_ring: TenantKeyRing
    crypto: FieldCryptoService
    events: EventStore
    customers: CustomerRepository
    access: AccessControlEngine
    pipeline: CustomerAccessService


def build_store(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    kms: KmsProvider | None = None,
) -> CustomerStore:
    # Wire every component against one session factory; settings supply the defaults.
    settings = get_settings()
    factory = session_factory or get_session_factory()
    audit = AuditLogger(factory)
    tenants = TenantRegistry(factory, audit=audit)
    key_ring = TenantKeyRing(factory, kms=kms, audit=audit)
    crypto = FieldCryptoService(key_ring)
    events = EventStore(factory)
    customers = CustomerRepository(
        factory,
        tenants=tenants,
        event_store=events,
        crypto=crypto,
        audit=audit,
    )
    access = AccessControlEngine(
        factory,
        tenants=tenants,
        audit=audit,
        fail_closed_on_grant=settings.audit_fail_closed_on_grant,
    )
    return CustomerStore(
        audit=audit,
        tenants=tenants,
        key_ring=key_ring,
        crypto=crypto,
        events=events,
        customers=customers,
        access=access,
        pipeline=CustomerAccessService(access=access, repository=customers),
    )
