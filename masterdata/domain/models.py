from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")


class UtcDateTime(TypeDecorator):
    """Timezone-aware datetimes that always come back in UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class SchemaVersion(Base):
    __tablename__ = "schema_versions"

    # Single row recording the authoritative schema revision.
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[str] = mapped_column(String)
    applied_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class Tenant(Base):
    __tablename__ = "tenants"

    # Platform-owned tenant registry; only status changes after creation.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    partition_key: Mapped[str] = mapped_column(String, unique=True)
    status: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    status_changed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class CustomerEvent(Base):
    __tablename__ = "customer_events"
    __table_args__ = (
        # The unique sequence slot is the per-aggregate serialization point.
        UniqueConstraint("tenant_id", "aggregate_id", "sequence_number", name="uq_customer_events_sequence"),
        Index("ix_customer_events_tenant_type_occurred", "tenant_id", "event_type", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String, unique=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer)
    event_type: Mapped[str] = mapped_column(String)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime)
    recorded_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class CustomerSnapshot(Base):
    __tablename__ = "customer_snapshots"

    # Replay cache only; never authoritative over the event stream.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    aggregate_id: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer)
    state_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class CustomerNumber(Base):
    __tablename__ = "customer_numbers"

    # Claims customer numbers so they stay unique per tenant.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    customer_number: Mapped[str] = mapped_column(String, primary_key=True)
    customer_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class TenantKey(Base):
    __tablename__ = "tenant_keys"
    __table_args__ = (
        Index("ix_tenant_keys_tenant_status_version", "tenant_id", "status", text("key_version DESC")),
        UniqueConstraint("tenant_id", "key_alias", "key_version", name="uq_tenant_keys_version"),
    )

    # Track tenant-scoped key versions referenced by field envelopes.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    key_alias: Mapped[str] = mapped_column(String)
    key_version: Mapped[int] = mapped_column(Integer)
    provider: Mapped[str] = mapped_column(String)
    key_ref: Mapped[str] = mapped_column(String, unique=True)
    status: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    activated_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    retired_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class EncryptedField(Base):
    __tablename__ = "encrypted_fields"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "table_name",
            "column_name",
            "record_id",
            name="uq_encrypted_fields_occurrence",
        ),
        Index("ix_encrypted_fields_table_record", "table_name", "record_id"),
    )

    # One row per classified attribute occurrence; superseded, never updated.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    table_name: Mapped[str] = mapped_column(String)
    column_name: Mapped[str] = mapped_column(String)
    record_id: Mapped[str] = mapped_column(String)
    classification: Mapped[str] = mapped_column(String)
    ciphertext: Mapped[str] = mapped_column(Text)
    nonce: Mapped[str] = mapped_column(Text)
    algorithm: Mapped[str] = mapped_column(String)
    key_id: Mapped[str] = mapped_column(String)
    integrity_hash: Mapped[str] = mapped_column(String)
    encrypted_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
    )

    # Null tenant_id marks a platform role shared by every tenant.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Higher priority wins when matched permissions conflict.
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (
        Index("ix_role_permissions_role_resource_action", "role_id", "resource_type", "action"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), index=True)
    resource_type: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    # tenant | record | own
    scope: Mapped[str] = mapped_column(String, default="tenant", nullable=False)
    effect: Mapped[str] = mapped_column(String, default="allow", nullable=False)
    resource_ids_json: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    allowed_fields_json: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    time_restriction_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    condition_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class RoleHierarchyEdge(Base):
    __tablename__ = "role_hierarchy"
    __table_args__ = (
        CheckConstraint("parent_role_id <> child_role_id", name="ck_role_hierarchy_not_self"),
    )

    # Parent roles inherit every grant of their children.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    parent_role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    child_role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


class RoleHierarchyRevision(Base):
    __tablename__ = "role_hierarchy_revisions"

    # Compare-and-commit guard for hierarchy mutations.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class RoleAssignment(Base):
    __tablename__ = "role_assignments"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    actor_id: Mapped[str] = mapped_column(String, primary_key=True)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class AuditEntry(Base):
    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("ix_audit_entries_tenant_occurred", "tenant_id", text("occurred_at DESC")),
        Index("ix_audit_entries_actor_occurred", "actor_id", text("occurred_at DESC")),
        Index("ix_audit_entries_retention_until", "retention_until"),
    )

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    # Stable per-attempt id; buffered redelivery may write it more than once.
    entry_id: Mapped[str] = mapped_column(String, index=True)
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    # Allow null tenant_id for platform events.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str] = mapped_column(String, index=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    granted: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    policy_decision_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    retention_until: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
