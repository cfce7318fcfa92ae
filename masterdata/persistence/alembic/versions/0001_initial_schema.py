"""initial customer store schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "schema_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("version", sa.String(), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("partition_key", sa.String(), nullable=False, unique=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tenants_status", "tenants", ["status"])

    # Append-only event log; the unique sequence slot serializes writers per aggregate.
    op.create_table(
        "customer_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id", "aggregate_id", "sequence_number", name="uq_customer_events_sequence"
        ),
    )
    op.create_index("ix_customer_events_tenant_id", "customer_events", ["tenant_id"])
    op.create_index("ix_customer_events_aggregate_id", "customer_events", ["aggregate_id"])
    op.create_index(
        "ix_customer_events_tenant_type_occurred",
        "customer_events",
        ["tenant_id", "event_type", "occurred_at"],
    )

    op.create_table(
        "customer_snapshots",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("aggregate_id", sa.String(), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("state_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "customer_numbers",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("customer_number", sa.String(), primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_customer_numbers_customer_id", "customer_numbers", ["customer_id"])

    op.create_table(
        "tenant_keys",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("key_alias", sa.String(), nullable=False),
        sa.Column("key_version", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("key_ref", sa.String(), nullable=False, unique=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "key_alias", "key_version", name="uq_tenant_keys_version"),
    )
    op.create_index("ix_tenant_keys_tenant_id", "tenant_keys", ["tenant_id"])
    op.create_index("ix_tenant_keys_status", "tenant_keys", ["status"])
    op.create_index(
        "ix_tenant_keys_tenant_status_version",
        "tenant_keys",
        ["tenant_id", "status", sa.text("key_version DESC")],
    )

    op.create_table(
        "encrypted_fields",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("column_name", sa.String(), nullable=False),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("classification", sa.String(), nullable=False),
        sa.Column("ciphertext", sa.Text(), nullable=False),
        sa.Column("nonce", sa.Text(), nullable=False),
        sa.Column("algorithm", sa.String(), nullable=False),
        sa.Column("key_id", sa.String(), nullable=False),
        sa.Column("integrity_hash", sa.String(), nullable=False),
        sa.Column("encrypted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id",
            "table_name",
            "column_name",
            "record_id",
            name="uq_encrypted_fields_occurrence",
        ),
    )
    op.create_index("ix_encrypted_fields_tenant_id", "encrypted_fields", ["tenant_id"])
    op.create_index("ix_encrypted_fields_table_record", "encrypted_fields", ["table_name", "record_id"])

    op.create_table(
        "roles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
    )
    op.create_index("ix_roles_tenant_id", "roles", ["tenant_id"])

    op.create_table(
        "role_permissions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("role_id", sa.String(), sa.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False, server_default="tenant"),
        sa.Column("effect", sa.String(), nullable=False, server_default="allow"),
        sa.Column("resource_ids_json", postgresql.JSONB(), nullable=True),
        sa.Column("allowed_fields_json", postgresql.JSONB(), nullable=True),
        sa.Column("time_restriction_json", postgresql.JSONB(), nullable=True),
        sa.Column("condition_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_role_permissions_role_id", "role_permissions", ["role_id"])
    op.create_index(
        "ix_role_permissions_role_resource_action",
        "role_permissions",
        ["role_id", "resource_type", "action"],
    )

    op.create_table(
        "role_hierarchy",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column(
            "parent_role_id", sa.String(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column(
            "child_role_id", sa.String(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("parent_role_id <> child_role_id", name="ck_role_hierarchy_not_self"),
    )

    op.create_table(
        "role_hierarchy_revisions",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "role_assignments",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("actor_id", sa.String(), primary_key=True),
        sa.Column("role_id", sa.String(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("assigned_by", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )

    # Write-once audit trail; entry_id repeats only on buffered redelivery.
    op.create_table(
        "audit_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("granted", sa.Boolean(), nullable=True),
        sa.Column("policy_decision_json", postgresql.JSONB(), nullable=True),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("retention_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_entries_entry_id", "audit_entries", ["entry_id"])
    op.create_index("ix_audit_entries_occurred_at", "audit_entries", ["occurred_at"])
    op.create_index("ix_audit_entries_category", "audit_entries", ["category"])
    op.create_index(
        "ix_audit_entries_tenant_occurred",
        "audit_entries",
        ["tenant_id", sa.text("occurred_at DESC")],
    )
    op.create_index(
        "ix_audit_entries_actor_occurred",
        "audit_entries",
        ["actor_id", sa.text("occurred_at DESC")],
    )
    op.create_index("ix_audit_entries_retention_until", "audit_entries", ["retention_until"])

    op.execute(
        sa.text("INSERT INTO schema_versions (id, version) VALUES (1, :version)").bindparams(
            version=revision
        )
    )


def downgrade() -> None:
    op.drop_index("ix_audit_entries_retention_until", table_name="audit_entries")
    op.drop_index("ix_audit_entries_actor_occurred", table_name="audit_entries")
    op.drop_index("ix_audit_entries_tenant_occurred", table_name="audit_entries")
    op.drop_index("ix_audit_entries_category", table_name="audit_entries")
    op.drop_index("ix_audit_entries_occurred_at", table_name="audit_entries")
    op.drop_index("ix_audit_entries_entry_id", table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_table("role_assignments")
    op.drop_table("role_hierarchy_revisions")
    op.drop_table("role_hierarchy")
    op.drop_index("ix_role_permissions_role_resource_action", table_name="role_permissions")
    op.drop_index("ix_role_permissions_role_id", table_name="role_permissions")
    op.drop_table("role_permissions")
    op.drop_index("ix_roles_tenant_id", table_name="roles")
    op.drop_table("roles")
    op.drop_index("ix_encrypted_fields_table_record", table_name="encrypted_fields")
    op.drop_index("ix_encrypted_fields_tenant_id", table_name="encrypted_fields")
    op.drop_table("encrypted_fields")
    op.drop_index("ix_tenant_keys_tenant_status_version", table_name="tenant_keys")
    op.drop_index("ix_tenant_keys_status", table_name="tenant_keys")
    op.drop_index("ix_tenant_keys_tenant_id", table_name="tenant_keys")
    op.drop_table("tenant_keys")
    op.drop_index("ix_customer_numbers_customer_id", table_name="customer_numbers")
    op.drop_table("customer_numbers")
    op.drop_table("customer_snapshots")
    op.drop_index("ix_customer_events_tenant_type_occurred", table_name="customer_events")
    op.drop_index("ix_customer_events_aggregate_id", table_name="customer_events")
    op.drop_index("ix_customer_events_tenant_id", table_name="customer_events")
    op.drop_table("customer_events")
    op.drop_index("ix_tenants_status", table_name="tenants")
    op.drop_table("tenants")
    op.drop_table("schema_versions")
