"""clone governance

Revision ID: 0001_clone_governance
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_clone_governance"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "clones",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("qualified_name", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("environment", sa.String(), nullable=False),
        sa.Column("source_database", sa.String(), nullable=False),
        sa.Column("source_schema", sa.String(), nullable=True),
        sa.Column("source_key", sa.String(), nullable=False),
        sa.Column("clone_database", sa.String(), nullable=False),
        sa.Column("clone_schema", sa.String(), nullable=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("read_role", sa.String(), nullable=False),
        sa.Column("write_role", sa.String(), nullable=False),
        sa.Column("admin_role", sa.String(), nullable=False),
        sa.Column("include_data", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Sequence numbers are never reused for the same owner/environment/source.
        sa.UniqueConstraint(
            "owner",
            "environment",
            "source_key",
            "sequence",
            name="uq_clones_owner_env_source_sequence",
        ),
        sa.UniqueConstraint("qualified_name", name="uq_clones_qualified_name"),
    )
    op.create_index("ix_clones_name", "clones", ["name"])
    op.create_index("ix_clones_environment", "clones", ["environment"])
    op.create_index("ix_clones_owner", "clones", ["owner"])
    op.create_index("ix_clones_state", "clones", ["state"])
    op.create_index("ix_clones_owner_env_state", "clones", ["owner", "environment", "state"])
    op.create_index("ix_clones_state_expires_at", "clones", ["state", "expires_at"])

    op.create_table(
        "clone_limits",
        sa.Column("environment", sa.String(), primary_key=True),
        sa.Column("max_clones_per_user", sa.Integer(), nullable=False),
        sa.Column("expiry_days", sa.Integer(), nullable=True),
        sa.Column("allow_database_clones", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allow_schema_clones", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Row-level serialization point for admission; one row per owner key and environment.
    op.create_table(
        "clone_admission_locks",
        sa.Column("owner_key", sa.String(), primary_key=True),
        sa.Column("environment", sa.String(), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "clone_policies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("policy_type", sa.String(), nullable=False),
        sa.Column("environment", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("definition_json", postgresql.JSONB(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_clone_policies_policy_type", "clone_policies", ["policy_type"])
    op.create_index("ix_clone_policies_environment", "clone_policies", ["environment"])

    op.create_table(
        "clone_policy_violations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("policy_id", sa.String(), nullable=False),
        sa.Column("policy_name", sa.String(), nullable=False),
        sa.Column("clone_id", sa.String(), nullable=True),
        sa.Column("clone_name", sa.String(), nullable=True),
        sa.Column("environment", sa.String(), nullable=True),
        sa.Column("violated_by", sa.String(), nullable=False),
        sa.Column("details_json", postgresql.JSONB(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="OPEN"),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_clone_policy_violations_policy_name", "clone_policy_violations", ["policy_name"])
    op.create_index("ix_clone_policy_violations_violated_by", "clone_policy_violations", ["violated_by"])
    op.create_index(
        "ix_clone_violations_status_detected",
        "clone_policy_violations",
        ["status", "detected_at"],
    )
    op.create_index(
        "ix_clone_violations_policy_clone",
        "clone_policy_violations",
        ["policy_id", "clone_id"],
    )

    op.create_table(
        "clone_audit_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("clone_id", sa.String(), nullable=True),
        sa.Column("clone_name", sa.String(), nullable=True),
        sa.Column("clone_kind", sa.String(), nullable=True),
        sa.Column("environment", sa.String(), nullable=True),
        sa.Column("source_database", sa.String(), nullable=True),
        sa.Column("source_schema", sa.String(), nullable=True),
        sa.Column("policy_name", sa.String(), nullable=True),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("violations_json", postgresql.JSONB(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_clone_audit_records_occurred_at", "clone_audit_records", ["occurred_at"])
    op.create_index("ix_clone_audit_records_operation", "clone_audit_records", ["operation"])
    op.create_index("ix_clone_audit_records_clone_id", "clone_audit_records", ["clone_id"])
    op.create_index("ix_clone_audit_records_actor", "clone_audit_records", ["actor"])
    op.create_index("ix_clone_audit_records_status", "clone_audit_records", ["status"])
    op.create_index("ix_clone_audit_records_request_id", "clone_audit_records", ["request_id"])

    op.create_table(
        "clone_access_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("clone_id", sa.String(), nullable=True),
        sa.Column("clone_name", sa.String(), nullable=False),
        sa.Column("accessed_by", sa.String(), nullable=False),
        sa.Column("access_type", sa.String(), nullable=False),
        sa.Column("query_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("accessed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_clone_access_events_clone_id", "clone_access_events", ["clone_id"])
    op.create_index("ix_clone_access_events_accessed_by", "clone_access_events", ["accessed_by"])
    op.create_index("ix_clone_access_events_accessed_at", "clone_access_events", ["accessed_at"])


def downgrade() -> None:
    op.drop_table("clone_access_events")
    op.drop_table("clone_audit_records")
    op.drop_table("clone_policy_violations")
    op.drop_table("clone_policies")
    op.drop_table("clone_admission_locks")
    op.drop_table("clone_limits")
    op.drop_table("clones")
