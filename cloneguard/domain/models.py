from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the SQLite test database can host the schema.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Clone(Base):
    __tablename__ = "clones"
    __table_args__ = (
        # Sequence numbers are claimed once per owner/environment/source and never reused.
        UniqueConstraint(
            "owner",
            "environment",
            "source_key",
            "sequence",
            name="uq_clones_owner_env_source_sequence",
        ),
        UniqueConstraint("qualified_name", name="uq_clones_qualified_name"),
        Index("ix_clones_owner_env_state", "owner", "environment", "state"),
        Index("ix_clones_state_expires_at", "state", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, index=True)
    qualified_name: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)
    environment: Mapped[str] = mapped_column(String, index=True)
    source_database: Mapped[str] = mapped_column(String)
    source_schema: Mapped[str | None] = mapped_column(String, nullable=True)
    # Non-null source identity so the uniqueness constraint also covers database clones.
    source_key: Mapped[str] = mapped_column(String)
    clone_database: Mapped[str] = mapped_column(String)
    clone_schema: Mapped[str | None] = mapped_column(String, nullable=True)
    owner: Mapped[str] = mapped_column(String, index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    # Indirection roles; the actor only ever receives the write role.
    read_role: Mapped[str] = mapped_column(String)
    write_role: Mapped[str] = mapped_column(String)
    admin_role: Mapped[str] = mapped_column(String)
    include_data: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    state: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CloneLimit(Base):
    __tablename__ = "clone_limits"

    # One row per environment; absent rows fall back to built-in defaults.
    environment: Mapped[str] = mapped_column(String, primary_key=True)
    max_clones_per_user: Mapped[int] = mapped_column(Integer)
    expiry_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allow_database_clones: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allow_schema_clones: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CloneAdmissionLock(Base):
    __tablename__ = "clone_admission_locks"

    # Per-key serialization point for quota counting and sequence allocation.
    owner_key: Mapped[str] = mapped_column(String, primary_key=True)
    environment: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ClonePolicy(Base):
    __tablename__ = "clone_policies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True)
    policy_type: Mapped[str] = mapped_column(String, index=True)
    # Null environment means the policy applies everywhere.
    environment: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    definition_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    severity: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Bumped whenever the name is re-created with a new definition.
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class PolicyViolation(Base):
    __tablename__ = "clone_policy_violations"
    __table_args__ = (
        Index("ix_clone_violations_status_detected", "status", "detected_at"),
        Index("ix_clone_violations_policy_clone", "policy_id", "clone_id"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    policy_id: Mapped[str] = mapped_column(String)
    policy_name: Mapped[str] = mapped_column(String, index=True)
    # Blocked candidates never reach the registry, so this is a soft reference.
    clone_id: Mapped[str | None] = mapped_column(String, nullable=True)
    clone_name: Mapped[str | None] = mapped_column(String, nullable=True)
    environment: Mapped[str | None] = mapped_column(String, nullable=True)
    violated_by: Mapped[str] = mapped_column(String, index=True)
    details_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    severity: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="OPEN")
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class CloneAuditRecord(Base):
    __tablename__ = "clone_audit_records"

    # Monotonic numeric ids give stable pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    operation: Mapped[str] = mapped_column(String, index=True)
    clone_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    clone_name: Mapped[str | None] = mapped_column(String, nullable=True)
    clone_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    environment: Mapped[str | None] = mapped_column(String, nullable=True)
    source_database: Mapped[str | None] = mapped_column(String, nullable=True)
    source_schema: Mapped[str | None] = mapped_column(String, nullable=True)
    policy_name: Mapped[str | None] = mapped_column(String, nullable=True)
    actor: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Violation list as evaluated at the moment of the decision.
    violations_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, default=list)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)


class CloneAccessEvent(Base):
    __tablename__ = "clone_access_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    clone_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    clone_name: Mapped[str] = mapped_column(String)
    accessed_by: Mapped[str] = mapped_column(String, index=True)
    access_type: Mapped[str] = mapped_column(String)
    query_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
