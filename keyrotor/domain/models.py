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
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class EncryptionKeyRecord(Base):
    __tablename__ = "encryption_keys"
    __table_args__ = (
        Index("ix_encryption_keys_component_key_desc", "component", text("key_id DESC")),
    )

    # Composite identity: key ids are unique forever within a component.
    component: Mapped[str] = mapped_column(String, primary_key=True)
    key_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String, unique=True)
    mode: Mapped[str] = mapped_column(String)
    # Fernet-sealed key material; null for identity keys.
    secret_ciphertext: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    migrated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Sorted list of "resource.group" strings confirmed migrated.
    migrated_resources: Mapped[list[str]] = mapped_column(JSONType, default=list)
    # Phase one of the two-phase delete.
    deletion_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)


class KeySequence(Base):
    __tablename__ = "encryption_key_sequences"

    # High-water mark so deleted key ids are never handed out again.
    component: Mapped[str] = mapped_column(String, primary_key=True)
    last_key_id: Mapped[int] = mapped_column(BigInteger, default=0)
    version: Mapped[int] = mapped_column(Integer, default=1)


class EncryptionModeSetting(Base):
    __tablename__ = "encryption_mode_settings"

    # User-facing selection of the active encryption function.
    component: Mapped[str] = mapped_column(String, primary_key=True)
    mode: Mapped[str] = mapped_column(String)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TargetConfigurationRecord(Base):
    __tablename__ = "encryption_target_configurations"

    # Single shared target per component, guarded by a version token.
    component: Mapped[str] = mapped_column(String, primary_key=True)
    config_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ObservedConfigurationRecord(Base):
    __tablename__ = "encryption_observed_configurations"

    # Configuration actually loaded by replicas of one revision.
    component: Mapped[str] = mapped_column(String, primary_key=True)
    revision: Mapped[str] = mapped_column(String, primary_key=True)
    config_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ReplicaStatus(Base):
    __tablename__ = "encryption_replica_statuses"
    __table_args__ = (
        Index("ix_encryption_replica_statuses_component", "component"),
    )

    component: Mapped[str] = mapped_column(String, primary_key=True)
    replica_id: Mapped[str] = mapped_column(String, primary_key=True)
    running: Mapped[bool] = mapped_column(Boolean, default=False)
    revision: Mapped[str | None] = mapped_column(String, nullable=True)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class KeyMigrationJob(Base):
    __tablename__ = "encryption_key_migration_jobs"
    __table_args__ = (
        Index("ix_encryption_key_migration_jobs_key", "component", "key_id", "resource"),
    )

    # Bookkeeping for migration attempts; never consulted to skip a re-issue.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    component: Mapped[str] = mapped_column(String)
    key_id: Mapped[int] = mapped_column(BigInteger)
    resource: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    migrated_objects: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class StoredObject(Base):
    __tablename__ = "encryption_stored_objects"
    __table_args__ = (
        UniqueConstraint("component", "resource", "name", name="uq_encryption_stored_objects_name"),
    )

    # Backing store rows whose values are encoded by the configured providers.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    component: Mapped[str] = mapped_column(String)
    resource: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    value: Mapped[bytes] = mapped_column(LargeBinary)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
