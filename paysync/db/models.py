from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
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
from sqlalchemy.orm import Mapped, mapped_column

from paysync.db.base import Base


class ObjectRunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


OBJECT_RUN_STATUS_DB_ENUM = Enum(
    ObjectRunStatus,
    name="object_run_status",
    values_callable=lambda members: [member.value for member in members],
)

OPEN_RUN_INDEX_NAME = "uq_sync_runs_account_channel_open"


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    raw_data: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("ix_sync_runs_account_started", "account_id", "started_at"),
        Index(
            OPEN_RUN_INDEX_NAME,
            "account_id",
            "triggered_by",
            unique=True,
            postgresql_where=text("closed_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False)
    max_concurrent: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("5")
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class SyncObjectRun(Base):
    __tablename__ = "sync_object_runs"
    __table_args__ = (
        Index("ix_sync_object_runs_status_updated", "status", "updated_at"),
        Index("ix_sync_object_runs_object_completed", "object_type", "completed_at"),
    )

    run_id: Mapped[int] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="CASCADE"), primary_key=True
    )
    object_type: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[ObjectRunStatus] = mapped_column(
        OBJECT_RUN_STATUS_DB_ENUM,
        nullable=False,
        server_default=text("'pending'::object_run_status"),
    )
    cursor: Mapped[str | None] = mapped_column(Text)
    filter_cursor: Mapped[str | None] = mapped_column(Text)
    page_cursor: Mapped[str | None] = mapped_column(Text)
    processed_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class SyncedObject(Base):
    __tablename__ = "synced_objects"
    __table_args__ = (
        Index("ix_synced_objects_account_type", "account_id", "object_type", "id"),
        Index("ix_synced_objects_account_last_synced", "account_id", "last_synced_at"),
    )

    object_type: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    raw_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created: Mapped[int | None] = mapped_column(BigInteger)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class ManagedWebhook(Base):
    __tablename__ = "managed_webhooks"
    __table_args__ = (
        UniqueConstraint("account_id", "url", name="uq_managed_webhooks_account_url"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    platform_webhook_id: Mapped[str] = mapped_column(String(255), nullable=False)
    secret: Mapped[str | None] = mapped_column(Text)
    enabled_events: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'[]'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
