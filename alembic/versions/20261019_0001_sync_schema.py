"""Create sync run, object run, entity and webhook schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

OPEN_RUN_INDEX_NAME = "uq_sync_runs_account_channel_open"

object_run_status_enum = sa.Enum(
    "pending",
    "running",
    "complete",
    "error",
    name="object_run_status",
)
object_run_status_ref = postgresql.ENUM(
    "pending",
    "running",
    "complete",
    "error",
    name="object_run_status",
    create_type=False,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    pgmq_available = bind.execute(
        sa.text("SELECT 1 FROM pg_available_extensions WHERE name = 'pgmq'")
    ).scalar_one_or_none()
    if pgmq_available:
        op.execute("CREATE EXTENSION IF NOT EXISTS pgmq")
    object_run_status_enum.create(bind, checkfirst=True)

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column(
            "raw_data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_accounts"),
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column(
            "max_concurrent",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("5"),
        ),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["accounts.id"],
            name="fk_sync_runs_account_id_accounts",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_sync_runs"),
    )
    op.create_index(
        "ix_sync_runs_account_started",
        "sync_runs",
        ["account_id", "started_at"],
        unique=False,
    )
    op.create_index(
        OPEN_RUN_INDEX_NAME,
        "sync_runs",
        ["account_id", "triggered_by"],
        unique=True,
        postgresql_where=sa.text("closed_at IS NULL"),
    )

    op.create_table(
        "sync_object_runs",
        sa.Column("run_id", sa.Integer(), nullable=False),
        sa.Column("object_type", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            object_run_status_ref,
            nullable=False,
            server_default=sa.text("'pending'::object_run_status"),
        ),
        sa.Column("cursor", sa.Text(), nullable=True),
        sa.Column("page_cursor", sa.Text(), nullable=True),
        sa.Column(
            "processed_count",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["run_id"],
            ["sync_runs.id"],
            name="fk_sync_object_runs_run_id_sync_runs",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("run_id", "object_type", name="pk_sync_object_runs"),
    )
    op.create_index(
        "ix_sync_object_runs_status_updated",
        "sync_object_runs",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index(
        "ix_sync_object_runs_object_completed",
        "sync_object_runs",
        ["object_type", "completed_at"],
        unique=False,
    )

    op.create_table(
        "synced_objects",
        sa.Column("object_type", sa.String(length=64), nullable=False),
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created", sa.BigInteger(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["accounts.id"],
            name="fk_synced_objects_account_id_accounts",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("object_type", "id", name="pk_synced_objects"),
    )
    op.create_index(
        "ix_synced_objects_account_type",
        "synced_objects",
        ["account_id", "object_type", "id"],
        unique=False,
    )
    op.create_index(
        "ix_synced_objects_account_last_synced",
        "synced_objects",
        ["account_id", "last_synced_at"],
        unique=False,
    )

    op.create_table(
        "managed_webhooks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("platform_webhook_id", sa.String(length=255), nullable=False),
        sa.Column("secret", sa.Text(), nullable=True),
        sa.Column(
            "enabled_events",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["accounts.id"],
            name="fk_managed_webhooks_account_id_accounts",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_managed_webhooks"),
        sa.UniqueConstraint("account_id", "url", name="uq_managed_webhooks_account_url"),
    )


def downgrade() -> None:
    op.drop_table("managed_webhooks")
    op.drop_index("ix_synced_objects_account_last_synced", table_name="synced_objects")
    op.drop_index("ix_synced_objects_account_type", table_name="synced_objects")
    op.drop_table("synced_objects")
    op.drop_index("ix_sync_object_runs_object_completed", table_name="sync_object_runs")
    op.drop_index("ix_sync_object_runs_status_updated", table_name="sync_object_runs")
    op.drop_table("sync_object_runs")
    op.drop_index(OPEN_RUN_INDEX_NAME, table_name="sync_runs")
    op.drop_index("ix_sync_runs_account_started", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_table("accounts")
    object_run_status_enum.drop(op.get_bind(), checkfirst=True)
