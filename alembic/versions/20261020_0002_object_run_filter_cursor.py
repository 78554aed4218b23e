"""Pin the incremental filter on each object run.

Revision ID: 20261020_0002
Revises: 20261019_0001
Create Date: 2026-10-20 10:15:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "20261020_0002"
down_revision: str | Sequence[str] | None = "20261019_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _has_column(inspector: sa.Inspector, table_name: str, column_name: str) -> bool:
    for column in inspector.get_columns(table_name):
        if str(column.get("name")) == column_name:
            return True
    return False


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if "sync_object_runs" not in set(inspector.get_table_names()):
        return
    if not _has_column(inspector, "sync_object_runs", "filter_cursor"):
        op.add_column("sync_object_runs", sa.Column("filter_cursor", sa.Text(), nullable=True))


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if "sync_object_runs" not in set(inspector.get_table_names()):
        return
    if _has_column(inspector, "sync_object_runs", "filter_cursor"):
        op.drop_column("sync_object_runs", "filter_cursor")
