"""Add proposal approval date and commission payment batches.

Revision ID: 20261018_000002
Revises: 20261001_000001
Create Date: 2026-10-18 00:00:02
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000002"
down_revision: Union[str, Sequence[str], None] = "20261001_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(bind, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return bool(inspector.has_table(table_name))


def _column_exists(bind, table_name: str, column_name: str) -> bool:
    inspector = sa.inspect(bind)
    if not inspector.has_table(table_name):
        return False
    return any(str(column.get("name") or "") == column_name for column in inspector.get_columns(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _column_exists(bind, "proposals", "approval_date"):
        op.add_column("proposals", sa.Column("approval_date", sa.Text(), nullable=True))
    if not _column_exists(bind, "commission_installments", "payment_batch_id"):
        op.add_column("commission_installments", sa.Column("payment_batch_id", sa.Integer(), nullable=True))

    if not _table_exists(bind, "commission_payment_batches"):
        op.create_table(
            "commission_payment_batches",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("reference", sa.Text(), nullable=False),
            sa.Column("item_count", sa.Integer(), nullable=False),
            sa.Column("total_commission", sa.Float(), nullable=False),
            sa.Column("paid_on", sa.Text(), nullable=False),
            sa.Column("created_by", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.PrimaryKeyConstraint("id", name="pk_commission_payment_batches"),
            sa.UniqueConstraint("reference", name="uq_commission_payment_batches_reference"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    if _table_exists(bind, "commission_payment_batches"):
        op.drop_table("commission_payment_batches")
    if _column_exists(bind, "commission_installments", "payment_batch_id"):
        op.drop_column("commission_installments", "payment_batch_id")
    if _column_exists(bind, "proposals", "approval_date"):
        op.drop_column("proposals", "approval_date")
