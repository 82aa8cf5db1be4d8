"""Billing baseline schema from faturamento.db

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from faturamento.db import _convert_qmark_to_pg, _init_db_postgres, _init_db_sqlite


# revision identifiers, used by Alembic.
revision: str = "20261001_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TABLES_IN_DROP_ORDER = [
    "bling_credentials",
    "commission_payment_batches",
    "status_events",
    "fiscal_documents",
    "commission_installments",
    "proposal_items",
    "proposals",
    "clients",
    "vendors",
]


class _MigrationDb:
    """Expose the execute() surface the schema builders expect on top of an Alembic bind."""

    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return self._connection.exec_driver_sql(sql)
        statement = _convert_qmark_to_pg(sql) if self.backend == "postgres" else sql
        return self._connection.exec_driver_sql(statement, tuple(params))

    def commit(self):
        # Alembic controla a transacao da migration.
        return None


def _backend_of(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    return "postgres" if dialect.startswith("postgres") else "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    backend = _backend_of(connection)
    db = _MigrationDb(connection, backend)

    if backend == "postgres":
        _init_db_postgres(db)
        return
    _init_db_sqlite(db)


def downgrade() -> None:
    connection = op.get_bind()
    if _backend_of(connection) == "postgres":
        op.execute("DROP FUNCTION IF EXISTS set_updated_at() CASCADE")

    for table in TABLES_IN_DROP_ORDER:
        op.execute(f"DROP TABLE IF EXISTS {table}")
