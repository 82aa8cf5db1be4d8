import contextlib
import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


PROPOSAL_STATUSES = ("AWAITING_APPROVAL", "APPROVING", "APPROVED", "REJECTED")
APPROVAL_STEPS = (
    "NOT_STARTED",
    "CLAIMED",
    "ORDER_CREATED",
    "ISSUANCE_REQUESTED",
    "INSTALLMENTS_CREATED",
    "COMPLETED",
)
INSTALLMENT_STATUSES = ("AWAITING_INVOICE", "SCHEDULED", "PENDING", "OVERDUE", "RELEASED", "PAID")
FISCAL_DOCUMENT_STATUSES = (
    "NOT_REQUESTED",
    "CREATING",
    "CREATED",
    "SUBMITTING",
    "PENDING_AUTHORIZATION",
    "AUTHORIZED",
    "REJECTED",
)


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executescript(self, sql: str):
        if self.backend != "postgres":
            return self._conn.executescript(sql)
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    @contextlib.contextmanager
    def transaction(self):
        """Run a block as one unit: commit on success, rollback on any exception."""
        if self.backend == "postgres":
            self._conn.autocommit = False
        try:
            yield self
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        finally:
            if self.backend == "postgres":
                self._conn.autocommit = True

    def close(self):
        self._conn.close()


def _split_sql_statements(sql: str) -> List[str]:
    statements = []
    current = []
    in_single = False
    in_double = False
    in_dollar = False
    i = 0
    while i < len(sql):
        ch = sql[i]
        nxt = sql[i : i + 2]
        if not in_single and not in_double and nxt == "$$":
            in_dollar = not in_dollar
            current.append("$$")
            i += 2
            continue
        if not in_dollar:
            if ch == "'" and not in_double:
                in_single = not in_single
            elif ch == '"' and not in_single:
                in_double = not in_double
            elif ch == ";" and not in_single and not in_double:
                statements.append("".join(current))
                current = []
                i += 1
                continue
        current.append(ch)
        i += 1
    if current:
        statements.append("".join(current))
    return statements


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)
    db.commit()


def _in_list(values: Iterable[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _init_db_sqlite(db: Database):
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS vendors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT,
            commission_rate REAL,
            bling_vendor_id TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS clients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            tax_id TEXT,
            state_registration TEXT,
            email TEXT,
            phone TEXT,
            address_street TEXT,
            address_number TEXT,
            address_complement TEXT,
            address_district TEXT,
            address_city TEXT,
            address_state TEXT,
            address_zip TEXT,
            vendor_id INTEGER REFERENCES vendors (id),
            can_invoice INTEGER NOT NULL DEFAULT 0,
            discount_percent REAL NOT NULL DEFAULT 0,
            discount_assigned_by TEXT,
            discount_assigned_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS proposals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL REFERENCES clients (id),
            vendor_id INTEGER NOT NULL REFERENCES vendors (id),
            status TEXT NOT NULL DEFAULT 'AWAITING_APPROVAL' CHECK (
                status IN ({_in_list(PROPOSAL_STATUSES)})
            ),
            invoicing_term TEXT NOT NULL,
            products_total REAL NOT NULL DEFAULT 0,
            shipping_value REAL NOT NULL DEFAULT 0,
            discount_percent REAL NOT NULL DEFAULT 0,
            discount_value REAL NOT NULL DEFAULT 0,
            total_value REAL NOT NULL,
            approval_step TEXT NOT NULL DEFAULT 'NOT_STARTED' CHECK (
                approval_step IN ({_in_list(APPROVAL_STEPS)})
            ),
            needs_manual_review INTEGER NOT NULL DEFAULT 0,
            last_step_error TEXT,
            bling_order_id TEXT,
            bling_order_number TEXT,
            rejection_reason TEXT,
            approved_by TEXT,
            approval_date TEXT,
            rejected_by TEXT,
            confirmed_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS proposal_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            proposal_id INTEGER NOT NULL REFERENCES proposals (id),
            line_no INTEGER NOT NULL,
            sku TEXT,
            description TEXT,
            quantity REAL NOT NULL,
            unit_price REAL NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS commission_installments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            proposal_id INTEGER NOT NULL REFERENCES proposals (id),
            client_id INTEGER NOT NULL REFERENCES clients (id),
            vendor_id INTEGER NOT NULL REFERENCES vendors (id),
            installment_number INTEGER NOT NULL,
            installment_count INTEGER NOT NULL,
            face_value REAL NOT NULL,
            commission_rate REAL NOT NULL,
            commission_value REAL NOT NULL,
            due_date TEXT NOT NULL,
            release_date TEXT,
            payment_date TEXT,
            status TEXT NOT NULL DEFAULT 'AWAITING_INVOICE' CHECK (
                status IN ({_in_list(INSTALLMENT_STATUSES)})
            ),
            origin TEXT NOT NULL DEFAULT 'faturado',
            bling_order_id TEXT,
            document_number TEXT,
            document_link TEXT,
            payment_batch_id INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS fiscal_documents (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            proposal_id INTEGER NOT NULL UNIQUE REFERENCES proposals (id),
            status TEXT NOT NULL DEFAULT 'NOT_REQUESTED' CHECK (
                status IN ({_in_list(FISCAL_DOCUMENT_STATUSES)})
            ),
            bling_order_id TEXT,
            bling_order_number TEXT,
            nature_of_operation_id TEXT,
            document_id TEXT,
            document_number TEXT,
            document_key TEXT,
            document_link TEXT,
            rejection_reason TEXT,
            last_outcome TEXT,
            last_error TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS status_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            from_status TEXT,
            to_status TEXT,
            reason TEXT,
            occurred_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS commission_payment_batches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reference TEXT NOT NULL UNIQUE,
            item_count INTEGER NOT NULL,
            total_commission REAL NOT NULL,
            paid_on TEXT NOT NULL,
            created_by TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS bling_credentials (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            access_token TEXT,
            refresh_token TEXT,
            expires_at TEXT,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    _create_indexes(db)


def _init_db_postgres(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS vendors (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            commission_rate DOUBLE PRECISION,
            bling_vendor_id TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS clients (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            tax_id TEXT,
            state_registration TEXT,
            email TEXT,
            phone TEXT,
            address_street TEXT,
            address_number TEXT,
            address_complement TEXT,
            address_district TEXT,
            address_city TEXT,
            address_state TEXT,
            address_zip TEXT,
            vendor_id INTEGER REFERENCES vendors (id),
            can_invoice INTEGER NOT NULL DEFAULT 0,
            discount_percent DOUBLE PRECISION NOT NULL DEFAULT 0,
            discount_assigned_by TEXT,
            discount_assigned_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS proposals (
            id SERIAL PRIMARY KEY,
            client_id INTEGER NOT NULL REFERENCES clients (id),
            vendor_id INTEGER NOT NULL REFERENCES vendors (id),
            status TEXT NOT NULL DEFAULT 'AWAITING_APPROVAL' CHECK (
                status IN ({_in_list(PROPOSAL_STATUSES)})
            ),
            invoicing_term TEXT NOT NULL,
            products_total DOUBLE PRECISION NOT NULL DEFAULT 0,
            shipping_value DOUBLE PRECISION NOT NULL DEFAULT 0,
            discount_percent DOUBLE PRECISION NOT NULL DEFAULT 0,
            discount_value DOUBLE PRECISION NOT NULL DEFAULT 0,
            total_value DOUBLE PRECISION NOT NULL,
            approval_step TEXT NOT NULL DEFAULT 'NOT_STARTED' CHECK (
                approval_step IN ({_in_list(APPROVAL_STEPS)})
            ),
            needs_manual_review INTEGER NOT NULL DEFAULT 0,
            last_step_error TEXT,
            bling_order_id TEXT,
            bling_order_number TEXT,
            rejection_reason TEXT,
            approved_by TEXT,
            approval_date TEXT,
            rejected_by TEXT,
            confirmed_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS proposal_items (
            id SERIAL PRIMARY KEY,
            proposal_id INTEGER NOT NULL REFERENCES proposals (id),
            line_no INTEGER NOT NULL,
            sku TEXT,
            description TEXT,
            quantity DOUBLE PRECISION NOT NULL,
            unit_price DOUBLE PRECISION NOT NULL,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS commission_installments (
            id SERIAL PRIMARY KEY,
            proposal_id INTEGER NOT NULL REFERENCES proposals (id),
            client_id INTEGER NOT NULL REFERENCES clients (id),
            vendor_id INTEGER NOT NULL REFERENCES vendors (id),
            installment_number INTEGER NOT NULL,
            installment_count INTEGER NOT NULL,
            face_value DOUBLE PRECISION NOT NULL,
            commission_rate DOUBLE PRECISION NOT NULL,
            commission_value DOUBLE PRECISION NOT NULL,
            due_date TEXT NOT NULL,
            release_date TEXT,
            payment_date TEXT,
            status TEXT NOT NULL DEFAULT 'AWAITING_INVOICE' CHECK (
                status IN ({_in_list(INSTALLMENT_STATUSES)})
            ),
            origin TEXT NOT NULL DEFAULT 'faturado',
            bling_order_id TEXT,
            document_number TEXT,
            document_link TEXT,
            payment_batch_id INTEGER,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS fiscal_documents (
            id SERIAL PRIMARY KEY,
            proposal_id INTEGER NOT NULL UNIQUE REFERENCES proposals (id),
            status TEXT NOT NULL DEFAULT 'NOT_REQUESTED' CHECK (
                status IN ({_in_list(FISCAL_DOCUMENT_STATUSES)})
            ),
            bling_order_id TEXT,
            bling_order_number TEXT,
            nature_of_operation_id TEXT,
            document_id TEXT,
            document_number TEXT,
            document_key TEXT,
            document_link TEXT,
            rejection_reason TEXT,
            last_outcome TEXT,
            last_error TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS status_events (
            id SERIAL PRIMARY KEY,
            entity TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            from_status TEXT,
            to_status TEXT,
            reason TEXT,
            occurred_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS commission_payment_batches (
            id SERIAL PRIMARY KEY,
            reference TEXT NOT NULL UNIQUE,
            item_count INTEGER NOT NULL,
            total_commission DOUBLE PRECISION NOT NULL,
            paid_on TEXT NOT NULL,
            created_by TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS bling_credentials (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            access_token TEXT,
            refresh_token TEXT,
            expires_at TEXT,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    _create_indexes(db)
    _create_postgres_updated_at_triggers(db)


def _create_indexes(db: Database) -> None:
    db.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_installments_proposal_number
        ON commission_installments (proposal_id, installment_number)
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_installments_status_due
        ON commission_installments (status, due_date)
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_proposal_items_proposal
        ON proposal_items (proposal_id, line_no)
        """
    )
    db.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_status_events_entity
        ON status_events (entity, entity_id)
        """
    )


def _create_postgres_updated_at_triggers(db: Database) -> None:
    db.execute(
        """
        CREATE OR REPLACE FUNCTION set_updated_at()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = CURRENT_TIMESTAMP;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )

    tables = [
        "vendors",
        "clients",
        "proposals",
        "commission_installments",
        "fiscal_documents",
        "bling_credentials",
    ]

    for table in tables:
        db.execute(
            f"""
            DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table};
            CREATE TRIGGER trg_{table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION set_updated_at();
            """
        )
