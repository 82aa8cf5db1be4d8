from __future__ import annotations

from typing import Sequence

from faturamento.contexts.billing.domain.status import FiscalDocumentStatus
from faturamento.infrastructure.repositories.base import BaseRepository


TRANSITION_COLUMNS = (
    "bling_order_id",
    "bling_order_number",
    "nature_of_operation_id",
    "document_id",
    "document_number",
    "document_key",
    "document_link",
    "rejection_reason",
    "last_outcome",
    "last_error",
)


class FiscalDocumentRepository(BaseRepository):
    """One fiscal_documents row per proposal."""

    def ensure(self, db, proposal_id: int) -> dict:
        db.execute(
            """
            INSERT INTO fiscal_documents (proposal_id, status)
            VALUES (?, ?)
            ON CONFLICT (proposal_id) DO NOTHING
            """,
            (proposal_id, FiscalDocumentStatus.NOT_REQUESTED.value),
        )
        db.commit()
        return self.get_for_proposal(db, proposal_id) or {}

    def get_for_proposal(self, db, proposal_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM fiscal_documents WHERE proposal_id = ? LIMIT 1",
            (proposal_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def transition(
        self,
        db,
        proposal_id: int,
        from_statuses: Sequence[FiscalDocumentStatus],
        to_status: FiscalDocumentStatus,
        **fields,
    ) -> None:
        assignments, values = self.build_assignments(fields, TRANSITION_COLUMNS)
        expected = [status.value for status in from_statuses]
        cursor = db.execute(
            f"""
            UPDATE fiscal_documents
            SET status = ?, updated_at = CURRENT_TIMESTAMP{assignments}
            WHERE proposal_id = ? AND status IN ({self.placeholders(expected)})
            """,
            [to_status.value, *values, proposal_id, *expected],
        )
        self.require_rows(cursor, entity="fiscal_document", entity_id=proposal_id, expected="|".join(expected))
        db.commit()

    def record_outcome(self, db, proposal_id: int, *, outcome: str, error: str | None = None) -> None:
        db.execute(
            """
            UPDATE fiscal_documents
            SET last_outcome = ?, last_error = ?, updated_at = CURRENT_TIMESTAMP
            WHERE proposal_id = ?
            """,
            (outcome, error, proposal_id),
        )
        db.commit()

    def fill_order_number(self, db, proposal_id: int, order_number: str) -> None:
        db.execute(
            """
            UPDATE fiscal_documents
            SET bling_order_number = ?, updated_at = CURRENT_TIMESTAMP
            WHERE proposal_id = ? AND bling_order_number IS NULL
            """,
            (order_number, proposal_id),
        )
        db.commit()
