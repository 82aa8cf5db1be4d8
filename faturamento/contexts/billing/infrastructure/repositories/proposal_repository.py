from __future__ import annotations

from typing import Iterable

from faturamento.contexts.billing.domain.status import ApprovalStep, ProposalStatus
from faturamento.errors import InvalidStateError
from faturamento.infrastructure.repositories.base import BaseRepository


TRANSITION_COLUMNS = (
    "approval_step",
    "needs_manual_review",
    "last_step_error",
    "rejection_reason",
    "approved_by",
    "approval_date",
    "rejected_by",
    "confirmed_at",
)


class ProposalRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        client_id: int,
        vendor_id: int,
        invoicing_term: str,
        items: Iterable[dict],
        products_total: float,
        shipping_value: float,
        discount_percent: float,
        discount_value: float,
        total_value: float,
    ) -> int:
        with db.transaction():
            cursor = db.execute(
                """
                INSERT INTO proposals (
                    client_id, vendor_id, status, invoicing_term, products_total,
                    shipping_value, discount_percent, discount_value, total_value, approval_step
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    client_id,
                    vendor_id,
                    ProposalStatus.AWAITING_APPROVAL.value,
                    invoicing_term,
                    products_total,
                    shipping_value,
                    discount_percent,
                    discount_value,
                    total_value,
                    ApprovalStep.NOT_STARTED.value,
                ),
            )
            proposal_id = self.inserted_id(cursor)
            for line_no, item in enumerate(items, start=1):
                db.execute(
                    """
                    INSERT INTO proposal_items (proposal_id, line_no, sku, description, quantity, unit_price)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        proposal_id,
                        line_no,
                        item.get("sku"),
                        item.get("description"),
                        float(item.get("quantity") or 0),
                        float(item.get("unit_price") or 0),
                    ),
                )
        return proposal_id

    def get_by_id(self, db, proposal_id: int) -> dict | None:
        row = db.execute("SELECT * FROM proposals WHERE id = ? LIMIT 1", (proposal_id,)).fetchone()
        return self.row_to_dict(row)

    def list_items(self, db, proposal_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, line_no, sku, description, quantity, unit_price
            FROM proposal_items
            WHERE proposal_id = ?
            ORDER BY line_no
            """,
            (proposal_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def transition_status(
        self,
        db,
        proposal_id: int,
        from_status: ProposalStatus,
        to_status: ProposalStatus,
        **fields,
    ) -> None:
        assignments, values = self.build_assignments(fields, TRANSITION_COLUMNS)
        cursor = db.execute(
            f"""
            UPDATE proposals
            SET status = ?, updated_at = CURRENT_TIMESTAMP{assignments}
            WHERE id = ? AND status = ?
            """,
            [to_status.value, *values, proposal_id, from_status.value],
        )
        self.require_rows(cursor, entity="proposal", entity_id=proposal_id, expected=from_status.value)
        db.commit()

    def record_external_order(self, db, proposal_id: int, order_id: str, order_number: str | None) -> None:
        cursor = db.execute(
            """
            UPDATE proposals
            SET bling_order_id = ?, bling_order_number = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND bling_order_id IS NULL
            """,
            (order_id, order_number, proposal_id),
        )
        if int(cursor.rowcount or 0) > 0:
            db.commit()
            return

        current = self.get_by_id(db, proposal_id)
        if current is None:
            raise InvalidStateError(details=f"proposal {proposal_id} inexistente.")
        if str(current.get("bling_order_id") or "") != str(order_id):
            raise InvalidStateError(
                details=(
                    f"proposal {proposal_id} ja vinculada ao pedido {current.get('bling_order_id')}; "
                    f"recusado {order_id}."
                ),
            )

    def advance_step(self, db, proposal_id: int, step: ApprovalStep, *, error: str | None = None) -> None:
        db.execute(
            """
            UPDATE proposals
            SET approval_step = ?, last_step_error = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (step.value, error, proposal_id),
        )
        db.commit()

    def claim_for_resume(self, db, proposal_id: int) -> None:
        cursor = db.execute(
            """
            UPDATE proposals
            SET needs_manual_review = 0, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND status = ? AND needs_manual_review = 1
            """,
            (proposal_id, ProposalStatus.APPROVING.value),
        )
        self.require_rows(
            cursor,
            entity="proposal",
            entity_id=proposal_id,
            expected=f"{ProposalStatus.APPROVING.value}+needs_manual_review",
        )
        db.commit()

    def flag_manual_review(self, db, proposal_id: int, *, error: str | None) -> None:
        db.execute(
            """
            UPDATE proposals
            SET needs_manual_review = 1, last_step_error = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND status = ?
            """,
            (error, proposal_id, ProposalStatus.APPROVING.value),
        )
        db.commit()

    def fill_order_number(self, db, proposal_id: int, order_number: str) -> None:
        db.execute(
            """
            UPDATE proposals
            SET bling_order_number = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND bling_order_number IS NULL
            """,
            (order_number, proposal_id),
        )
        db.commit()
