from __future__ import annotations

from typing import Iterable, Sequence

from faturamento.contexts.billing.domain.status import (
    OUTSTANDING_INSTALLMENT_STATUSES,
    InstallmentStatus,
)
from faturamento.contexts.billing.domain.terms import DerivedInstallment
from faturamento.infrastructure.repositories.base import BaseRepository


TRANSITION_COLUMNS = ("payment_date", "release_date")


class InstallmentRepository(BaseRepository):
    def create_many(
        self,
        db,
        *,
        proposal: dict,
        installments: Sequence[DerivedInstallment],
    ) -> list[int]:
        created: list[int] = []
        with db.transaction():
            for installment in installments:
                cursor = db.execute(
                    """
                    INSERT INTO commission_installments (
                        proposal_id, client_id, vendor_id, installment_number, installment_count,
                        face_value, commission_rate, commission_value, due_date, status, bling_order_id
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    RETURNING id
                    """,
                    (
                        proposal["id"],
                        proposal["client_id"],
                        proposal["vendor_id"],
                        installment.number,
                        installment.count,
                        installment.face_value,
                        installment.commission_rate,
                        installment.commission_value,
                        installment.due_date,
                        installment.status.value,
                        proposal.get("bling_order_id"),
                    ),
                )
                created.append(self.inserted_id(cursor))
        return created

    def get_by_id(self, db, installment_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM commission_installments WHERE id = ? LIMIT 1",
            (installment_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def list_for_proposal(self, db, proposal_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM commission_installments
            WHERE proposal_id = ?
            ORDER BY installment_number
            """,
            (proposal_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def count_for_proposal(self, db, proposal_id: int) -> int:
        row = db.execute(
            "SELECT COUNT(*) AS total FROM commission_installments WHERE proposal_id = ?",
            (proposal_id,),
        ).fetchone()
        return int(row["total"] or 0) if row else 0

    def list_outstanding(self, db, *, client_ids: Iterable[int] | None = None) -> list[dict]:
        statuses = [status.value for status in OUTSTANDING_INSTALLMENT_STATUSES]
        sql = f"""
            SELECT ci.*, c.name AS client_name
            FROM commission_installments ci
            JOIN clients c ON c.id = ci.client_id
            WHERE ci.status IN ({self.placeholders(statuses)})
        """
        params: list = list(statuses)
        if client_ids is not None:
            ids = [int(value) for value in client_ids]
            if not ids:
                return []
            sql += f" AND ci.client_id IN ({self.placeholders(ids)})"
            params.extend(ids)
        sql += " ORDER BY ci.due_date, ci.id"
        return self.rows_to_dicts(db.execute(sql, params).fetchall())

    def transition_status(
        self,
        db,
        installment_id: int,
        from_statuses: Sequence[InstallmentStatus],
        to_status: InstallmentStatus,
        **fields,
    ) -> None:
        assignments, values = self.build_assignments(fields, TRANSITION_COLUMNS)
        expected = [status.value for status in from_statuses]
        cursor = db.execute(
            f"""
            UPDATE commission_installments
            SET status = ?, updated_at = CURRENT_TIMESTAMP{assignments}
            WHERE id = ? AND status IN ({self.placeholders(expected)})
            """,
            [to_status.value, *values, installment_id, *expected],
        )
        self.require_rows(
            cursor,
            entity="installment",
            entity_id=installment_id,
            expected="|".join(expected),
        )
        db.commit()

    def link_fiscal_document(
        self,
        db,
        proposal_id: int,
        *,
        document_number: str | None,
        document_link: str | None,
    ) -> int:
        cursor = db.execute(
            """
            UPDATE commission_installments
            SET document_number = ?, document_link = ?, status = ?, updated_at = CURRENT_TIMESTAMP
            WHERE proposal_id = ? AND status = ?
            """,
            (
                document_number,
                document_link,
                InstallmentStatus.PENDING.value,
                proposal_id,
                InstallmentStatus.AWAITING_INVOICE.value,
            ),
        )
        db.commit()
        return int(cursor.rowcount or 0)

    def mark_overdue(self, db, *, today: str) -> int:
        cursor = db.execute(
            """
            UPDATE commission_installments
            SET status = ?, updated_at = CURRENT_TIMESTAMP
            WHERE status = ? AND due_date < ?
            """,
            (InstallmentStatus.OVERDUE.value, InstallmentStatus.PENDING.value, today),
        )
        db.commit()
        return int(cursor.rowcount or 0)

    def release_scheduled(self, db, *, release_date: str) -> int:
        cursor = db.execute(
            """
            UPDATE commission_installments
            SET status = ?, release_date = ?, updated_at = CURRENT_TIMESTAMP
            WHERE status = ?
            """,
            (InstallmentStatus.RELEASED.value, release_date, InstallmentStatus.SCHEDULED.value),
        )
        db.commit()
        return int(cursor.rowcount or 0)

    def list_with_vendor(self, db, installment_ids: Sequence[int]) -> list[dict]:
        ids = [int(value) for value in installment_ids]
        if not ids:
            return []
        rows = db.execute(
            f"""
            SELECT ci.*, v.name AS vendor_name, c.name AS client_name
            FROM commission_installments ci
            JOIN vendors v ON v.id = ci.vendor_id
            JOIN clients c ON c.id = ci.client_id
            WHERE ci.id IN ({self.placeholders(ids)})
            ORDER BY v.name, ci.due_date, ci.id
            """,
            ids,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def get_payment_batch(self, db, batch_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM commission_payment_batches WHERE id = ? LIMIT 1",
            (batch_id,),
        ).fetchone()
        return self.row_to_dict(row)

    def get_payment_batch_by_reference(self, db, reference: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM commission_payment_batches WHERE reference = ? LIMIT 1",
            (reference,),
        ).fetchone()
        return self.row_to_dict(row)

    def list_for_batch(self, db, batch_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT ci.*, v.name AS vendor_name, c.name AS client_name
            FROM commission_installments ci
            JOIN vendors v ON v.id = ci.vendor_id
            JOIN clients c ON c.id = ci.client_id
            WHERE ci.payment_batch_id = ?
            ORDER BY v.name, ci.due_date, ci.id
            """,
            (batch_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def pay_into_batch(
        self,
        db,
        *,
        reference: str,
        installment_ids: Sequence[int],
        paid_on: str,
        created_by: str | None,
        total_commission: float,
    ) -> int:
        with db.transaction():
            cursor = db.execute(
                """
                INSERT INTO commission_payment_batches (reference, item_count, total_commission, paid_on, created_by)
                VALUES (?, ?, ?, ?, ?)
                RETURNING id
                """,
                (reference, len(installment_ids), total_commission, paid_on, created_by),
            )
            batch_id = self.inserted_id(cursor)
            for installment_id in installment_ids:
                cursor = db.execute(
                    """
                    UPDATE commission_installments
                    SET status = ?, payment_date = ?, payment_batch_id = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ? AND status = ? AND payment_batch_id IS NULL
                    """,
                    (
                        InstallmentStatus.PAID.value,
                        paid_on,
                        batch_id,
                        installment_id,
                        InstallmentStatus.RELEASED.value,
                    ),
                )
                self.require_rows(
                    cursor,
                    entity="installment",
                    entity_id=installment_id,
                    expected=InstallmentStatus.RELEASED.value,
                )
        return batch_id
