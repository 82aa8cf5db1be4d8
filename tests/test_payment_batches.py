import unittest
from datetime import date

from faturamento.core import InstallmentsPaid, get_event_bus
from faturamento.errors import InvalidStateError, NotFoundError, ValidationError
from tests.helpers.billing_app import BillingAppTestCase


class PaymentBatchTest(BillingAppTestCase):
    db_prefix = "faturamento_payment_batches"

    def setUp(self) -> None:
        super().setUp()
        self.first = self._approved_and_linked()
        self.second = self._approved_and_linked()
        scheduled = [row["id"] for row in self.installment_rows(self.first)]
        scheduled += [row["id"] for row in self.installment_rows(self.second)[:2]]
        for installment_id in scheduled:
            self.db.execute(
                "UPDATE commission_installments SET status = 'SCHEDULED' WHERE id = ?",
                (installment_id,),
            )
        self.db.commit()
        self.services.installments.refresh_statuses(self.db, today="2026-03-05")
        self.released = scheduled

    def _approved_and_linked(self) -> int:
        proposal_id = self.create_proposal()
        self.services.approvals.approve(self.db, proposal_id, approval_date="2026-01-10")
        self.services.installments.link_fiscal_document(
            self.db,
            proposal_id,
            document_number="000777",
            document_link="https://simulador.bling.local/danfe/777",
        )
        return proposal_id

    def _batch_count(self) -> int:
        row = self.db.execute("SELECT COUNT(*) AS total FROM commission_payment_batches").fetchone()
        return int(row["total"])

    def test_batch_pays_released_installments_with_vendor_totals(self) -> None:
        published: list = []
        get_event_bus().subscribe(InstallmentsPaid, published.append)

        result = self.services.installments.create_payment_batch(
            self.db,
            self.released,
            "2026-03-A",
            created_by="financeiro@example.com",
            today=date(2026, 3, 6),
        )

        first_rows = self.installment_rows(self.first)
        second_rows = self.installment_rows(self.second)
        paid = first_rows + second_rows[:2]
        self.assertTrue(all(row["status"] == "PAID" for row in paid))
        self.assertTrue(all(row["payment_batch_id"] == result["id"] for row in paid))
        self.assertTrue(all(row["payment_date"] == "2026-03-06" for row in paid))
        self.assertEqual(second_rows[2]["status"], "PENDING")
        self.assertIsNone(second_rows[2]["payment_batch_id"])

        self.assertEqual(result["item_count"], 5)
        self.assertAlmostEqual(result["total_commission"], sum(row["commission_value"] for row in paid), places=2)
        by_vendor = {vendor["vendor_id"]: vendor for vendor in result["vendors"]}
        first_vendor = self.proposal_row(self.first)["vendor_id"]
        second_vendor = self.proposal_row(self.second)["vendor_id"]
        self.assertEqual(by_vendor[first_vendor]["item_count"], 3)
        self.assertEqual(by_vendor[second_vendor]["item_count"], 2)
        self.assertAlmostEqual(
            by_vendor[second_vendor]["total_commission"],
            sum(row["commission_value"] for row in second_rows[:2]),
            places=2,
        )

        self.assertEqual(len(published), 1)
        self.assertEqual(published[0].source, "payment_batch")
        self.assertEqual(sorted(published[0].installment_ids), sorted(self.released))

    def test_stale_installment_leaves_whole_batch_unpaid(self) -> None:
        pending_id = self.installment_rows(self.second)[2]["id"]

        with self.assertRaises(InvalidStateError):
            self.services.installments.create_payment_batch(self.db, [*self.released, pending_id], "2026-03-B")

        with self.assertRaises(InvalidStateError):
            self.services.installments.repository.pay_into_batch(
                self.db,
                reference="2026-03-B",
                installment_ids=[*self.released, pending_id],
                paid_on="2026-03-06",
                created_by=None,
                total_commission=1.0,
            )

        self.assertEqual(self._batch_count(), 0)
        statuses = [row["status"] for row in self.installment_rows(self.first)]
        self.assertEqual(statuses, ["RELEASED", "RELEASED", "RELEASED"])
        self.assertTrue(all(row["payment_batch_id"] is None for row in self.installment_rows(self.first)))

    def test_reference_must_be_unique_and_installments_paid_once(self) -> None:
        self.services.installments.create_payment_batch(self.db, self.released[:2], "2026-03-C")

        with self.assertRaises(ValidationError) as ctx:
            self.services.installments.create_payment_batch(self.db, self.released[2:], "2026-03-C")
        self.assertEqual(ctx.exception.code, "batch_reference_taken")

        with self.assertRaises(InvalidStateError):
            self.services.installments.create_payment_batch(self.db, self.released[1:3], "2026-03-D")

        self.assertEqual(self._batch_count(), 1)
        self.assertEqual(self.installment_rows(self.first)[2]["status"], "RELEASED")

    def test_batch_requires_reference_and_known_items(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.services.installments.create_payment_batch(self.db, self.released, "  ")
        self.assertEqual(ctx.exception.code, "batch_reference_required")

        with self.assertRaises(ValidationError) as ctx:
            self.services.installments.create_payment_batch(self.db, [], "2026-03-E")
        self.assertEqual(ctx.exception.code, "batch_items_required")

        with self.assertRaises(NotFoundError):
            self.services.installments.create_payment_batch(self.db, [self.released[0], 999999], "2026-03-E")

        self.assertEqual(self._batch_count(), 0)

    def test_http_batch_detail_and_csv_export(self) -> None:
        response = self.client.post(
            "/api/payment-batches",
            json={"installment_ids": self.released[:3], "reference": "2026-03-F"},
            headers={"X-User-Email": "financeiro@example.com"},
        )

        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertEqual(body["item_count"], 3)
        self.assertEqual(body["message"], "Lote de pagamento criado com sucesso.")

        detail = self.client.get(f"/api/payment-batches/{body['id']}").get_json()
        self.assertEqual(detail["reference"], "2026-03-F")
        self.assertEqual(detail["created_by"], "financeiro@example.com")
        self.assertEqual(len(detail["installments"]), 3)
        self.assertTrue(all(row["status"] == "PAID" for row in detail["installments"]))

        export = self.client.get(f"/api/payment-batches/{body['id']}/export.csv")
        self.assertEqual(export.status_code, 200)
        self.assertEqual(export.mimetype, "text/csv")
        self.assertIn("lote_2026-03-F.csv", export.headers["Content-Disposition"])
        lines = export.get_data(as_text=True).splitlines()
        self.assertEqual(lines[0], "Lote;2026-03-F")
        self.assertTrue(lines[1].startswith("Total;R$ "))
        self.assertEqual(lines[3], "Vendedor;Cliente;Parcela;Vencimento;Valor Comissao")
        self.assertEqual(lines[4].split(";")[:4], ["Vendedor Teste", "Livraria Central Ltda", "1/3", "09/02/2026"])
        self.assertEqual(len(lines), 7)

        missing = self.client.get("/api/payment-batches/999999")
        self.assertEqual(missing.status_code, 404)

        rejected = self.client.post("/api/payment-batches", json={"reference": "2026-03-G"})
        self.assertEqual(rejected.status_code, 400)
        self.assertEqual(rejected.get_json()["error"], "batch_items_required")


if __name__ == "__main__":
    unittest.main()
