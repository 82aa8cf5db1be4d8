import unittest

from faturamento.ui_strings import success_message
from tests.helpers.billing_app import CNPJ, BillingAppTestCase


class BillingSmokeTest(BillingAppTestCase):
    db_prefix = "billing_smoke"

    def _post(self, path: str, payload: dict | None = None, expected_status: int = 200) -> dict:
        response = self.client.post(path, json=payload or {}, headers={"X-User-Email": "financeiro@example.com"})
        self.assertEqual(response.status_code, expected_status, msg=response.get_data(as_text=True))
        return response.get_json() or {}

    def _register_client(self) -> tuple[int, int]:
        vendor = self._post(
            "/api/vendors",
            {"name": "Ana Vendas", "email": "ana@example.com", "commission_rate": "2,5", "bling_vendor_id": "9001"},
            expected_status=201,
        )
        self.assertEqual(vendor["commission_rate"], 2.5)

        client = self._post(
            "/api/clients",
            {
                "name": "Livraria Central Ltda",
                "tax_id": CNPJ,
                "email": "compras@example.com",
                "address_street": "Rua das Flores",
                "address_number": "100",
                "address_district": "Centro",
                "address_city": "Sao Paulo",
                "address_state": "SP",
                "address_zip": "01001-000",
                "vendor_id": vendor["id"],
                "can_invoice": True,
            },
            expected_status=201,
        )
        self.assertEqual(client["can_invoice"], 1)
        return int(vendor["id"]), int(client["id"])

    def test_proposal_flow_from_submission_to_payment(self) -> None:
        vendor_id, client_id = self._register_client()

        discount = self._post(f"/api/clients/{client_id}/discount", {"discount_percent": 10})
        self.assertEqual(discount["client"]["discount_percent"], 10.0)
        self.assertEqual(discount["client"]["discount_assigned_by"], "financeiro@example.com")

        proposal = self._post(
            "/api/proposals",
            {
                "client_id": client_id,
                "vendor_id": vendor_id,
                "invoicing_term": "30/60",
                "items": [{"sku": "LIV-001", "description": "Livro A", "quantity": 10, "unit_price": 100}],
            },
            expected_status=201,
        )
        self.assertEqual(proposal["invoicing_term"], "60")
        self.assertEqual(proposal["total_value"], 900.0)
        self.assertEqual(proposal["message"], success_message("proposal_saved"))
        proposal_id = proposal["id"]

        approval = self._post(f"/api/proposals/{proposal_id}/approve", {"approval_date": "2026-01-10"})
        self.assertEqual(approval["installmentsCreated"], 2)
        self.assertEqual(approval["externalOrderNumber"], "1001")
        self.assertEqual(approval["fiscalDocumentStatus"], "PENDING_AUTHORIZATION")

        detail = self.client.get(f"/api/proposals/{proposal_id}").get_json()
        self.assertEqual(detail["proposal"]["status"], "APPROVED")
        self.assertEqual(detail["proposal"]["status_label"], "Faturada")
        self.assertEqual(detail["proposal"]["approved_by"], "financeiro@example.com")
        self.assertEqual([row["face_value"] for row in detail["installments"]], [450.0, 450.0])
        self.assertEqual([row["commission_value"] for row in detail["installments"]], [11.25, 11.25])
        self.assertEqual([row["due_date"] for row in detail["installments"]], ["2026-02-09", "2026-03-11"])
        self.assertEqual({row["status_label"] for row in detail["installments"]}, {"Aguardando NF"})
        self.assertEqual(detail["fiscal_document"]["status_label"], "Aguardando SEFAZ")
        self.assertEqual(
            [event["reason"] for event in detail["history"]],
            ["approval_completed", "approval_claimed", "proposal_submitted"],
        )

        reissued = self._post(f"/api/proposals/{proposal_id}/fiscal-document/issue")
        self.assertEqual(reissued["status"], "PENDING_AUTHORIZATION")
        self.assertEqual(reissued["document_id"], detail["fiscal_document"]["document_id"])
        self.assertEqual(self.gateway.calls.count("submit_document"), 1)

        pending = self._post(f"/api/proposals/{proposal_id}/fiscal-document/poll")
        self.assertEqual(pending["outcome"], "pending_authorization")
        self.assertEqual(pending["message"], success_message("nfe_pending"))

        authorized = self._post(f"/api/proposals/{proposal_id}/fiscal-document/poll")
        self.assertEqual(authorized["outcome"], "authorized")
        self.assertTrue(authorized["document_number"])
        installments = self.installment_rows(proposal_id)
        self.assertEqual({row["status"] for row in installments}, {"PENDING"})

        matched = self._post(
            "/api/reconciliation/match",
            {
                "entries": [
                    {
                        "sacado": "LIVRARIA CENTRAL",
                        "valor": "450,00",
                        "data_vencimento": "09/02/2026",
                        "numero_titulo": "T-1",
                    }
                ]
            },
        )
        self.assertEqual(matched["summary"]["matched"], 1)
        self.assertEqual(matched["matches"][0]["selected_installment_id"], installments[0]["id"])

        confirmed = self._post("/api/reconciliation/confirm", {"matches": matched["matches"], "today": "2026-02-10"})
        self.assertEqual(confirmed["succeeded"], 1)
        self.assertEqual(confirmed["message"], success_message("reconciliation_done"))

        paid = self._post(f"/api/installments/{installments[1]['id']}/mark-paid", {"payment_date": "11/03/2026"})
        self.assertEqual(paid["status"], "PAID")
        self.assertEqual(paid["payment_date"], "2026-03-11")

        refreshed = self._post("/api/installments/refresh-statuses", {"today": "2026-12-31"})
        self.assertEqual(refreshed["overdue"], 0)
        self.assertEqual({row["status"] for row in self.installment_rows(proposal_id)}, {"PAID"})

        health = self.client.get("/health").get_json()
        self.assertEqual(health["status"], "ok")

    def test_rejected_proposal_cannot_be_approved(self) -> None:
        vendor_id, client_id = self._register_client()
        proposal = self._post(
            "/api/proposals",
            {
                "client_id": client_id,
                "vendor_id": vendor_id,
                "invoicing_term": "30",
                "items": [{"sku": "LIV-001", "description": "Livro A", "quantity": 1, "unit_price": 50}],
            },
            expected_status=201,
        )

        rejected = self._post(f"/api/proposals/{proposal['id']}/reject", {"reason": "  Sem limite de credito  "})
        self.assertEqual(rejected["status"], "REJECTED")

        response = self.client.post(f"/api/proposals/{proposal['id']}/approve", json={})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(self.gateway.calls, [])

    def test_discount_outside_range_is_rejected(self) -> None:
        _vendor_id, client_id = self._register_client()

        response = self.client.post(f"/api/clients/{client_id}/discount", json={"discount_percent": 120})

        self.assertEqual(response.status_code, 400)
        self.assertEqual((response.get_json() or {}).get("error"), "validation_error")

    def test_unknown_term_is_rejected_on_submission(self) -> None:
        vendor_id, client_id = self._register_client()

        response = self.client.post(
            "/api/proposals",
            json={
                "client_id": client_id,
                "vendor_id": vendor_id,
                "invoicing_term": "45/90",
                "items": [{"sku": "LIV-001", "description": "Livro A", "quantity": 1, "unit_price": 50}],
            },
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual((response.get_json() or {}).get("error"), "unknown_term")


if __name__ == "__main__":
    unittest.main()
