import unittest
from unittest.mock import patch

from faturamento.contexts.billing.domain.status import ProposalStatus
from faturamento.contexts.fiscal.domain.contracts import FiscalOrderV1
from faturamento.contexts.fiscal.domain.gateway import FiscalGatewayError
from faturamento.core import ProposalApproved, ProposalRejected, get_event_bus
from faturamento.errors import (
    ClientNotEligibleError,
    GatewayTimeoutError,
    GatewayUnreachableError,
    InvalidStateError,
    InventoryInsufficientError,
    MissingFiscalClassificationError,
    PartialFailureError,
    UnknownTermError,
    ValidationError,
)
from faturamento.services import replace_fiscal_gateway
from tests.helpers.billing_app import CNPJ, CPF, PJ_NATURE_ID, BillingAppTestCase
from tests.helpers.fiscal_fakes import ScriptedFiscalGateway, timeout, unreachable


class ApprovalSagaTest(BillingAppTestCase):
    db_prefix = "faturamento_approval"

    def _approve(self, proposal_id: int, **kwargs):
        kwargs.setdefault("approval_date", "2026-01-10")
        return self.services.approvals.approve(self.db, proposal_id, **kwargs)

    def _events(self, proposal_id: int, entity: str = "proposal") -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM status_events WHERE entity = ? AND entity_id = ? ORDER BY id",
            (entity, proposal_id),
        ).fetchall()
        return [dict(row) for row in rows]

    def test_approve_creates_order_requests_nfe_and_derives_installments(self) -> None:
        published: list = []
        get_event_bus().subscribe(ProposalApproved, published.append)
        proposal_id = self.create_proposal()

        result = self._approve(proposal_id, approved_by="financeiro@example.com")

        self.assertTrue(result.external_order_id)
        self.assertEqual(result.external_order_number, "1001")
        self.assertEqual(result.installments_created, 3)
        self.assertEqual(result.fiscal_document_status, "PENDING_AUTHORIZATION")
        self.assertIsNone(result.issuance_error)
        self.assertEqual(
            self.gateway.calls,
            ["create_order", "get_order", "create_document", "submit_document"],
        )

        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "APPROVED")
        self.assertEqual(row["approval_step"], "COMPLETED")
        self.assertEqual(row["bling_order_id"], result.external_order_id)
        self.assertEqual(row["approved_by"], "financeiro@example.com")
        self.assertEqual(int(row["needs_manual_review"]), 0)
        self.assertTrue(row["confirmed_at"])

        installments = self.installment_rows(proposal_id)
        self.assertEqual([item["face_value"] for item in installments], [333.33, 333.33, 333.34])
        self.assertEqual([item["commission_value"] for item in installments], [6.67, 6.67, 6.67])
        self.assertEqual(
            [item["due_date"] for item in installments],
            ["2026-02-09", "2026-03-11", "2026-04-10"],
        )
        self.assertTrue(all(item["status"] == "AWAITING_INVOICE" for item in installments))
        self.assertTrue(all(item["bling_order_id"] == result.external_order_id for item in installments))

        fiscal = self.fiscal_row(proposal_id)
        self.assertEqual(fiscal["status"], "PENDING_AUTHORIZATION")
        self.assertTrue(fiscal["document_id"])

        self.assertEqual(len(published), 1)
        self.assertEqual(published[0].proposal_id, proposal_id)
        self.assertEqual(
            [event["to_status"] for event in self._events(proposal_id)],
            ["AWAITING_APPROVAL", "APPROVING", "APPROVED"],
        )

    def test_result_serializes_in_camel_case(self) -> None:
        proposal_id = self.create_proposal()

        payload = self._approve(proposal_id).to_dict()

        self.assertEqual(payload["proposalId"], proposal_id)
        self.assertEqual(payload["installmentsCreated"], 3)
        self.assertIn("externalOrderId", payload)
        self.assertIn("externalOrderNumber", payload)

    def test_vendor_without_rate_uses_default_commission(self) -> None:
        proposal_id = self.create_proposal(term="60", vendor_kwargs={"commission_rate": None})

        self._approve(proposal_id)

        installments = self.installment_rows(proposal_id)
        self.assertEqual([item["commission_rate"] for item in installments], [1.5, 1.5])
        self.assertEqual([item["commission_value"] for item in installments], [7.5, 7.5])

    def test_second_approve_is_rejected_without_side_effects(self) -> None:
        proposal_id = self.create_proposal()
        self._approve(proposal_id)
        calls_before = list(self.gateway.calls)

        with self.assertRaises(InvalidStateError) as ctx:
            self._approve(proposal_id)

        self.assertEqual(ctx.exception.message_key, "approval_already_processed")
        self.assertEqual(ctx.exception.http_status, 409)
        self.assertEqual(self.gateway.calls, calls_before)
        self.assertEqual(len(self.installment_rows(proposal_id)), 3)

    def test_unreachable_gateway_leaves_proposal_awaiting_and_retry_creates_one_order(self) -> None:
        proposal_id = self.create_proposal()
        self.gateway.fail_next("create_order", unreachable())

        with self.assertRaises(GatewayUnreachableError) as ctx:
            self._approve(proposal_id)

        self.assertEqual(ctx.exception.http_status, 502)
        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "AWAITING_APPROVAL")
        self.assertEqual(row["approval_step"], "NOT_STARTED")
        self.assertIn("connection refused", row["last_step_error"])
        self.assertIsNone(row["bling_order_id"])
        self.assertEqual(self.installment_rows(proposal_id), [])
        fiscal = self.fiscal_row(proposal_id)
        self.assertEqual(fiscal["status"], "NOT_REQUESTED")
        self.assertEqual(fiscal["last_outcome"], "gateway_unreachable")

        result = self._approve(proposal_id)

        self.assertEqual(result.installments_created, 3)
        self.assertEqual([call for call in self.gateway.calls if call == "create_order"], ["create_order"])
        self.assertEqual(self.proposal_row(proposal_id)["status"], "APPROVED")

    def test_timeout_is_reported_distinctly_from_unreachable(self) -> None:
        proposal_id = self.create_proposal()
        self.gateway.fail_next("create_order", timeout())

        with self.assertRaises(GatewayTimeoutError) as ctx:
            self._approve(proposal_id)

        self.assertNotIsInstance(ctx.exception, GatewayUnreachableError)
        self.assertEqual(ctx.exception.code, "gateway_timeout")
        self.assertEqual(ctx.exception.http_status, 504)
        self.assertEqual(self.proposal_row(proposal_id)["status"], "AWAITING_APPROVAL")
        self.assertEqual(self.fiscal_row(proposal_id)["last_outcome"], "gateway_timeout")

    def test_duplicate_order_with_existing_id_is_adopted(self) -> None:
        proposal_id = self.create_proposal()
        existing = self.gateway.simulator.create_order(
            FiscalOrderV1(
                store_reference=f"PROP-{proposal_id}",
                client_name="Livraria Central Ltda",
                client_tax_id=CNPJ,
                nature_of_operation_id=PJ_NATURE_ID,
            )
        )

        result = self._approve(proposal_id)

        self.assertEqual(result.external_order_id, existing.order_id)
        self.assertEqual(result.external_order_number, existing.order_number)
        self.assertEqual(self.proposal_row(proposal_id)["bling_order_id"], existing.order_id)
        reasons = [event["reason"] for event in self._events(proposal_id, entity="fiscal_document")]
        self.assertIn("duplicate_resolved", reasons)

    def test_duplicate_order_without_id_is_found_by_store_reference(self) -> None:
        proposal_id = self.create_proposal()
        existing = self.gateway.simulator.create_order(
            FiscalOrderV1(
                store_reference=f"PROP-{proposal_id}",
                client_name="Livraria Central Ltda",
                client_tax_id=CNPJ,
                nature_of_operation_id=PJ_NATURE_ID,
            )
        )
        self.gateway.fail_next(
            "create_order",
            FiscalGatewayError("conflict", "Pedido ja cadastrado.", status_code=409),
        )

        result = self._approve(proposal_id)

        self.assertEqual(result.external_order_id, existing.order_id)
        self.assertIn("find_order_by_reference", self.gateway.calls)

    def test_concurrent_claim_loses_compare_and_set(self) -> None:
        proposal_id = self.create_proposal()
        stale = self.proposal_row(proposal_id)
        self.services.approvals.repository.transition_status(
            self.db,
            proposal_id,
            ProposalStatus.AWAITING_APPROVAL,
            ProposalStatus.APPROVING,
        )

        with patch.object(self.services.approvals.repository, "get_by_id", return_value=stale):
            with self.assertRaises(InvalidStateError):
                self._approve(proposal_id)

        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(self.installment_rows(proposal_id), [])

    def test_partial_failure_is_flagged_and_resume_continues_without_new_order(self) -> None:
        proposal_id = self.create_proposal()

        with patch.object(
            self.services.approvals.installments,
            "create_many",
            side_effect=RuntimeError("disk full"),
        ):
            with self.assertRaises(PartialFailureError) as ctx:
                self._approve(proposal_id)

        error = ctx.exception
        self.assertEqual(error.failed_step, "INSTALLMENTS_CREATED")
        self.assertTrue(error.external_order_id)
        self.assertEqual(error.payload["external_order_id"], error.external_order_id)
        self.assertIn(str(error.external_order_number), error.user_message())

        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "APPROVING")
        self.assertEqual(int(row["needs_manual_review"]), 1)
        self.assertEqual(row["approval_step"], "ISSUANCE_REQUESTED")
        self.assertTrue(row["last_step_error"].startswith("INSTALLMENTS_CREATED"))
        self.assertEqual(row["bling_order_id"], error.external_order_id)
        self.assertEqual(self.installment_rows(proposal_id), [])

        result = self.services.approvals.resume_approval(self.db, proposal_id, approval_date="2026-01-10")

        self.assertEqual(result.external_order_id, error.external_order_id)
        self.assertEqual(result.installments_created, 3)
        self.assertEqual(self.gateway.calls.count("create_order"), 1)
        self.assertEqual(self.gateway.calls.count("submit_document"), 1)
        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "APPROVED")
        self.assertEqual(int(row["needs_manual_review"]), 0)

    def test_resume_on_later_day_keeps_due_dates_sent_with_order(self) -> None:
        proposal_id = self.create_proposal()

        with patch.object(
            self.services.approvals.installments,
            "create_many",
            side_effect=RuntimeError("disk full"),
        ):
            with self.assertRaises(PartialFailureError):
                self._approve(proposal_id)
        self.assertEqual(self.proposal_row(proposal_id)["approval_date"], "2026-01-10")

        self.services.approvals.resume_approval(self.db, proposal_id, approval_date="2026-02-20")

        self.assertEqual(
            [row["due_date"] for row in self.installment_rows(proposal_id)],
            ["2026-02-09", "2026-03-11", "2026-04-10"],
        )
        self.assertEqual(self.gateway.calls.count("create_order"), 1)

    def test_invalid_approval_date_is_rejected_before_claim(self) -> None:
        proposal_id = self.create_proposal()

        with self.assertRaises(ValidationError) as ctx:
            self._approve(proposal_id, approval_date="31/02/2026")

        self.assertEqual(ctx.exception.code, "invalid_date")
        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "AWAITING_APPROVAL")
        self.assertIsNone(row["approval_date"])
        self.assertEqual(self.gateway.calls, [])

    def test_failure_before_order_clears_approval_date(self) -> None:
        proposal_id = self.create_proposal()
        self.gateway.fail_next("create_order", unreachable())

        with self.assertRaises(GatewayUnreachableError):
            self._approve(proposal_id)

        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "AWAITING_APPROVAL")
        self.assertIsNone(row["approval_date"])

    def test_failure_recording_order_resumes_from_stored_fiscal_row(self) -> None:
        proposal_id = self.create_proposal()

        with patch.object(
            self.services.approvals.repository,
            "record_external_order",
            side_effect=RuntimeError("lock timeout"),
        ):
            with self.assertRaises(PartialFailureError) as ctx:
                self._approve(proposal_id)

        self.assertEqual(ctx.exception.failed_step, "ORDER_CREATED")
        self.assertEqual(self.proposal_row(proposal_id)["approval_step"], "CLAIMED")

        result = self.services.approvals.resume_approval(self.db, proposal_id, approval_date="2026-01-10")

        self.assertEqual(result.external_order_id, ctx.exception.external_order_id)
        self.assertEqual(self.gateway.calls.count("create_order"), 1)
        self.assertEqual(self.proposal_row(proposal_id)["bling_order_id"], result.external_order_id)

    def test_resume_requires_flagged_approval(self) -> None:
        proposal_id = self.create_proposal()

        with self.assertRaises(InvalidStateError) as ctx:
            self.services.approvals.resume_approval(self.db, proposal_id)
        self.assertEqual(ctx.exception.message_key, "resume_not_allowed")

        self._approve(proposal_id)
        with self.assertRaises(InvalidStateError):
            self.services.approvals.resume_approval(self.db, proposal_id)

    def test_issuance_failure_does_not_fail_approval(self) -> None:
        proposal_id = self.create_proposal()
        self.gateway.fail_next("create_document", unreachable("Bling fora do ar"))

        result = self._approve(proposal_id)

        self.assertEqual(result.installments_created, 3)
        self.assertEqual(result.fiscal_document_status, "CREATED")
        self.assertIn("Bling fora do ar", result.issuance_error)
        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "APPROVED")
        self.assertIn("Bling fora do ar", row["last_step_error"])

    def test_reject_closes_proposal_and_blocks_approval(self) -> None:
        published: list = []
        get_event_bus().subscribe(ProposalRejected, published.append)
        proposal_id = self.create_proposal()

        payload = self.services.approvals.reject(
            self.db,
            proposal_id,
            reason="  Cliente com restricao  ",
            rejected_by="financeiro@example.com",
        )

        self.assertEqual(payload["status"], "REJECTED")
        self.assertEqual(payload["rejection_reason"], "Cliente com restricao")
        row = self.proposal_row(proposal_id)
        self.assertEqual(row["rejected_by"], "financeiro@example.com")
        self.assertEqual(len(published), 1)

        with self.assertRaises(InvalidStateError):
            self._approve(proposal_id)
        with self.assertRaises(InvalidStateError):
            self.services.approvals.reject(self.db, proposal_id)
        self.assertEqual(self.gateway.calls, [])

    def test_client_not_eligible_never_reaches_gateway(self) -> None:
        proposal_id = self.create_proposal(client_kwargs={"can_invoice": False})

        with self.assertRaises(ClientNotEligibleError):
            self._approve(proposal_id)

        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(self.proposal_row(proposal_id)["status"], "AWAITING_APPROVAL")

    def test_unknown_stored_term_fails_before_gateway(self) -> None:
        proposal_id = self.create_proposal()
        self.db.execute("UPDATE proposals SET invoicing_term = '45' WHERE id = ?", (proposal_id,))
        self.db.commit()

        with self.assertRaises(UnknownTermError):
            self._approve(proposal_id)

        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(self.installment_rows(proposal_id), [])
        self.assertEqual(self.proposal_row(proposal_id)["status"], "AWAITING_APPROVAL")

    def test_items_without_sku_are_rejected_before_gateway(self) -> None:
        proposal_id = self.create_proposal(
            items=[{"sku": "", "description": "Livro sem cadastro", "quantity": 1, "unit_price": 50.0}],
        )

        with self.assertRaises(ValidationError) as ctx:
            self._approve(proposal_id)

        self.assertEqual(ctx.exception.code, "items_without_sku")
        self.assertIn("Livro sem cadastro", ctx.exception.details)
        self.assertEqual(self.gateway.calls, [])

    def test_inventory_shortage_is_prominent(self) -> None:
        self.gateway = ScriptedFiscalGateway(out_of_stock_skus=["LIV-001"])
        self.services = replace_fiscal_gateway(self.app, self.gateway)
        proposal_id = self.create_proposal()

        with self.assertRaises(InventoryInsufficientError) as ctx:
            self._approve(proposal_id)

        self.assertTrue(ctx.exception.payload["prominent"])
        self.assertIn("LIV-001", ctx.exception.user_message())
        self.assertEqual(self.proposal_row(proposal_id)["status"], "AWAITING_APPROVAL")

    def test_individual_client_uses_pf_nature(self) -> None:
        proposal_id = self.create_proposal(client_kwargs={"tax_id": CPF, "name": "Maria Leitora"})

        self._approve(proposal_id)

        self.assertEqual(self.fiscal_row(proposal_id)["nature_of_operation_id"], "15107")


class ApprovalWithoutNatureTest(BillingAppTestCase):
    db_prefix = "faturamento_approval_nature"
    config_overrides = {"BLING_NATUREZA_OPERACAO_PJ_ID": ""}

    def test_missing_nature_of_operation_blocks_order(self) -> None:
        proposal_id = self.create_proposal()

        with self.assertRaises(MissingFiscalClassificationError):
            self.services.approvals.approve(self.db, proposal_id, approval_date="2026-01-10")

        self.assertEqual(self.gateway.calls, [])
        row = self.proposal_row(proposal_id)
        self.assertEqual(row["status"], "AWAITING_APPROVAL")
        self.assertEqual(self.installment_rows(proposal_id), [])


if __name__ == "__main__":
    unittest.main()
