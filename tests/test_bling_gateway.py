import unittest

from faturamento.contexts.fiscal.domain.contracts import FiscalInstallmentV1, FiscalOrderLineV1, FiscalOrderV1
from faturamento.contexts.fiscal.domain.gateway import FiscalGatewayError
from faturamento.contexts.fiscal.infrastructure.bling_gateway import BlingGateway
from faturamento.contexts.fiscal.infrastructure.mappers import map_fiscal_order_to_bling_payload
from faturamento.errors import ValidationError
from faturamento.services import replace_fiscal_gateway
from tests.helpers.billing_app import BillingAppTestCase
from tests.helpers.fiscal_fakes import unreachable


class StaticTokens:
    def with_valid_token(self, fn):
        return fn("token-fixo")


class RecordingBlingHttp:
    def __init__(self, responses: dict) -> None:
        self.responses = responses
        self.requests: list[dict] = []

    def request_json(self, method, path, token, payload=None, query=None, allow_retry=False):
        self.requests.append(
            {
                "method": method,
                "path": path,
                "token": token,
                "payload": payload,
                "query": query,
                "allow_retry": allow_retry,
            }
        )
        response = self.responses[(method, path)]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _order(**overrides) -> FiscalOrderV1:
    values = dict(
        store_reference="PROP-42",
        client_name="Livraria Central Ltda",
        client_tax_id="12.345.678/0001-90",
        nature_of_operation_id="15108",
        client_state_registration="123.456.789.000",
        address={"street": "Rua das Flores", "number": "100", "city": "Sao Paulo", "state": "SP", "zip": "01001-000"},
        vendor_reference="9001",
        issued_on="2026-01-10",
        lines=[FiscalOrderLineV1(sku="LIV-001", description="Livro A", qty=10, unit_price=99.999)],
        installments=[
            FiscalInstallmentV1(due_date="2026-02-09", amount=500.0, note="Parcela 1/2"),
            FiscalInstallmentV1(due_date="2026-03-11", amount=500.0, note="Parcela 2/2"),
        ],
        shipping_value=25.0,
        discount_value=50.0,
        notes="Proposta 42",
    )
    values.update(overrides)
    return FiscalOrderV1(**values)


class BlingOrderPayloadTest(unittest.TestCase):
    def test_payload_maps_company_client_and_installments(self) -> None:
        payload = map_fiscal_order_to_bling_payload(_order())

        self.assertEqual(payload["numeroLoja"], "PROP-42")
        self.assertEqual(payload["contato"]["tipoPessoa"], "J")
        self.assertEqual(payload["contato"]["numeroDocumento"], "12345678000190")
        self.assertEqual(payload["contato"]["ie"], "123456789000")
        self.assertEqual(payload["naturezaOperacao"], {"id": 15108})
        self.assertEqual(payload["vendedor"], {"id": 9001})
        self.assertEqual(payload["itens"][0]["valor"], 100.0)
        self.assertEqual([item["valor"] for item in payload["parcelas"]], [500.0, 500.0])
        self.assertEqual(payload["transporte"]["frete"], 25.0)
        self.assertEqual(payload["transporte"]["etiqueta"]["cep"], "01001000")
        self.assertEqual(payload["desconto"], {"valor": 50.0, "unidade": "REAL"})

    def test_individual_client_without_discount(self) -> None:
        payload = map_fiscal_order_to_bling_payload(
            _order(client_tax_id="123.456.789-09", discount_value=0.0, vendor_reference=None),
        )

        self.assertEqual(payload["contato"]["tipoPessoa"], "F")
        self.assertNotIn("desconto", payload)
        self.assertNotIn("vendedor", payload)

    def test_lines_without_sku_are_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            map_fiscal_order_to_bling_payload(_order(lines=[FiscalOrderLineV1(sku="", description="Livro B")]))
        self.assertIn("Livro B", ctx.exception.details)


class BlingGatewayTest(unittest.TestCase):
    def _gateway(self, responses: dict) -> tuple[BlingGateway, RecordingBlingHttp]:
        http = RecordingBlingHttp(responses)
        return BlingGateway(http, StaticTokens()), http

    def test_create_order_fetches_number_when_missing(self) -> None:
        gateway, http = self._gateway(
            {
                ("POST", "pedidos/vendas"): {"data": {"id": 123}},
                ("GET", "pedidos/vendas/123"): {
                    "data": {"id": 123, "numero": 77, "numeroLoja": "PROP-42", "naturezaOperacao": {"id": 15108}},
                },
            }
        )

        result = gateway.create_order(_order())

        self.assertEqual(result.order_id, "123")
        self.assertEqual(result.order_number, "77")
        self.assertFalse(result.duplicate)
        self.assertEqual(http.requests[0]["token"], "token-fixo")
        self.assertFalse(http.requests[0]["allow_retry"])
        self.assertTrue(http.requests[1]["allow_retry"])

    def test_create_order_keeps_id_when_number_lookup_fails(self) -> None:
        gateway, http = self._gateway(
            {
                ("POST", "pedidos/vendas"): {"data": {"id": 555}},
                ("GET", "pedidos/vendas/555"): unreachable(),
            }
        )

        with self.assertLogs("faturamento", level="WARNING") as logs:
            result = gateway.create_order(_order())

        self.assertEqual(result.order_id, "555")
        self.assertIsNone(result.order_number)
        self.assertEqual(
            [(request["method"], request["path"]) for request in http.requests],
            [("POST", "pedidos/vendas"), ("GET", "pedidos/vendas/555")],
        )
        self.assertTrue(any("bling_order_number_lookup_failed" in line for line in logs.output))

    def test_create_order_without_id_is_unreachable(self) -> None:
        gateway, _http = self._gateway({("POST", "pedidos/vendas"): {"data": {}}})

        with self.assertRaises(FiscalGatewayError) as ctx:
            gateway.create_order(_order())
        self.assertEqual(ctx.exception.kind, "gateway_unreachable")

    def test_find_order_prefers_exact_store_reference(self) -> None:
        gateway, http = self._gateway(
            {
                ("GET", "pedidos/vendas"): {
                    "data": [
                        {"id": 1, "numero": "10", "numeroLoja": "PROP-420"},
                        {"id": 2, "numero": "11", "numeroLoja": "PROP-42"},
                    ]
                }
            }
        )

        found = gateway.find_order_by_reference("PROP-42")

        self.assertEqual(found.order_id, "2")
        self.assertTrue(found.duplicate)
        self.assertEqual(http.requests[0]["query"], {"numeroLoja": "PROP-42"})

    def test_find_order_returns_none_when_absent(self) -> None:
        gateway, _http = self._gateway({("GET", "pedidos/vendas"): {"data": []}})

        self.assertIsNone(gateway.find_order_by_reference("PROP-1"))

    def test_order_detail_treats_zero_nature_as_missing(self) -> None:
        gateway, _http = self._gateway(
            {("GET", "pedidos/vendas/5"): {"data": {"id": 5, "numero": 3, "naturezaOperacao": {"id": 0}}}}
        )

        self.assertIsNone(gateway.get_order("5")["nature_of_operation_id"])

    def test_document_lifecycle_calls(self) -> None:
        xml = "<infProt><cStat>225</cStat><xMotivo>Falha no Schema</xMotivo></infProt>"
        gateway, http = self._gateway(
            {
                ("POST", "nfe"): {"data": {"id": 9876}},
                ("POST", "nfe/9876/enviar"): {"data": {"xml": xml}},
                ("GET", "nfe/9876"): {
                    "data": {
                        "id": 9876,
                        "situacao": 6,
                        "numero": "000123",
                        "chaveAcesso": "3" * 44,
                        "linkDanfe": "https://www.bling.com.br/danfe/9876",
                    }
                },
            }
        )

        document_id = gateway.create_document("555")
        rejection = gateway.submit_document(document_id)
        status = gateway.get_document(document_id)

        self.assertEqual(document_id, "9876")
        self.assertEqual(http.requests[0]["payload"], {"idPedidoVenda": 555})
        self.assertEqual(rejection, "SEFAZ cStat 225: Falha no Schema")
        self.assertEqual(status.state, "authorized")
        self.assertEqual(status.number, "000123")
        self.assertEqual(status.danfe_link, "https://www.bling.com.br/danfe/9876")

    def test_rejected_document_reports_reason(self) -> None:
        gateway, _http = self._gateway(
            {("GET", "nfe/1"): {"data": {"id": 1, "situacao": 4, "motivoRejeicao": "<p>IE do destinatario invalida</p>"}}}
        )

        status = gateway.get_document("1")

        self.assertEqual(status.state, "rejected")
        self.assertEqual(status.rejection_reason, "IE do destinatario invalida")

    def test_pending_document(self) -> None:
        gateway, _http = self._gateway({("GET", "nfe/1"): {"data": {"id": 1, "situacao": 5}}})

        self.assertEqual(gateway.get_document("1").state, "pending")


class LiveGatewayApprovalTest(BillingAppTestCase):
    db_prefix = "bling_gateway_approval"

    def test_approval_records_order_when_number_lookup_fails(self) -> None:
        order_detail = {"data": {"id": 555, "numero": 77, "numeroLoja": "PROP-1", "naturezaOperacao": {"id": 15108}}}
        http = RecordingBlingHttp(
            {
                ("POST", "pedidos/vendas"): {"data": {"id": 555}},
                ("GET", "pedidos/vendas/555"): [unreachable(), order_detail],
                ("POST", "nfe"): {"data": {"id": 9876}},
                ("POST", "nfe/9876/enviar"): {"data": {}},
            }
        )
        services = replace_fiscal_gateway(self.app, BlingGateway(http, StaticTokens()))
        proposal_id = self.create_proposal(term="30/60")

        result = services.approvals.approve(self.db, proposal_id, approval_date="2026-01-10")

        self.assertEqual(result.external_order_id, "555")
        self.assertEqual(result.external_order_number, "77")
        proposal = self.proposal_row(proposal_id)
        self.assertEqual(proposal["status"], "APPROVED")
        self.assertEqual(proposal["bling_order_id"], "555")
        self.assertEqual(proposal["bling_order_number"], "77")
        fiscal = self.fiscal_row(proposal_id)
        self.assertEqual(fiscal["status"], "PENDING_AUTHORIZATION")
        self.assertEqual(fiscal["bling_order_number"], "77")
        self.assertEqual([request["path"] for request in http.requests].count("pedidos/vendas"), 1)


if __name__ == "__main__":
    unittest.main()
