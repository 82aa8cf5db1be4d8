import io
import json
import socket
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

from faturamento.contexts.fiscal.domain.gateway import FiscalGatewayError
from faturamento.contexts.fiscal.infrastructure.client import BlingHttpClient
from faturamento.contexts.fiscal.infrastructure.mappers import classify_http_error, extract_sefaz_rejection
from faturamento.contexts.fiscal.infrastructure.settings import BlingSettings


def _response(body: dict) -> MagicMock:
    response = MagicMock()
    response.__enter__.return_value.read.return_value = json.dumps(body).encode("utf-8")
    return response


def _http_error(code: int, body: dict | str) -> urllib.error.HTTPError:
    raw = body if isinstance(body, str) else json.dumps(body)
    return urllib.error.HTTPError(
        "https://api.bling.com.br/Api/v3/pedidos/vendas",
        code,
        "error",
        {},
        io.BytesIO(raw.encode("utf-8")),
    )


class BlingHttpClientTest(unittest.TestCase):
    def setUp(self) -> None:
        self.client = BlingHttpClient(BlingSettings(retry_attempts=2, retry_backoff_ms=0))

    def _request(self, allow_retry: bool = False):
        return self.client.request_json("GET", "pedidos/vendas", "token-123", allow_retry=allow_retry)

    def test_socket_timeout_is_reported_as_timeout(self) -> None:
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError(socket.timeout("timed out"))):
            with self.assertRaises(FiscalGatewayError) as ctx:
                self._request()
        self.assertEqual(ctx.exception.kind, "gateway_timeout")

        with patch("urllib.request.urlopen", side_effect=TimeoutError("read timed out")):
            with self.assertRaises(FiscalGatewayError) as ctx:
                self._request()
        self.assertEqual(ctx.exception.kind, "gateway_timeout")

    def test_refused_connection_is_reported_as_unreachable(self) -> None:
        refused = urllib.error.URLError(ConnectionRefusedError(111, "Connection refused"))
        with patch("urllib.request.urlopen", side_effect=refused):
            with self.assertRaises(FiscalGatewayError) as ctx:
                self._request()
        self.assertEqual(ctx.exception.kind, "gateway_unreachable")
        self.assertIn("Connection refused", ctx.exception.message)

    def test_rate_limit_is_retried_with_backoff(self) -> None:
        side_effect = [_http_error(429, {"error": {"message": "too many"}}), _response({"data": []})]
        with patch("urllib.request.urlopen", side_effect=side_effect) as urlopen, patch("time.sleep") as sleep:
            body = self._request()

        self.assertEqual(body, {"data": []})
        self.assertEqual(urlopen.call_count, 2)
        sleep.assert_called_once()

    def test_server_errors_retry_only_when_allowed(self) -> None:
        with patch(
            "urllib.request.urlopen",
            side_effect=[_http_error(503, {"error": {"message": "busy"}}), _response({"data": {"id": 1}})],
        ), patch("time.sleep"):
            self.assertEqual(self._request(allow_retry=True), {"data": {"id": 1}})

        with patch("urllib.request.urlopen", side_effect=[_http_error(503, {"error": {"message": "busy"}})]):
            with self.assertRaises(FiscalGatewayError) as ctx:
                self._request(allow_retry=False)
        self.assertEqual(ctx.exception.kind, "gateway_unreachable")
        self.assertEqual(ctx.exception.status_code, 503)

    def test_non_utf8_bodies_stay_in_gateway_taxonomy(self) -> None:
        latin1 = MagicMock()
        latin1.__enter__.return_value.read.return_value = b"\xff\xfe{\"data\": 1}"
        with patch("urllib.request.urlopen", return_value=latin1):
            with self.assertRaises(FiscalGatewayError) as ctx:
                self._request()
        self.assertEqual(ctx.exception.kind, "gateway_unreachable")

        error = urllib.error.HTTPError(
            "https://api.bling.com.br/Api/v3/pedidos/vendas",
            400,
            "error",
            {},
            io.BytesIO("Requisi\u00e7\u00e3o inv\u00e1lida".encode("latin-1")),
        )
        with patch("urllib.request.urlopen", side_effect=[error]):
            with self.assertRaises(FiscalGatewayError) as ctx:
                self._request()
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("\ufffd", ctx.exception.body["message"])

    def test_request_carries_bearer_token_and_json_payload(self) -> None:
        with patch("urllib.request.urlopen", return_value=_response({"data": {"id": 9}})) as urlopen:
            self.client.request_json("POST", "nfe", "token-abc", payload={"idPedidoVenda": 55})

        request = urlopen.call_args[0][0]
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.get_header("Authorization"), "Bearer token-abc")
        self.assertEqual(json.loads(request.data.decode("utf-8")), {"idPedidoVenda": 55})
        self.assertTrue(request.full_url.endswith("/nfe"))

    def test_non_json_error_body_is_kept_as_message(self) -> None:
        with patch("urllib.request.urlopen", side_effect=_http_error(400, "<html>Bad Request</html>")):
            with self.assertRaises(FiscalGatewayError) as ctx:
                self._request()
        self.assertEqual(ctx.exception.kind, "fiscal_validation_error")
        self.assertIn("Bad Request", ctx.exception.message)


class BlingErrorClassificationTest(unittest.TestCase):
    def test_inventory_shortage_names_products(self) -> None:
        error = classify_http_error(400, {"error": {"fields": [{"msg": "Estoque insuficiente: LIV-001, LIV-002"}]}})

        self.assertEqual(error.kind, "inventory_insufficient")
        self.assertEqual(error.field_messages, ["LIV-001, LIV-002"])
        self.assertIn("LIV-001", error.message)

    def test_conflict_carries_existing_id(self) -> None:
        error = classify_http_error(409, {"data": {"id": 555}, "error": {"message": "Pedido ja existe"}})

        self.assertEqual(error.kind, "conflict")
        self.assertEqual(error.existing_id, "555")

    def test_duplicate_message_on_422_is_conflict(self) -> None:
        error = classify_http_error(422, {"error": {"fields": [{"msg": "Numero loja já existe"}]}})

        self.assertEqual(error.kind, "conflict")
        self.assertIsNone(error.existing_id)

    def test_field_messages_are_stripped_of_markup(self) -> None:
        error = classify_http_error(
            400,
            {"error": {"fields": {"cep": {"msg": "<b>CEP</b> invalido"}, "ie": {"msg": "IE &amp; UF divergentes"}}}},
        )

        self.assertEqual(error.kind, "fiscal_validation_error")
        self.assertEqual(error.field_messages, ["CEP invalido", "IE & UF divergentes"])

    def test_rate_limit_and_timeouts_are_not_validation(self) -> None:
        self.assertEqual(classify_http_error(429, {}).kind, "gateway_unreachable")
        self.assertEqual(classify_http_error(502, {}).kind, "gateway_unreachable")

    def test_sefaz_rejection_is_extracted_from_protocol(self) -> None:
        xml = (
            "<nfeProc><protNFe><infProt><cStat>539</cStat>"
            "<xMotivo>Rejeicao: Duplicidade de NF-e</xMotivo></infProt></protNFe></nfeProc>"
        )

        self.assertEqual(extract_sefaz_rejection(xml), "SEFAZ cStat 539: Rejeicao: Duplicidade de NF-e")
        self.assertIsNone(extract_sefaz_rejection("<nfeProc></nfeProc>"))
        self.assertIsNone(extract_sefaz_rejection(None))


class FiscalGatewayErrorTest(unittest.TestCase):
    def test_unknown_kind_falls_back_to_unreachable(self) -> None:
        error = FiscalGatewayError("weird", "x")
        self.assertEqual(error.kind, "gateway_unreachable")


if __name__ == "__main__":
    unittest.main()
