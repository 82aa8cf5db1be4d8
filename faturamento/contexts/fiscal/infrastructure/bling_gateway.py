from __future__ import annotations

import logging

from faturamento.contexts.fiscal.domain.contracts import DocumentStatusV1, FiscalOrderV1, OrderCreationResultV1
from faturamento.contexts.fiscal.domain.gateway import FiscalGateway, FiscalGatewayError
from faturamento.contexts.fiscal.infrastructure.client import BlingHttpClient
from faturamento.contexts.fiscal.infrastructure.credentials import TokenProvider
from faturamento.contexts.fiscal.infrastructure.mappers.bling_order_mapper import (
    map_document_id,
    map_document_status,
    map_fiscal_order_to_bling_payload,
    map_order_creation_response,
    map_order_detail,
    map_submission_rejection,
)


logger = logging.getLogger("faturamento")


class BlingGateway(FiscalGateway):
    """Bling API v3: sales orders (pedidos/vendas) and NF-e."""

    def __init__(self, http: BlingHttpClient, tokens: TokenProvider) -> None:
        self.http = http
        self.tokens = tokens

    def _call(self, method: str, path: str, *, payload: dict | None = None, query: dict | None = None):
        allow_retry = method.upper() == "GET"
        return self.tokens.with_valid_token(
            lambda token: self.http.request_json(
                method,
                path,
                token,
                payload=payload,
                query=query,
                allow_retry=allow_retry,
            )
        )

    def create_order(self, order: FiscalOrderV1) -> OrderCreationResultV1:
        body = self._call("POST", "pedidos/vendas", payload=map_fiscal_order_to_bling_payload(order))
        result = map_order_creation_response(body)
        if result is None:
            raise FiscalGatewayError("gateway_unreachable", "Bling nao retornou o id do pedido criado.", body=body)
        if not result.order_number:
            # Order exists from here on; the number is backfilled at issuance.
            try:
                result.order_number = self.get_order(result.order_id).get("order_number")
            except FiscalGatewayError as exc:
                logger.warning(
                    "bling_order_number_lookup_failed",
                    extra={"external_order_id": result.order_id, "kind": exc.kind, "details": exc.message},
                )
        return result

    def find_order_by_reference(self, store_reference: str) -> OrderCreationResultV1 | None:
        body = self._call("GET", "pedidos/vendas", query={"numeroLoja": store_reference})
        records = body.get("data") if isinstance(body, dict) else None
        if isinstance(records, list):
            exact = [record for record in records if str(record.get("numeroLoja") or "") == str(store_reference)]
            if exact:
                body = {"data": exact}
        return map_order_creation_response(body, duplicate=True)

    def get_order(self, order_id: str) -> dict:
        return map_order_detail(self._call("GET", f"pedidos/vendas/{order_id}"))

    def create_document(self, order_id: str) -> str:
        order_ref = int(order_id) if str(order_id).isdigit() else order_id
        body = self._call("POST", "nfe", payload={"idPedidoVenda": order_ref})
        document_id = map_document_id(body)
        if not document_id:
            raise FiscalGatewayError("gateway_unreachable", "Bling nao retornou o id da NF-e.", body=body)
        return document_id

    def find_document_by_order(self, order_id: str) -> str | None:
        return map_document_id(self._call("GET", "nfe", query={"idPedidoVenda": order_id}))

    def submit_document(self, document_id: str) -> str | None:
        return map_submission_rejection(self._call("POST", f"nfe/{document_id}/enviar"))

    def get_document(self, document_id: str) -> DocumentStatusV1:
        return map_document_status(document_id, self._call("GET", f"nfe/{document_id}"))
