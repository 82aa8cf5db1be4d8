from __future__ import annotations

import hashlib
from threading import Lock
from typing import Dict, Iterable

from faturamento.contexts.fiscal.domain.contracts import DocumentStatusV1, FiscalOrderV1, OrderCreationResultV1
from faturamento.contexts.fiscal.domain.gateway import FiscalGateway, FiscalGatewayError


class SimulatedBlingGateway(FiscalGateway):
    """In-memory Bling: stable ids per seed, duplicate detection, NF-e authorized on the second poll."""

    def __init__(self, seed: int = 42, *, out_of_stock_skus: Iterable[str] | None = None) -> None:
        self.seed = int(seed)
        self.out_of_stock_skus = {str(sku).strip().upper() for sku in (out_of_stock_skus or [])}
        self._lock = Lock()
        self._orders: Dict[str, dict] = {}
        self._orders_by_reference: Dict[str, str] = {}
        self._documents: Dict[str, dict] = {}
        self._documents_by_order: Dict[str, str] = {}
        self.calls: list[str] = []

    def _digits(self, namespace: str, key: str, size: int) -> str:
        digest = hashlib.sha256(f"{namespace}:{self.seed}:{key}".encode("utf-8")).hexdigest()
        return str(int(digest, 16)).zfill(size)[-size:]

    def create_order(self, order: FiscalOrderV1) -> OrderCreationResultV1:
        with self._lock:
            self.calls.append("create_order")
            if not str(order.nature_of_operation_id or "").strip():
                raise FiscalGatewayError(
                    "fiscal_validation_error",
                    "Natureza de operacao obrigatoria.",
                    status_code=400,
                    field_messages=["Natureza de operacao obrigatoria."],
                )
            missing = [line.sku for line in order.lines if line.sku.strip().upper() in self.out_of_stock_skus]
            if missing:
                products = ", ".join(missing)
                raise FiscalGatewayError(
                    "inventory_insufficient",
                    f"Estoque insuficiente no Bling para: {products}",
                    status_code=400,
                    field_messages=[products],
                )

            existing_id = self._orders_by_reference.get(order.store_reference)
            if existing_id:
                raise FiscalGatewayError(
                    "conflict",
                    "Pedido ja existe para este numeroLoja.",
                    status_code=409,
                    existing_id=existing_id,
                )

            order_id = self._digits("order", order.store_reference, 10)
            number = str(len(self._orders) + 1001)
            self._orders[order_id] = {
                "order_id": order_id,
                "order_number": number,
                "store_reference": order.store_reference,
                "nature_of_operation_id": order.nature_of_operation_id,
            }
            self._orders_by_reference[order.store_reference] = order_id
            return OrderCreationResultV1(order_id=order_id, order_number=number)

    def find_order_by_reference(self, store_reference: str) -> OrderCreationResultV1 | None:
        with self._lock:
            self.calls.append("find_order_by_reference")
            order_id = self._orders_by_reference.get(str(store_reference))
            if not order_id:
                return None
            record = self._orders[order_id]
            return OrderCreationResultV1(order_id=order_id, order_number=record["order_number"], duplicate=True)

    def get_order(self, order_id: str) -> dict:
        with self._lock:
            self.calls.append("get_order")
            record = self._orders.get(str(order_id))
            if record is None:
                raise FiscalGatewayError("fiscal_validation_error", "Pedido nao encontrado.", status_code=404)
            return dict(record)

    def create_document(self, order_id: str) -> str:
        with self._lock:
            self.calls.append("create_document")
            if str(order_id) not in self._orders:
                raise FiscalGatewayError("fiscal_validation_error", "Pedido nao encontrado.", status_code=404)
            existing_id = self._documents_by_order.get(str(order_id))
            if existing_id:
                raise FiscalGatewayError(
                    "conflict",
                    "NF-e ja existe para este pedido.",
                    status_code=409,
                    existing_id=existing_id,
                )
            document_id = self._digits("nfe", str(order_id), 9)
            self._documents[document_id] = {"order_id": str(order_id), "submitted": False, "polls": 0}
            self._documents_by_order[str(order_id)] = document_id
            return document_id

    def find_document_by_order(self, order_id: str) -> str | None:
        with self._lock:
            self.calls.append("find_document_by_order")
            return self._documents_by_order.get(str(order_id))

    def submit_document(self, document_id: str) -> str | None:
        with self._lock:
            self.calls.append("submit_document")
            record = self._documents.get(str(document_id))
            if record is None:
                raise FiscalGatewayError("fiscal_validation_error", "NF-e nao encontrada.", status_code=404)
            record["submitted"] = True
            return None

    def get_document(self, document_id: str) -> DocumentStatusV1:
        with self._lock:
            self.calls.append("get_document")
            record = self._documents.get(str(document_id))
            if record is None:
                raise FiscalGatewayError("fiscal_validation_error", "NF-e nao encontrada.", status_code=404)
            if not record["submitted"]:
                return DocumentStatusV1(document_id=str(document_id), situation=1)
            record["polls"] += 1
            if record["polls"] < 2:
                return DocumentStatusV1(document_id=str(document_id), situation=5)
            number = self._digits("numero", str(document_id), 6)
            return DocumentStatusV1(
                document_id=str(document_id),
                situation=6,
                number=number,
                access_key=self._digits("chave", str(document_id), 44),
                danfe_link=f"https://simulador.bling.local/danfe/{document_id}",
            )
