from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from faturamento.contexts.fiscal.domain.contracts import (
    DocumentStatusV1,
    FiscalOrderV1,
    OrderCreationResultV1,
)


FISCAL_ERROR_KINDS = {
    "fiscal_validation_error",
    "inventory_insufficient",
    "gateway_unreachable",
    "gateway_timeout",
    "conflict",
}


class FiscalGatewayError(RuntimeError):
    def __init__(
        self,
        kind: str,
        message: str,
        *,
        status_code: int | None = None,
        field_messages: Iterable[str] | None = None,
        existing_id: str | None = None,
        body: object | None = None,
    ) -> None:
        super().__init__(message)
        normalized = str(kind or "").strip()
        self.kind = normalized if normalized in FISCAL_ERROR_KINDS else "gateway_unreachable"
        self.message = message
        self.status_code = status_code
        self.field_messages = [str(msg) for msg in (field_messages or []) if str(msg or "").strip()]
        self.existing_id = str(existing_id).strip() if existing_id not in (None, "") else None
        self.body = body


class FiscalGateway(ABC):
    @abstractmethod
    def create_order(self, order: FiscalOrderV1) -> OrderCreationResultV1:
        raise NotImplementedError

    @abstractmethod
    def find_order_by_reference(self, store_reference: str) -> OrderCreationResultV1 | None:
        raise NotImplementedError

    @abstractmethod
    def get_order(self, order_id: str) -> dict:
        raise NotImplementedError

    @abstractmethod
    def create_document(self, order_id: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def find_document_by_order(self, order_id: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def submit_document(self, document_id: str) -> str | None:
        """Send the document to SEFAZ; returns an immediate rejection reason when one is reported."""
        raise NotImplementedError

    @abstractmethod
    def get_document(self, document_id: str) -> DocumentStatusV1:
        raise NotImplementedError
