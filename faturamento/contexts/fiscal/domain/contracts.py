from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _safe_float(value: object | None, default: float = 0.0) -> float:
    if value is None:
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _safe_int(value: object | None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def only_digits(value: object | None) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


@dataclass
class FiscalOrderLineV1:
    sku: str
    description: str | None = None
    qty: float = 0.0
    unit_price: float = 0.0
    unit: str = "UN"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sku": self.sku,
            "description": self.description,
            "qty": float(self.qty),
            "unit_price": float(self.unit_price),
            "unit": self.unit,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "FiscalOrderLineV1":
        data = dict(payload or {})
        return FiscalOrderLineV1(
            sku=str(data.get("sku") or ""),
            description=_safe_str(data.get("description")),
            qty=_safe_float(data.get("qty"), 0.0),
            unit_price=_safe_float(data.get("unit_price"), 0.0),
            unit=str(data.get("unit") or "UN"),
        )


@dataclass
class FiscalInstallmentV1:
    due_date: str
    amount: float
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"due_date": self.due_date, "amount": float(self.amount), "note": self.note}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "FiscalInstallmentV1":
        data = dict(payload or {})
        return FiscalInstallmentV1(
            due_date=str(data.get("due_date") or ""),
            amount=_safe_float(data.get("amount"), 0.0),
            note=_safe_str(data.get("note")),
        )


@dataclass
class FiscalOrderV1:
    store_reference: str
    client_name: str
    client_tax_id: str
    nature_of_operation_id: str
    client_email: str | None = None
    client_phone: str | None = None
    client_state_registration: str | None = None
    address: dict[str, Any] = field(default_factory=dict)
    vendor_reference: str | None = None
    issued_on: str = field(default_factory=lambda: date.today().isoformat())
    lines: list[FiscalOrderLineV1] = field(default_factory=list)
    installments: list[FiscalInstallmentV1] = field(default_factory=list)
    shipping_value: float = 0.0
    discount_value: float = 0.0
    notes: str | None = None
    schema_name: str = "fiscal.order"
    schema_version: int = 1

    @property
    def is_individual(self) -> bool:
        return len(only_digits(self.client_tax_id)) <= 11

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_name": self.schema_name,
            "schema_version": int(self.schema_version),
            "store_reference": self.store_reference,
            "client_name": self.client_name,
            "client_tax_id": self.client_tax_id,
            "client_email": self.client_email,
            "client_phone": self.client_phone,
            "client_state_registration": self.client_state_registration,
            "address": dict(self.address or {}),
            "nature_of_operation_id": self.nature_of_operation_id,
            "vendor_reference": self.vendor_reference,
            "issued_on": self.issued_on,
            "lines": [line.to_dict() for line in self.lines],
            "installments": [item.to_dict() for item in self.installments],
            "shipping_value": float(self.shipping_value),
            "discount_value": float(self.discount_value),
            "notes": self.notes,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "FiscalOrderV1":
        data = dict(payload or {})
        lines = [FiscalOrderLineV1.from_dict(line) for line in data.get("lines") or [] if isinstance(line, dict)]
        installments = [
            FiscalInstallmentV1.from_dict(item) for item in data.get("installments") or [] if isinstance(item, dict)
        ]
        return FiscalOrderV1(
            schema_name=str(data.get("schema_name") or "fiscal.order"),
            schema_version=int(data.get("schema_version") or 1),
            store_reference=str(data.get("store_reference") or ""),
            client_name=str(data.get("client_name") or ""),
            client_tax_id=str(data.get("client_tax_id") or ""),
            client_email=_safe_str(data.get("client_email")),
            client_phone=_safe_str(data.get("client_phone")),
            client_state_registration=_safe_str(data.get("client_state_registration")),
            address=dict(data.get("address") or {}),
            nature_of_operation_id=str(data.get("nature_of_operation_id") or ""),
            vendor_reference=_safe_str(data.get("vendor_reference")),
            issued_on=str(data.get("issued_on") or date.today().isoformat()),
            lines=lines,
            installments=installments,
            shipping_value=_safe_float(data.get("shipping_value"), 0.0),
            discount_value=_safe_float(data.get("discount_value"), 0.0),
            notes=_safe_str(data.get("notes")),
        )


@dataclass
class OrderCreationResultV1:
    order_id: str
    order_number: str | None = None
    duplicate: bool = False
    schema_name: str = "fiscal.order_result"
    schema_version: int = 1

    @property
    def outcome(self) -> str:
        return "duplicate_resolved" if self.duplicate else "created"

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_name": self.schema_name,
            "schema_version": int(self.schema_version),
            "order_id": self.order_id,
            "order_number": self.order_number,
            "duplicate": bool(self.duplicate),
            "outcome": self.outcome,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OrderCreationResultV1":
        data = dict(payload or {})
        return OrderCreationResultV1(
            order_id=str(data.get("order_id") or ""),
            order_number=_safe_str(data.get("order_number")),
            duplicate=bool(data.get("duplicate")),
        )


# Bling "situacao" codes for NF-e.
AUTHORIZED_SITUATIONS = {6}
REJECTED_SITUATIONS = {4, 7, 8}


@dataclass
class DocumentStatusV1:
    document_id: str
    situation: int | None = None
    number: str | None = None
    access_key: str | None = None
    danfe_link: str | None = None
    rejection_reason: str | None = None
    schema_name: str = "fiscal.document_status"
    schema_version: int = 1

    @property
    def state(self) -> str:
        if self.situation in AUTHORIZED_SITUATIONS:
            return "authorized"
        if len(only_digits(self.access_key)) == 44 and self.number:
            return "authorized"
        if self.situation in REJECTED_SITUATIONS:
            return "rejected"
        return "pending"

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_name": self.schema_name,
            "schema_version": int(self.schema_version),
            "document_id": self.document_id,
            "situation": self.situation,
            "number": self.number,
            "access_key": self.access_key,
            "danfe_link": self.danfe_link,
            "rejection_reason": self.rejection_reason,
            "state": self.state,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "DocumentStatusV1":
        data = dict(payload or {})
        return DocumentStatusV1(
            document_id=str(data.get("document_id") or ""),
            situation=_safe_int(data.get("situation")),
            number=_safe_str(data.get("number")),
            access_key=_safe_str(data.get("access_key")),
            danfe_link=_safe_str(data.get("danfe_link")),
            rejection_reason=_safe_str(data.get("rejection_reason")),
        )
