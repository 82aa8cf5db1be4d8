from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from faturamento.contexts.billing.domain.terms import as_date
from faturamento.errors import ValidationError


_BR_AMOUNT = re.compile(r"^-?\d{1,3}(\.\d{3})*(,\d+)?$|^-?\d+(,\d+)$")


def parse_amount(value: Any) -> float:
    """Accept numbers, '1234.56' and Brazilian '1.234,56' (with or without 'R$')."""
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    raw = str(value or "").replace("R$", "").replace(" ", "").strip()
    if not raw:
        raise ValueError("valor vazio")
    if _BR_AMOUNT.match(raw):
        raw = raw.replace(".", "").replace(",", ".")
    return round(float(raw), 2)


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


@dataclass(frozen=True)
class StatementEntry:
    payer_name: str
    amount: float
    due_date: str
    payment_date: str | None = None
    title_number: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StatementEntry":
        if not isinstance(raw, Mapping):
            raise ValidationError(details="Titulo do extrato deve ser um objeto.")
        title_number = _first(raw, "title_number", "numero_titulo")
        try:
            amount = parse_amount(_first(raw, "amount", "valor"))
            due_date = as_date(_first(raw, "due_date", "data_vencimento")).isoformat()
            payment_raw = _first(raw, "payment_date", "data_pagamento")
            payment_date = as_date(payment_raw).isoformat() if payment_raw else None
        except ValueError as exc:
            raise ValidationError(
                details=f"Titulo {title_number or '?'} com valor ou data invalida: {exc}",
            ) from exc
        return cls(
            payer_name=str(_first(raw, "payer_name", "sacado") or "").strip(),
            amount=amount,
            due_date=due_date,
            payment_date=payment_date,
            title_number=str(title_number).strip() if title_number is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payer_name": self.payer_name,
            "amount": self.amount,
            "due_date": self.due_date,
            "payment_date": self.payment_date,
            "title_number": self.title_number,
        }
