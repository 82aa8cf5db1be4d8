from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Tuple

from faturamento.contexts.billing.domain.status import InstallmentStatus
from faturamento.errors import UnknownTermError


# Offsets in days from the approval date; the total is split in equal parts.
TERMS: Dict[str, Tuple[int, ...]] = {
    "30": (30,),
    "60_direto": (60,),
    "60": (30, 60),
    "60_90": (60, 90),
    "90": (30, 60, 90),
    "60_75_90": (60, 75, 90),
    "60_90_120": (60, 90, 120),
}

TERM_ALIASES: Dict[str, str] = {
    "30_dias": "30",
    "30/60": "60",
    "30/60/90": "90",
    "60/90": "60_90",
    "60/75/90": "60_75_90",
    "60/90/120": "60_90_120",
    "60 direto": "60_direto",
    "60_dias_direto": "60_direto",
}

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class DerivedInstallment:
    number: int
    count: int
    face_value: float
    commission_value: float
    commission_rate: float
    due_date: str
    status: InstallmentStatus = InstallmentStatus.AWAITING_INVOICE

    def to_dict(self) -> dict:
        return {
            "installment_number": self.number,
            "installment_count": self.count,
            "face_value": self.face_value,
            "commission_value": self.commission_value,
            "commission_rate": self.commission_rate,
            "due_date": self.due_date,
            "status": self.status.value,
        }


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(_CENT, rounding=ROUND_HALF_UP)


def resolve_term(term_code: str | None) -> str:
    raw = str(term_code or "").strip().lower()
    if raw in TERMS:
        return raw
    alias = TERM_ALIASES.get(raw) or TERM_ALIASES.get(raw.replace(" ", ""))
    if alias:
        return alias
    raise UnknownTermError(details=f"Condicao de faturamento '{term_code}' desconhecida.")


def term_offsets(term_code: str | None) -> Tuple[int, ...]:
    return TERMS[resolve_term(term_code)]


def as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise ValueError("data vazia")
    if "/" in raw:
        return datetime.strptime(raw[:10], "%d/%m/%Y").date()
    return date.fromisoformat(raw[:10])


def compute_proposal_total(
    lines: Iterable[dict],
    shipping: float | None = 0.0,
    discount_percent: float | None = 0.0,
) -> Tuple[float, float, float]:
    products_total = Decimal("0")
    for line in lines:
        quantity = Decimal(str(line.get("quantity") or 0))
        unit_price = Decimal(str(line.get("unit_price") or 0))
        products_total += quantity * unit_price
    products_total = products_total.quantize(_CENT, rounding=ROUND_HALF_UP)
    discount_value = (products_total * Decimal(str(discount_percent or 0)) / Decimal("100")).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )
    total = products_total - discount_value + _money(shipping)
    return float(products_total), float(discount_value), float(total)


def derive_installments(
    total: float,
    term_code: str,
    commission_rate: float,
    approval_date,
) -> List[DerivedInstallment]:
    offsets = term_offsets(term_code)
    base_date = as_date(approval_date)
    count = len(offsets)

    total_cents = int(_money(total) * 100)
    base_cents = total_cents // count
    remainder = total_cents - base_cents * count
    rate = Decimal(str(commission_rate))

    installments: List[DerivedInstallment] = []
    for index, offset in enumerate(offsets, start=1):
        cents = base_cents + (remainder if index == count else 0)
        face = Decimal(cents) / Decimal(100)
        commission = (face * rate / Decimal("100")).quantize(_CENT, rounding=ROUND_HALF_UP)
        installments.append(
            DerivedInstallment(
                number=index,
                count=count,
                face_value=float(face),
                commission_value=float(commission),
                commission_rate=float(rate),
                due_date=(base_date + timedelta(days=offset)).isoformat(),
            )
        )
    return installments
