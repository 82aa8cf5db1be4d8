from __future__ import annotations

import unicodedata
from enum import Enum
from typing import Dict, Type, TypeVar

from faturamento.errors import UnrecognizedStatusError
from faturamento.ui_strings import status_label as _ui_status_label


class ProposalStatus(str, Enum):
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPROVING = "APPROVING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class InstallmentStatus(str, Enum):
    AWAITING_INVOICE = "AWAITING_INVOICE"
    # Only imported rows (online sales, legacy backfill) start here; approvals start at AWAITING_INVOICE.
    SCHEDULED = "SCHEDULED"
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    RELEASED = "RELEASED"
    PAID = "PAID"


class FiscalDocumentStatus(str, Enum):
    NOT_REQUESTED = "NOT_REQUESTED"
    CREATING = "CREATING"
    CREATED = "CREATED"
    SUBMITTING = "SUBMITTING"
    PENDING_AUTHORIZATION = "PENDING_AUTHORIZATION"
    AUTHORIZED = "AUTHORIZED"
    REJECTED = "REJECTED"


class ApprovalStep(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    CLAIMED = "CLAIMED"
    ORDER_CREATED = "ORDER_CREATED"
    ISSUANCE_REQUESTED = "ISSUANCE_REQUESTED"
    INSTALLMENTS_CREATED = "INSTALLMENTS_CREATED"
    COMPLETED = "COMPLETED"

    @property
    def position(self) -> int:
        return list(ApprovalStep).index(self)

    def reached(self, other: "ApprovalStep") -> bool:
        return self.position >= other.position


OUTSTANDING_INSTALLMENT_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.SCHEDULED)
PAYABLE_INSTALLMENT_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.SCHEDULED,
    InstallmentStatus.OVERDUE,
    InstallmentStatus.RELEASED,
)


# Legacy values written by older tooling, keyed by normalized token.
_SYNONYMS: Dict[type, Dict[str, str]] = {
    ProposalStatus: {
        "aguardando_aprovacao_financeira": "AWAITING_APPROVAL",
        "aguardando_aprovacao": "AWAITING_APPROVAL",
        "em_aprovacao": "APPROVING",
        "em_faturamento": "APPROVING",
        "faturado": "APPROVED",
        "faturada": "APPROVED",
        "aprovada_faturamento": "APPROVED",
        "aprovada": "APPROVED",
        "aprovado": "APPROVED",
        "reprovada_financeiro": "REJECTED",
        "reprovada": "REJECTED",
        "rejeitada": "REJECTED",
    },
    InstallmentStatus: {
        "aguardando": "AWAITING_INVOICE",
        "aguardando_nf": "AWAITING_INVOICE",
        "aguardando_nota": "AWAITING_INVOICE",
        "agendada": "SCHEDULED",
        "agendado": "SCHEDULED",
        "pendente": "PENDING",
        "atrasada": "OVERDUE",
        "atrasado": "OVERDUE",
        "vencida": "OVERDUE",
        "liberada": "RELEASED",
        "liberado": "RELEASED",
        "paga": "PAID",
        "pago": "PAID",
    },
    FiscalDocumentStatus: {
        "nao_solicitada": "NOT_REQUESTED",
        "criando": "CREATING",
        "pedido_criado": "CREATED",
        "criada": "CREATED",
        "enviando": "SUBMITTING",
        "pendente": "PENDING_AUTHORIZATION",
        "aguardando_sefaz": "PENDING_AUTHORIZATION",
        "autorizada": "AUTHORIZED",
        "emitida": "AUTHORIZED",
        "rejeitada": "REJECTED",
    },
}

_LABEL_GROUPS: Dict[type, str] = {
    ProposalStatus: "proposta",
    InstallmentStatus: "parcela",
    FiscalDocumentStatus: "nfe",
}

E = TypeVar("E", bound=Enum)


def _normalize_token(raw_value: object) -> str:
    text = unicodedata.normalize("NFKD", str(raw_value or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.strip().lower()
    for separator in (" ", "-", "/"):
        text = text.replace(separator, "_")
    while "__" in text:
        text = text.replace("__", "_")
    return text


def canonicalize(enum_cls: Type[E], raw_value: object) -> E:
    if isinstance(raw_value, enum_cls):
        return raw_value
    token = _normalize_token(raw_value)
    if token:
        for member in enum_cls:
            if member.value.lower() == token:
                return member
        mapped = _SYNONYMS.get(enum_cls, {}).get(token)
        if mapped:
            return enum_cls(mapped)
    raise UnrecognizedStatusError(details=f"{enum_cls.__name__}: valor '{raw_value}' nao reconhecido.")


def canonical_proposal_status(raw_value: object) -> ProposalStatus:
    return canonicalize(ProposalStatus, raw_value)


def canonical_installment_status(raw_value: object) -> InstallmentStatus:
    return canonicalize(InstallmentStatus, raw_value)


def canonical_fiscal_status(raw_value: object) -> FiscalDocumentStatus:
    return canonicalize(FiscalDocumentStatus, raw_value)


def status_label(status: Enum) -> str:
    group = _LABEL_GROUPS.get(type(status))
    if group is None:
        return str(status.value)
    return _ui_status_label(group, status.value)
