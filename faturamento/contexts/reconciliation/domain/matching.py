from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from faturamento.contexts.billing.domain.status import (
    OUTSTANDING_INSTALLMENT_STATUSES,
    InstallmentStatus,
    canonicalize,
)
from faturamento.contexts.reconciliation.domain.statement import StatementEntry
from faturamento.errors import UnrecognizedStatusError


AMOUNT_TOLERANCE = 0.01

MATCH_UNMATCHED = "unmatched"
MATCH_MATCHED = "matched"
MATCH_AMBIGUOUS = "ambiguous"


@dataclass
class MatchProposal:
    entry: StatementEntry
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    selected_installment_id: int | None = None
    confirmed: bool = False

    @property
    def status(self) -> str:
        if not self.candidates:
            return MATCH_UNMATCHED
        if len(self.candidates) == 1:
            return MATCH_MATCHED
        return MATCH_AMBIGUOUS

    @property
    def candidate_ids(self) -> List[int]:
        return [int(candidate["id"]) for candidate in self.candidates]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "status": self.status,
            "candidates": [dict(candidate) for candidate in self.candidates],
            "selected_installment_id": self.selected_installment_id,
            "confirmed": self.confirmed,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MatchProposal":
        candidates = raw.get("candidates") if isinstance(raw.get("candidates"), list) else []
        selected = raw.get("selected_installment_id")
        return cls(
            entry=StatementEntry.from_dict(raw.get("entry") or {}),
            candidates=[dict(candidate) for candidate in candidates if isinstance(candidate, dict)],
            selected_installment_id=int(selected) if selected not in (None, "") else None,
            confirmed=bool(raw.get("confirmed")),
        )


def _is_outstanding(installment: Dict[str, Any]) -> bool:
    try:
        status = canonicalize(InstallmentStatus, installment.get("status"))
    except UnrecognizedStatusError:
        return False
    return status in OUTSTANDING_INSTALLMENT_STATUSES


def _candidate_view(installment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": int(installment["id"]),
        "client_id": installment.get("client_id"),
        "client_name": installment.get("client_name") or "Desconhecido",
        "face_value": float(installment.get("face_value") or 0),
        "due_date": str(installment.get("due_date") or "")[:10],
        "installment_number": installment.get("installment_number"),
        "installment_count": installment.get("installment_count"),
        "commission_value": float(installment.get("commission_value") or 0),
        "status": installment.get("status"),
    }


def entry_matches(entry: StatementEntry, installment: Dict[str, Any]) -> bool:
    return (
        abs(float(installment.get("face_value") or 0) - entry.amount) <= AMOUNT_TOLERANCE + 1e-9
        and str(installment.get("due_date") or "")[:10] == entry.due_date
    )


def match_entries(
    entries: Iterable[StatementEntry],
    outstanding: Sequence[Dict[str, Any]],
) -> List[MatchProposal]:
    """Pair each statement entry with installments of equal due date and amount within one cent.

    A single candidate is pre-selected and confirmed; several candidates are
    left for the operator to pick.
    """
    pool = [installment for installment in outstanding if _is_outstanding(installment)]
    proposals: List[MatchProposal] = []
    for entry in entries:
        candidates = [_candidate_view(installment) for installment in pool if entry_matches(entry, installment)]
        proposal = MatchProposal(entry=entry, candidates=candidates)
        if len(candidates) == 1:
            proposal.selected_installment_id = candidates[0]["id"]
            proposal.confirmed = True
        proposals.append(proposal)
    return proposals


def summarize(proposals: Iterable[MatchProposal]) -> Dict[str, int]:
    summary = {MATCH_MATCHED: 0, MATCH_AMBIGUOUS: 0, MATCH_UNMATCHED: 0, "selected": 0}
    for proposal in proposals:
        summary[proposal.status] += 1
        if proposal.confirmed and proposal.selected_installment_id:
            summary["selected"] += 1
    return summary
