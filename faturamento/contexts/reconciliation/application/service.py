from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List

from faturamento.contexts.billing.domain.status import (
    OUTSTANDING_INSTALLMENT_STATUSES,
    InstallmentStatus,
)
from faturamento.contexts.billing.domain.terms import as_date
from faturamento.contexts.billing.infrastructure.repositories.directory_repository import DirectoryRepository
from faturamento.contexts.billing.infrastructure.repositories.installment_repository import InstallmentRepository
from faturamento.contexts.billing.infrastructure.repositories.status_event_repository import StatusEventRepository
from faturamento.contexts.reconciliation.domain.matching import (
    MatchProposal,
    entry_matches,
    match_entries,
    summarize,
)
from faturamento.contexts.reconciliation.domain.statement import StatementEntry
from faturamento.core import EventBus, InstallmentsPaid, get_event_bus
from faturamento.errors import AppError, ValidationError
from faturamento.observability import observe_installment_transition, observe_reconciliation


class ReconciliationService:
    """Bank statement titles against outstanding commission installments."""

    def __init__(
        self,
        installments: InstallmentRepository | None = None,
        directory: DirectoryRepository | None = None,
        status_events: StatusEventRepository | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.installments = installments or InstallmentRepository()
        self.directory = directory or DirectoryRepository()
        self.status_events = status_events or StatusEventRepository()
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("faturamento")

    @staticmethod
    def parse_entries(raw_entries: Any) -> List[StatementEntry]:
        if not isinstance(raw_entries, list) or not raw_entries:
            raise ValidationError(details="Informe ao menos um titulo do extrato.")
        return [StatementEntry.from_dict(raw) for raw in raw_entries]

    def reconcile_statement(
        self,
        db,
        entries: Iterable[StatementEntry],
        vendor_id: int | None = None,
    ) -> List[MatchProposal]:
        client_ids = self.directory.visible_client_ids(db, vendor_id)
        outstanding = self.installments.list_outstanding(db, client_ids=client_ids)
        proposals = match_entries(list(entries), outstanding)
        summary = summarize(proposals)
        for outcome in ("matched", "ambiguous", "unmatched"):
            if summary[outcome]:
                observe_reconciliation(outcome, summary[outcome])
        self._logger.info("reconciliation_matched", extra={"vendor_id": vendor_id, **summary})
        return proposals

    @staticmethod
    def _label(match: MatchProposal) -> str:
        return match.entry.title_number or f"{match.entry.payer_name or '?'} {match.entry.due_date}"

    def confirm_matches(self, db, matches: Iterable[MatchProposal | Dict[str, Any]], today=None) -> dict:
        reference_day = as_date(today or date.today()).isoformat()
        succeeded = 0
        failed = 0
        skipped = 0
        messages: List[str] = []
        paid_ids: List[int] = []

        for raw in matches:
            match = raw if isinstance(raw, MatchProposal) else MatchProposal.from_dict(raw)
            installment_id = match.selected_installment_id
            if not match.confirmed or not installment_id:
                skipped += 1
                continue

            label = self._label(match)
            if int(installment_id) not in match.candidate_ids:
                failed += 1
                messages.append(f"Titulo {label}: parcela {installment_id} fora dos candidatos sugeridos.")
                continue

            current = self.installments.get_by_id(db, installment_id)
            if current is None:
                failed += 1
                messages.append(f"Titulo {label}: parcela {installment_id} nao encontrada.")
                continue
            if not entry_matches(match.entry, current):
                failed += 1
                messages.append(f"Titulo {label}: parcela {installment_id} nao confere com valor e vencimento.")
                continue

            try:
                self.installments.transition_status(
                    db,
                    int(installment_id),
                    OUTSTANDING_INSTALLMENT_STATUSES,
                    InstallmentStatus.PAID,
                    payment_date=match.entry.payment_date or reference_day,
                    release_date=reference_day,
                )
                self.status_events.add_event(
                    db,
                    entity="installment",
                    entity_id=int(installment_id),
                    from_status=current.get("status"),
                    to_status=InstallmentStatus.PAID,
                    reason=f"bank_reconciliation:{label}",
                )
                db.commit()
            except AppError as exc:
                db.rollback()
                failed += 1
                messages.append(f"Titulo {label}: parcela {installment_id} nao atualizada ({current.get('status')}).")
                self._logger.warning(
                    "reconciliation_update_failed",
                    extra={"installment_id": installment_id, "title": label, "details": exc.details},
                )
                continue
            except Exception:
                db.rollback()
                failed += 1
                messages.append(f"Titulo {label}: erro inesperado ao atualizar parcela {installment_id}.")
                self._logger.exception(
                    "reconciliation_update_error",
                    extra={"installment_id": installment_id, "title": label},
                )
                continue

            succeeded += 1
            paid_ids.append(int(installment_id))

        if succeeded:
            observe_reconciliation("confirmed", succeeded)
            observe_installment_transition(InstallmentStatus.PAID.value, succeeded)
            self.event_bus.publish(InstallmentsPaid(installment_ids=tuple(paid_ids), source="bank_reconciliation"))
        if failed:
            observe_reconciliation("failed", failed)
        self._logger.info(
            "reconciliation_confirmed",
            extra={"succeeded": succeeded, "failed": failed, "skipped": skipped},
        )
        return {"succeeded": succeeded, "failed": failed, "skipped": skipped, "messages": messages}
