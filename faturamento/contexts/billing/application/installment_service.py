from __future__ import annotations

import csv
import io
import logging
from datetime import date
from decimal import Decimal

from faturamento.contexts.billing.domain.status import (
    PAYABLE_INSTALLMENT_STATUSES,
    InstallmentStatus,
    canonical_installment_status,
)
from faturamento.contexts.billing.domain.terms import as_date
from faturamento.contexts.billing.infrastructure.repositories.installment_repository import InstallmentRepository
from faturamento.contexts.billing.infrastructure.repositories.status_event_repository import StatusEventRepository
from faturamento.core import EventBus, FiscalDocumentAuthorized, InstallmentsPaid, get_event_bus
from faturamento.errors import InvalidStateError, NotFoundError, ValidationError
from faturamento.observability import observe_installment_transition


DEFAULT_RELEASE_DAY = 5


class InstallmentService:
    def __init__(
        self,
        *,
        release_day: int = DEFAULT_RELEASE_DAY,
        repository: InstallmentRepository | None = None,
        status_events: StatusEventRepository | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.release_day = max(1, min(28, int(release_day or DEFAULT_RELEASE_DAY)))
        self.repository = repository or InstallmentRepository()
        self.status_events = status_events or StatusEventRepository()
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("faturamento")

    def on_fiscal_document_authorized(self, db, event: FiscalDocumentAuthorized) -> int:
        return self.link_fiscal_document(
            db,
            event.proposal_id,
            document_number=event.document_number,
            document_link=event.document_link,
        )

    def link_fiscal_document(
        self,
        db,
        proposal_id: int,
        *,
        document_number: str | None,
        document_link: str | None,
    ) -> int:
        linked = self.repository.link_fiscal_document(
            db,
            proposal_id,
            document_number=document_number,
            document_link=document_link,
        )
        if linked:
            self.status_events.add_event(
                db,
                entity="proposal_installments",
                entity_id=proposal_id,
                from_status=InstallmentStatus.AWAITING_INVOICE,
                to_status=InstallmentStatus.PENDING,
                reason=f"nfe_linked:{document_number or '-'}",
            )
            db.commit()
            observe_installment_transition(InstallmentStatus.PENDING.value, linked)
        self._logger.info(
            "installments_linked_to_nfe",
            extra={"proposal_id": proposal_id, "document_number": document_number, "linked": linked},
        )
        return linked

    def mark_paid(self, db, installment_id: int, payment_date=None, *, today: date | None = None) -> dict:
        installment = self.repository.get_by_id(db, installment_id)
        if installment is None:
            raise NotFoundError(code="installment_not_found", message_key="installment_not_found")
        current = canonical_installment_status(installment["status"])
        if current not in PAYABLE_INSTALLMENT_STATUSES:
            raise InvalidStateError(details=f"parcela {installment_id} em {current.value}.")

        reference_day = today or date.today()
        paid_on = as_date(payment_date).isoformat() if payment_date else reference_day.isoformat()
        self.repository.transition_status(
            db,
            installment_id,
            PAYABLE_INSTALLMENT_STATUSES,
            InstallmentStatus.PAID,
            payment_date=paid_on,
            release_date=reference_day.isoformat(),
        )
        self.status_events.add_event(
            db,
            entity="installment",
            entity_id=installment_id,
            from_status=current,
            to_status=InstallmentStatus.PAID,
            reason="manual_payment",
        )
        db.commit()
        observe_installment_transition(InstallmentStatus.PAID.value)
        self.event_bus.publish(InstallmentsPaid(installment_ids=(int(installment_id),), source="manual"))
        return {
            "id": int(installment_id),
            "status": InstallmentStatus.PAID.value,
            "payment_date": paid_on,
            "release_date": reference_day.isoformat(),
        }

    def refresh_statuses(self, db, today=None) -> dict:
        reference_day = as_date(today or date.today())
        overdue = self.repository.mark_overdue(db, today=reference_day.isoformat())
        released = 0
        if reference_day.day >= self.release_day:
            released = self.repository.release_scheduled(db, release_date=reference_day.isoformat())
        if overdue:
            observe_installment_transition(InstallmentStatus.OVERDUE.value, overdue)
        if released:
            observe_installment_transition(InstallmentStatus.RELEASED.value, released)
        self._logger.info(
            "installment_statuses_refreshed",
            extra={"today": reference_day.isoformat(), "overdue": overdue, "released": released},
        )
        return {"today": reference_day.isoformat(), "overdue": overdue, "released": released}

    def create_payment_batch(
        self,
        db,
        installment_ids,
        reference: str,
        *,
        created_by: str | None = None,
        today: date | None = None,
    ) -> dict:
        """Pay a set of released commissions together under one batch reference.

        Every installment must be RELEASED and outside any other batch. The whole
        batch is written in one transaction, so a single stale row leaves nothing paid.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError(code="batch_reference_required", message_key="batch_reference_required")
        ids = list(dict.fromkeys(int(value) for value in installment_ids or ()))
        if not ids:
            raise ValidationError(code="batch_items_required", message_key="batch_items_required")
        if self.repository.get_payment_batch_by_reference(db, reference) is not None:
            raise ValidationError(
                code="batch_reference_taken",
                message_key="batch_reference_taken",
                details=reference,
            )

        rows = self.repository.list_with_vendor(db, ids)
        missing = sorted(set(ids) - {int(row["id"]) for row in rows})
        if missing:
            raise NotFoundError(
                code="installment_not_found",
                message_key="installment_not_found",
                details=", ".join(str(value) for value in missing),
            )
        for row in rows:
            current = canonical_installment_status(row["status"])
            if current is not InstallmentStatus.RELEASED or row.get("payment_batch_id"):
                raise InvalidStateError(details=f"parcela {row['id']} em {current.value}; fora do lote.")

        total = Decimal("0")
        vendors: dict[int, dict] = {}
        for row in rows:
            value = Decimal(str(row["commission_value"] or 0))
            total += value
            vendor = vendors.setdefault(
                int(row["vendor_id"]),
                {"vendor_id": int(row["vendor_id"]), "vendor_name": row["vendor_name"], "item_count": 0, "total": Decimal("0")},
            )
            vendor["item_count"] += 1
            vendor["total"] += value

        paid_on = (today or date.today()).isoformat()
        batch_id = self.repository.pay_into_batch(
            db,
            reference=reference,
            installment_ids=ids,
            paid_on=paid_on,
            created_by=created_by,
            total_commission=float(total),
        )
        for installment_id in ids:
            self.status_events.add_event(
                db,
                entity="installment",
                entity_id=installment_id,
                from_status=InstallmentStatus.RELEASED,
                to_status=InstallmentStatus.PAID,
                reason=f"payment_batch:{reference}",
            )
        db.commit()
        observe_installment_transition(InstallmentStatus.PAID.value, len(ids))
        self.event_bus.publish(InstallmentsPaid(installment_ids=tuple(ids), source="payment_batch"))
        self._logger.info(
            "commission_payment_batch_created",
            extra={"batch_id": batch_id, "reference": reference, "items": len(ids), "total": float(total)},
        )
        return {
            "id": batch_id,
            "reference": reference,
            "paid_on": paid_on,
            "item_count": len(ids),
            "total_commission": float(total),
            "vendors": [
                {
                    "vendor_id": vendor["vendor_id"],
                    "vendor_name": vendor["vendor_name"],
                    "item_count": vendor["item_count"],
                    "total_commission": float(vendor["total"]),
                }
                for vendor in sorted(vendors.values(), key=lambda item: item["vendor_name"])
            ],
        }

    def payment_batch_detail(self, db, batch_id: int) -> dict:
        batch = self.repository.get_payment_batch(db, batch_id)
        if batch is None:
            raise NotFoundError(code="payment_batch_not_found", message_key="payment_batch_not_found")
        return {**batch, "installments": self.repository.list_for_batch(db, batch_id)}

    def export_payment_batch_csv(self, db, batch_id: int) -> tuple[str, str]:
        detail = self.payment_batch_detail(db, batch_id)
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=";")
        writer.writerow(["Lote", detail["reference"]])
        writer.writerow(["Total", f"R$ {_brl(detail['total_commission'])}"])
        writer.writerow([])
        writer.writerow(["Vendedor", "Cliente", "Parcela", "Vencimento", "Valor Comissao"])
        for row in detail["installments"]:
            writer.writerow(
                [
                    row["vendor_name"],
                    row["client_name"],
                    f"{row['installment_number']}/{row['installment_count']}",
                    as_date(row["due_date"]).strftime("%d/%m/%Y"),
                    _brl(row["commission_value"]),
                ]
            )
        filename = f"lote_{detail['reference']}.csv".replace(" ", "_")
        return filename, buffer.getvalue()


def _brl(value) -> str:
    return f"{float(value or 0):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
