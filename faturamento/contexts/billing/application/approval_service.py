from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List

from faturamento.contexts.billing.domain.status import ApprovalStep, ProposalStatus, canonical_proposal_status
from faturamento.contexts.billing.domain.terms import DerivedInstallment, as_date, derive_installments
from faturamento.contexts.billing.infrastructure.repositories.directory_repository import DirectoryRepository
from faturamento.contexts.billing.infrastructure.repositories.installment_repository import InstallmentRepository
from faturamento.contexts.billing.infrastructure.repositories.proposal_repository import ProposalRepository
from faturamento.contexts.billing.infrastructure.repositories.status_event_repository import StatusEventRepository
from faturamento.contexts.fiscal.application.fiscal_document_service import FiscalDocumentService
from faturamento.contexts.fiscal.infrastructure.repositories.fiscal_document_repository import (
    FiscalDocumentRepository,
)
from faturamento.core import EventBus, ProposalApproved, ProposalRejected, get_event_bus
from faturamento.errors import (
    AppError,
    ClientNotEligibleError,
    InvalidStateError,
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from faturamento.observability import observe_approval


DEFAULT_COMMISSION_RATE = 1.5


@dataclass(frozen=True)
class ApprovalResult:
    proposal_id: int
    external_order_id: str | None
    external_order_number: str | None
    installments_created: int
    fiscal_document_status: str | None = None
    issuance_error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "externalOrderId": self.external_order_id,
            "externalOrderNumber": self.external_order_number,
            "installmentsCreated": self.installments_created,
            "fiscalDocumentStatus": self.fiscal_document_status,
            "issuanceError": self.issuance_error,
        }


@dataclass
class _ApprovalContext:
    proposal: dict
    client: dict
    vendor: dict
    items: List[dict]
    installments: List[DerivedInstallment]


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _error_text(exc: Exception) -> str:
    if isinstance(exc, AppError):
        return exc.details or exc.code
    return f"{type(exc).__name__}: {exc}"


def _approval_day(value) -> date:
    if not value:
        return date.today()
    try:
        return as_date(value)
    except ValueError as exc:
        raise ValidationError(code="invalid_date", message_key="date_invalid", details=str(value)) from exc


class ApprovalService:
    """Financial approval saga.

    Steps run in order and the cursor on the proposal row records the last one
    completed: claim, external order, NF-e issuance request, installments,
    final status. Nothing is undone once the external order exists; the
    proposal is left in APPROVING flagged for manual review and
    ``resume_approval`` continues from the cursor.
    """

    def __init__(
        self,
        fiscal_service: FiscalDocumentService,
        *,
        commission_default_rate: float = DEFAULT_COMMISSION_RATE,
        repository: ProposalRepository | None = None,
        directory: DirectoryRepository | None = None,
        installments: InstallmentRepository | None = None,
        fiscal_documents: FiscalDocumentRepository | None = None,
        status_events: StatusEventRepository | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.fiscal_service = fiscal_service
        self.commission_default_rate = float(commission_default_rate)
        self.repository = repository or ProposalRepository()
        self.directory = directory or DirectoryRepository()
        self.installments = installments or InstallmentRepository()
        self.fiscal_documents = fiscal_documents or FiscalDocumentRepository()
        self.status_events = status_events or StatusEventRepository()
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("faturamento")

    def _load_proposal(self, db, proposal_id: int) -> dict:
        proposal = self.repository.get_by_id(db, proposal_id)
        if proposal is None:
            raise NotFoundError(code="proposal_not_found", message_key="proposal_not_found")
        return proposal

    def _transition(self, db, proposal_id: int, from_status, to_status, *, reason: str, **fields) -> None:
        self.repository.transition_status(db, proposal_id, from_status, to_status, **fields)
        self.status_events.add_event(
            db,
            entity="proposal",
            entity_id=proposal_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
        )
        db.commit()

    def _commission_rate(self, vendor: dict) -> float:
        rate = vendor.get("commission_rate")
        if rate is None or rate == "":
            return self.commission_default_rate
        return float(rate)

    def _prepare(self, db, proposal_id: int, approval_day: date) -> _ApprovalContext:
        proposal = self._load_proposal(db, proposal_id)
        client = self.directory.get_client(db, proposal["client_id"])
        if client is None:
            raise NotFoundError(code="client_not_found", message_key="client_not_found")
        if not int(client.get("can_invoice") or 0):
            raise ClientNotEligibleError(details=f"Cliente {client['id']} sem faturamento a prazo habilitado.")
        vendor = self.directory.get_vendor(db, proposal["vendor_id"])
        if vendor is None:
            raise NotFoundError(code="vendor_not_found", message_key="vendor_not_found")

        items = self.repository.list_items(db, proposal_id)
        if not items:
            raise ValidationError(code="items_required", message_key="items_required")
        missing_sku = [item for item in items if not str(item.get("sku") or "").strip()]
        if missing_sku:
            names = ", ".join(str(item.get("description") or f"linha {item.get('line_no')}") for item in missing_sku)
            raise ValidationError(code="items_without_sku", message_key="items_without_sku", details=names)

        installments = derive_installments(
            proposal["total_value"],
            proposal["invoicing_term"],
            self._commission_rate(vendor),
            approval_day,
        )
        return _ApprovalContext(proposal, client, vendor, items, installments)

    def approve(
        self,
        db,
        proposal_id: int,
        approved_by: str | None = None,
        approval_date=None,
    ) -> ApprovalResult:
        proposal = self._load_proposal(db, proposal_id)
        if canonical_proposal_status(proposal["status"]) != ProposalStatus.AWAITING_APPROVAL:
            observe_approval("invalid_state")
            raise InvalidStateError(
                message_key="approval_already_processed",
                details=f"proposal {proposal_id} em {proposal['status']}.",
            )

        approval_day = _approval_day(approval_date)
        try:
            self._transition(
                db,
                proposal_id,
                ProposalStatus.AWAITING_APPROVAL,
                ProposalStatus.APPROVING,
                reason="approval_claimed",
                approval_step=ApprovalStep.CLAIMED.value,
                needs_manual_review=0,
                last_step_error=None,
                approved_by=approved_by,
                approval_date=approval_day.isoformat(),
            )
        except InvalidStateError:
            observe_approval("invalid_state")
            raise

        try:
            context = self._prepare(db, proposal_id, approval_day)
            order = self.fiscal_service.create_order(
                db,
                context.proposal,
                context.client,
                context.vendor,
                context.items,
                context.installments,
            )
        except Exception as exc:
            self._release_claim(db, proposal_id, exc)
            observe_approval(exc.code if isinstance(exc, AppError) else "unexpected_error")
            raise

        self._logger.info(
            "approval_order_created",
            extra={
                "proposal_id": proposal_id,
                "external_order_id": order.order_id,
                "external_order_number": order.order_number,
                "outcome": order.outcome,
            },
        )
        return self._finish(
            db,
            proposal_id,
            context,
            order_id=order.order_id,
            order_number=order.order_number,
            completed=ApprovalStep.CLAIMED,
        )

    def _release_claim(self, db, proposal_id: int, exc: Exception) -> None:
        db.rollback()
        self._transition(
            db,
            proposal_id,
            ProposalStatus.APPROVING,
            ProposalStatus.AWAITING_APPROVAL,
            reason="approval_failed",
            approval_step=ApprovalStep.NOT_STARTED.value,
            last_step_error=_error_text(exc),
            approved_by=None,
            approval_date=None,
        )
        self._logger.warning(
            "approval_failed_before_order",
            extra={
                "proposal_id": proposal_id,
                "error_code": getattr(exc, "code", type(exc).__name__),
                "details": _error_text(exc),
            },
        )

    def _finish(
        self,
        db,
        proposal_id: int,
        context: _ApprovalContext,
        *,
        order_id: str | None,
        order_number: str | None,
        completed: ApprovalStep,
    ) -> ApprovalResult:
        step = completed
        failed_step = ApprovalStep.ORDER_CREATED
        issuance_error: str | None = None
        try:
            if not step.reached(ApprovalStep.ORDER_CREATED):
                self.repository.record_external_order(db, proposal_id, order_id, order_number)
                self.repository.advance_step(db, proposal_id, ApprovalStep.ORDER_CREATED)
                step = ApprovalStep.ORDER_CREATED

            failed_step = ApprovalStep.ISSUANCE_REQUESTED
            if not step.reached(ApprovalStep.ISSUANCE_REQUESTED):
                issuance_error = self._request_issuance(db, proposal_id)
                self.repository.advance_step(db, proposal_id, ApprovalStep.ISSUANCE_REQUESTED, error=issuance_error)
                step = ApprovalStep.ISSUANCE_REQUESTED
            if not order_number:
                order_number = (self.fiscal_documents.get_for_proposal(db, proposal_id) or {}).get("bling_order_number")
                if order_number:
                    self.repository.fill_order_number(db, proposal_id, order_number)

            failed_step = ApprovalStep.INSTALLMENTS_CREATED
            if not step.reached(ApprovalStep.INSTALLMENTS_CREATED):
                if self.installments.count_for_proposal(db, proposal_id) == 0:
                    proposal = self._load_proposal(db, proposal_id)
                    self.installments.create_many(db, proposal=proposal, installments=context.installments)
                self.repository.advance_step(db, proposal_id, ApprovalStep.INSTALLMENTS_CREATED, error=issuance_error)
                step = ApprovalStep.INSTALLMENTS_CREATED

            failed_step = ApprovalStep.COMPLETED
            self._transition(
                db,
                proposal_id,
                ProposalStatus.APPROVING,
                ProposalStatus.APPROVED,
                reason="approval_completed",
                approval_step=ApprovalStep.COMPLETED.value,
                needs_manual_review=0,
                last_step_error=issuance_error,
                confirmed_at=_now_iso(),
            )
        except Exception as exc:
            db.rollback()
            self._flag_partial_failure(db, proposal_id, order_id, order_number, failed_step, exc)
            observe_approval("partial_failure")
            raise PartialFailureError(
                details=_error_text(exc),
                external_order_id=order_id,
                external_order_number=order_number,
                failed_step=failed_step.value,
            ) from exc

        installments_created = self.installments.count_for_proposal(db, proposal_id)
        fiscal_row = self.fiscal_documents.get_for_proposal(db, proposal_id) or {}
        observe_approval("approved")
        self._logger.info(
            "proposal_approved",
            extra={
                "proposal_id": proposal_id,
                "external_order_id": order_id,
                "installments_created": installments_created,
            },
        )
        self.event_bus.publish(
            ProposalApproved(
                proposal_id=int(proposal_id),
                external_order_id=order_id,
                external_order_number=order_number,
                installments_created=installments_created,
            )
        )
        return ApprovalResult(
            proposal_id=int(proposal_id),
            external_order_id=order_id,
            external_order_number=order_number,
            installments_created=installments_created,
            fiscal_document_status=fiscal_row.get("status"),
            issuance_error=issuance_error,
        )

    def _request_issuance(self, db, proposal_id: int) -> str | None:
        try:
            self.fiscal_service.request_document_issuance(db, proposal_id)
        except AppError as exc:
            self._logger.warning(
                "approval_issuance_deferred",
                extra={"proposal_id": proposal_id, "error_code": exc.code, "details": exc.details},
            )
            return _error_text(exc)
        return None

    def _flag_partial_failure(
        self,
        db,
        proposal_id: int,
        order_id: str | None,
        order_number: str | None,
        failed_step: ApprovalStep,
        exc: Exception,
    ) -> None:
        error = f"{failed_step.value}: {_error_text(exc)}"
        self.repository.flag_manual_review(db, proposal_id, error=error)
        self._logger.error(
            "approval_partial_failure",
            extra={
                "proposal_id": proposal_id,
                "external_order_id": order_id,
                "external_order_number": order_number,
                "failed_step": failed_step.value,
                "details": _error_text(exc),
            },
        )

    def resume_approval(self, db, proposal_id: int, approval_date=None) -> ApprovalResult:
        proposal = self._load_proposal(db, proposal_id)
        if canonical_proposal_status(proposal["status"]) != ProposalStatus.APPROVING or not int(
            proposal.get("needs_manual_review") or 0
        ):
            raise InvalidStateError(message_key="resume_not_allowed", details=f"proposal {proposal_id} em {proposal['status']}.")
        # Due dates must match the installments already sent with the Bling order.
        if proposal.get("approval_date"):
            approval_day = as_date(proposal["approval_date"])
        else:
            approval_day = _approval_day(approval_date)
        self.repository.claim_for_resume(db, proposal_id)

        completed = ApprovalStep(proposal.get("approval_step") or ApprovalStep.CLAIMED.value)
        order_id = proposal.get("bling_order_id")
        order_number = proposal.get("bling_order_number")
        failed_step = ApprovalStep.ORDER_CREATED
        try:
            context = self._prepare(db, proposal_id, approval_day)
            if not order_id:
                order = self.fiscal_service.create_order(
                    db,
                    context.proposal,
                    context.client,
                    context.vendor,
                    context.items,
                    context.installments,
                )
                order_id, order_number = order.order_id, order.order_number
        except Exception as exc:
            db.rollback()
            self._flag_partial_failure(db, proposal_id, order_id, order_number, failed_step, exc)
            observe_approval("partial_failure")
            raise PartialFailureError(
                details=_error_text(exc),
                external_order_id=order_id,
                external_order_number=order_number,
                failed_step=failed_step.value,
            ) from exc

        self._logger.info(
            "approval_resumed",
            extra={"proposal_id": proposal_id, "approval_step": completed.value, "external_order_id": order_id},
        )
        return self._finish(
            db,
            proposal_id,
            context,
            order_id=str(order_id),
            order_number=order_number,
            completed=completed,
        )

    def reject(self, db, proposal_id: int, reason: str | None = None, rejected_by: str | None = None) -> dict:
        proposal = self._load_proposal(db, proposal_id)
        if canonical_proposal_status(proposal["status"]) != ProposalStatus.AWAITING_APPROVAL:
            raise InvalidStateError(details=f"proposal {proposal_id} em {proposal['status']}.")
        normalized_reason = (reason or "").strip() or None
        self._transition(
            db,
            proposal_id,
            ProposalStatus.AWAITING_APPROVAL,
            ProposalStatus.REJECTED,
            reason="proposal_rejected",
            rejection_reason=normalized_reason,
            rejected_by=rejected_by,
        )
        observe_approval("rejected")
        self.event_bus.publish(ProposalRejected(proposal_id=int(proposal_id), reason=normalized_reason or ""))
        return {"id": int(proposal_id), "status": ProposalStatus.REJECTED.value, "rejection_reason": normalized_reason}
