from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Sequence

from faturamento.contexts.billing.domain.status import FiscalDocumentStatus, canonical_fiscal_status
from faturamento.contexts.billing.domain.terms import DerivedInstallment
from faturamento.contexts.billing.infrastructure.repositories.status_event_repository import StatusEventRepository
from faturamento.contexts.fiscal.domain.contracts import (
    FiscalInstallmentV1,
    FiscalOrderLineV1,
    FiscalOrderV1,
    OrderCreationResultV1,
)
from faturamento.contexts.fiscal.domain.gateway import FiscalGateway, FiscalGatewayError
from faturamento.contexts.fiscal.infrastructure.circuit_breaker import BlingCircuitBreaker, get_bling_circuit_breaker
from faturamento.contexts.fiscal.infrastructure.mappers.bling_errors import is_already_submitted
from faturamento.contexts.fiscal.infrastructure.repositories.fiscal_document_repository import (
    FiscalDocumentRepository,
)
from faturamento.contexts.fiscal.infrastructure.settings import BlingSettings
from faturamento.core import EventBus, FiscalDocumentAuthorized, get_event_bus
from faturamento.errors import (
    AppError,
    FiscalValidationError,
    GatewayError,
    GatewayTimeoutError,
    GatewayUnreachableError,
    InvalidStateError,
    InventoryInsufficientError,
    MissingFiscalClassificationError,
)
from faturamento.observability import observe_gateway_call


DEFAULT_REJECTION_REASON = "Motivo nao retornado pelo Bling."

ISSUABLE_STATUSES = (
    FiscalDocumentStatus.CREATED,
    FiscalDocumentStatus.REJECTED,
    FiscalDocumentStatus.SUBMITTING,
)
POLLABLE_STATUSES = (
    FiscalDocumentStatus.PENDING_AUTHORIZATION,
    FiscalDocumentStatus.REJECTED,
)


def store_reference_for(proposal_id: int) -> str:
    return f"PROP-{int(proposal_id)}"


def to_app_error(exc: FiscalGatewayError) -> AppError:
    """Translate a gateway failure into the operator-facing error taxonomy."""
    if exc.kind == "inventory_insufficient":
        return InventoryInsufficientError(details=exc.message, products=", ".join(exc.field_messages) or None)
    if exc.kind == "fiscal_validation_error":
        return FiscalValidationError(details=exc.message, field_messages=exc.field_messages)
    if exc.kind == "gateway_timeout":
        return GatewayTimeoutError(details=exc.message)
    if exc.kind == "conflict":
        return GatewayError(code="duplicate_unresolved", message_key="fiscal_validation_failed", details=exc.message)
    return GatewayUnreachableError(details=exc.message)


def _error_text(exc: Exception) -> str:
    if isinstance(exc, AppError):
        return exc.details or exc.code
    return str(exc)


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, FiscalGatewayError):
        return exc.kind
    if isinstance(exc, AppError):
        return exc.code
    return "unexpected_error"


class FiscalDocumentService:
    def __init__(
        self,
        gateway: FiscalGateway,
        settings: BlingSettings,
        *,
        repository: FiscalDocumentRepository | None = None,
        status_events: StatusEventRepository | None = None,
        event_bus: EventBus | None = None,
        breaker: BlingCircuitBreaker | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.repository = repository or FiscalDocumentRepository()
        self.status_events = status_events or StatusEventRepository()
        self.event_bus = event_bus or get_event_bus()
        self.breaker = breaker or get_bling_circuit_breaker()
        self._sleep = sleep
        self._logger = logging.getLogger("faturamento")

    def _guarded(self, operation: str, fn: Callable[[], Any]) -> Any:
        if not self.breaker.allow_call():
            observe_gateway_call(operation, "circuit_open", 0.0)
            raise GatewayUnreachableError(details="Circuito do Bling aberto; chamadas suspensas temporariamente.")

        started = time.perf_counter()
        try:
            result = fn()
        except FiscalGatewayError as exc:
            if exc.kind in ("gateway_unreachable", "gateway_timeout"):
                self.breaker.record_failure()
            else:
                self.breaker.record_success()
            observe_gateway_call(operation, exc.kind, (time.perf_counter() - started) * 1000.0)
            self._logger.warning(
                "fiscal_gateway_call_failed",
                extra={
                    "operation": operation,
                    "kind": exc.kind,
                    "status_code": exc.status_code,
                    "details": exc.message,
                },
            )
            raise
        except AppError:
            self.breaker.record_success()
            observe_gateway_call(operation, "rejected_locally", (time.perf_counter() - started) * 1000.0)
            raise
        except Exception:
            self.breaker.record_failure()
            observe_gateway_call(operation, "unexpected_error", (time.perf_counter() - started) * 1000.0)
            raise
        self.breaker.record_success()
        observe_gateway_call(operation, "success", (time.perf_counter() - started) * 1000.0)
        return result

    def _transition(
        self,
        db,
        proposal_id: int,
        from_statuses: Sequence[FiscalDocumentStatus],
        to_status: FiscalDocumentStatus,
        *,
        reason: str,
        **fields,
    ) -> None:
        self.repository.transition(db, proposal_id, from_statuses, to_status, **fields)
        self.status_events.add_event(
            db,
            entity="fiscal_document",
            entity_id=proposal_id,
            from_status="|".join(status.value for status in from_statuses),
            to_status=to_status,
            reason=reason,
        )
        db.commit()

    def resolve_nature_of_operation(self, client: dict) -> str:
        nature = self.settings.nature_of_operation_for(client.get("tax_id"))
        if not nature:
            raise MissingFiscalClassificationError(
                details="BLING_NATUREZA_OPERACAO_PF_ID/PJ_ID nao configurado para o tipo de cliente.",
            )
        return nature

    def build_order(
        self,
        proposal: dict,
        client: dict,
        vendor: dict,
        items: Iterable[dict],
        installments: Sequence[DerivedInstallment],
        nature_of_operation_id: str,
    ) -> FiscalOrderV1:
        discount_percent = float(proposal.get("discount_percent") or 0)
        notes = f"Proposta {proposal['id']} | FATURAMENTO B2B {proposal.get('invoicing_term')}"
        if discount_percent:
            notes += f" | DESCONTO: {discount_percent:g}%"
        return FiscalOrderV1(
            store_reference=store_reference_for(proposal["id"]),
            client_name=str(client.get("name") or ""),
            client_tax_id=str(client.get("tax_id") or ""),
            client_email=client.get("email"),
            client_phone=client.get("phone"),
            client_state_registration=client.get("state_registration"),
            address={
                "street": client.get("address_street"),
                "number": client.get("address_number"),
                "complement": client.get("address_complement"),
                "district": client.get("address_district"),
                "city": client.get("address_city"),
                "state": client.get("address_state"),
                "zip": client.get("address_zip"),
            },
            nature_of_operation_id=nature_of_operation_id,
            vendor_reference=vendor.get("bling_vendor_id"),
            lines=[
                FiscalOrderLineV1(
                    sku=str(item.get("sku") or "").strip(),
                    description=item.get("description"),
                    qty=float(item.get("quantity") or 0),
                    unit_price=float(item.get("unit_price") or 0),
                )
                for item in items
            ],
            installments=[
                FiscalInstallmentV1(
                    due_date=installment.due_date,
                    amount=installment.face_value,
                    note=f"Parcela {installment.number}/{installment.count}",
                )
                for installment in installments
            ],
            shipping_value=float(proposal.get("shipping_value") or 0),
            discount_value=float(proposal.get("discount_value") or 0),
            notes=notes,
        )

    def _resolve_duplicate_order(self, store_reference: str, exc: FiscalGatewayError) -> OrderCreationResultV1:
        if exc.existing_id:
            order_number = None
            try:
                detail = self._guarded("get_order", lambda: self.gateway.get_order(exc.existing_id))
                order_number = detail.get("order_number")
            except FiscalGatewayError as lookup_exc:
                self._logger.warning(
                    "fiscal_order_number_deferred",
                    extra={"external_order_id": exc.existing_id, "kind": lookup_exc.kind},
                )
            return OrderCreationResultV1(order_id=exc.existing_id, order_number=order_number, duplicate=True)
        found = self._guarded("find_order_by_reference", lambda: self.gateway.find_order_by_reference(store_reference))
        if found is None:
            raise exc
        found.duplicate = True
        return found

    def create_order(
        self,
        db,
        proposal: dict,
        client: dict,
        vendor: dict,
        items: Iterable[dict],
        installments: Sequence[DerivedInstallment],
    ) -> OrderCreationResultV1:
        proposal_id = int(proposal["id"])
        nature = self.resolve_nature_of_operation(client)

        row = self.repository.ensure(db, proposal_id)
        if row.get("bling_order_id"):
            return OrderCreationResultV1(
                order_id=str(row["bling_order_id"]),
                order_number=row.get("bling_order_number"),
                duplicate=True,
            )

        self._transition(
            db,
            proposal_id,
            (FiscalDocumentStatus.NOT_REQUESTED, FiscalDocumentStatus.CREATING),
            FiscalDocumentStatus.CREATING,
            reason="order_creation_started",
        )
        order = self.build_order(proposal, client, vendor, items, installments, nature)
        try:
            try:
                result = self._guarded("create_order", lambda: self.gateway.create_order(order))
            except FiscalGatewayError as exc:
                if exc.kind != "conflict":
                    raise
                result = self._resolve_duplicate_order(order.store_reference, exc)
        except (FiscalGatewayError, AppError) as exc:
            self._transition(
                db,
                proposal_id,
                (FiscalDocumentStatus.CREATING,),
                FiscalDocumentStatus.NOT_REQUESTED,
                reason="order_creation_failed",
                last_outcome=_error_kind(exc),
                last_error=_error_text(exc) if isinstance(exc, AppError) else exc.message,
            )
            if isinstance(exc, FiscalGatewayError):
                raise to_app_error(exc) from exc
            raise

        self._transition(
            db,
            proposal_id,
            (FiscalDocumentStatus.CREATING,),
            FiscalDocumentStatus.CREATED,
            reason=result.outcome,
            bling_order_id=result.order_id,
            bling_order_number=result.order_number,
            nature_of_operation_id=nature,
            last_outcome=result.outcome,
            last_error=None,
        )
        if result.duplicate:
            self._logger.info(
                "fiscal_order_duplicate_resolved",
                extra={"proposal_id": proposal_id, "external_order_id": result.order_id},
            )
        return result

    def _create_or_find_document(self, order_id: str) -> str:
        try:
            return self._guarded("create_document", lambda: self.gateway.create_document(order_id))
        except FiscalGatewayError as exc:
            if exc.kind != "conflict":
                raise
            if exc.existing_id:
                return exc.existing_id
            found = self._guarded("find_document_by_order", lambda: self.gateway.find_document_by_order(order_id))
            if not found:
                raise
            return found

    def request_document_issuance(self, db, proposal_id: int) -> str:
        row = self.repository.get_for_proposal(db, proposal_id)
        if not row or not row.get("bling_order_id"):
            raise InvalidStateError(message_key="nfe_not_requested", details=f"proposal {proposal_id} sem pedido Bling.")

        status = canonical_fiscal_status(row["status"])
        if status in (FiscalDocumentStatus.PENDING_AUTHORIZATION, FiscalDocumentStatus.AUTHORIZED) and row.get(
            "document_id"
        ):
            return str(row["document_id"])
        if status not in ISSUABLE_STATUSES:
            raise InvalidStateError(details=f"NF-e em {status.value}; emissao nao permitida.")

        order_id = str(row["bling_order_id"])
        try:
            detail = self._guarded("get_order", lambda: self.gateway.get_order(order_id))
        except FiscalGatewayError as exc:
            self.repository.record_outcome(db, proposal_id, outcome=exc.kind, error=exc.message)
            raise to_app_error(exc) from exc
        if not detail.get("nature_of_operation_id"):
            self.repository.record_outcome(
                db,
                proposal_id,
                outcome="missing_fiscal_classification",
                error="Pedido no Bling sem natureza de operacao.",
            )
            raise MissingFiscalClassificationError(details=f"Pedido Bling {order_id} sem natureza de operacao.")
        if not row.get("bling_order_number") and detail.get("order_number"):
            self.repository.fill_order_number(db, proposal_id, str(detail["order_number"]))

        self._transition(db, proposal_id, ISSUABLE_STATUSES, FiscalDocumentStatus.SUBMITTING, reason="issuance_started")
        document_id = row.get("document_id")
        try:
            if not document_id:
                document_id = self._create_or_find_document(order_id)
            try:
                sefaz_rejection = self._guarded("submit_document", lambda: self.gateway.submit_document(document_id))
            except FiscalGatewayError as exc:
                if not is_already_submitted(exc.message):
                    raise
                sefaz_rejection = None
                self._logger.info("nfe_already_submitted", extra={"proposal_id": proposal_id, "document_id": document_id})
        except (FiscalGatewayError, AppError) as exc:
            self._transition(
                db,
                proposal_id,
                (FiscalDocumentStatus.SUBMITTING,),
                FiscalDocumentStatus.CREATED,
                reason="issuance_failed",
                document_id=document_id,
                last_outcome=_error_kind(exc),
                last_error=exc.message if isinstance(exc, FiscalGatewayError) else _error_text(exc),
            )
            if isinstance(exc, FiscalGatewayError):
                raise to_app_error(exc) from exc
            raise

        self._transition(
            db,
            proposal_id,
            (FiscalDocumentStatus.SUBMITTING,),
            FiscalDocumentStatus.PENDING_AUTHORIZATION,
            reason="issuance_requested",
            document_id=str(document_id),
            last_outcome="pending_authorization",
            last_error=sefaz_rejection,
        )
        return str(document_id)

    def poll_document_status(self, db, proposal_id: int, attempts: int = 1) -> dict:
        row = self.repository.get_for_proposal(db, proposal_id)
        if not row or not row.get("document_id"):
            raise InvalidStateError(message_key="nfe_not_requested", details=f"proposal {proposal_id} sem NF-e emitida.")

        status = canonical_fiscal_status(row["status"])
        if status == FiscalDocumentStatus.AUTHORIZED:
            return self._status_payload(row, outcome="authorized")
        if status not in POLLABLE_STATUSES:
            raise InvalidStateError(details=f"NF-e em {status.value}; consulta nao permitida.")

        document_id = str(row["document_id"])
        total_attempts = max(1, int(attempts or 1))
        for attempt in range(total_attempts):
            try:
                document = self._guarded("get_document", lambda: self.gateway.get_document(document_id))
            except FiscalGatewayError as exc:
                self.repository.record_outcome(db, proposal_id, outcome=exc.kind, error=exc.message)
                raise to_app_error(exc) from exc

            if document.state == "authorized":
                self._transition(
                    db,
                    proposal_id,
                    POLLABLE_STATUSES,
                    FiscalDocumentStatus.AUTHORIZED,
                    reason="nfe_authorized",
                    document_number=document.number,
                    document_key=document.access_key,
                    document_link=document.danfe_link,
                    rejection_reason=None,
                    last_outcome="authorized",
                    last_error=None,
                )
                self._logger.info(
                    "nfe_authorized",
                    extra={"proposal_id": proposal_id, "document_id": document_id, "document_number": document.number},
                )
                self.event_bus.publish(
                    FiscalDocumentAuthorized(
                        proposal_id=int(proposal_id),
                        document_id=document_id,
                        document_number=document.number,
                        document_link=document.danfe_link,
                    )
                )
                return self._status_payload(self.repository.get_for_proposal(db, proposal_id) or {}, outcome="authorized")

            if document.state == "rejected":
                reason = document.rejection_reason or DEFAULT_REJECTION_REASON
                if status != FiscalDocumentStatus.REJECTED:
                    self._transition(
                        db,
                        proposal_id,
                        (FiscalDocumentStatus.PENDING_AUTHORIZATION,),
                        FiscalDocumentStatus.REJECTED,
                        reason="nfe_rejected",
                        rejection_reason=reason,
                        last_outcome="rejected",
                        last_error=reason,
                    )
                self._logger.warning("nfe_rejected", extra={"proposal_id": proposal_id, "reason": reason})
                return self._status_payload(self.repository.get_for_proposal(db, proposal_id) or {}, outcome="rejected")

            if attempt < total_attempts - 1:
                self._sleep(self.settings.poll_interval_ms / 1000.0)

        self.repository.record_outcome(db, proposal_id, outcome="pending_authorization", error=None)
        return self._status_payload(self.repository.get_for_proposal(db, proposal_id) or {}, outcome="pending_authorization")

    @staticmethod
    def _status_payload(row: dict, *, outcome: str) -> dict:
        return {
            "status": row.get("status"),
            "outcome": outcome,
            "document_id": row.get("document_id"),
            "document_number": row.get("document_number"),
            "document_key": row.get("document_key"),
            "document_link": row.get("document_link"),
            "rejection_reason": row.get("rejection_reason"),
        }
