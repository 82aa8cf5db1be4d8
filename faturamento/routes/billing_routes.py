from __future__ import annotations

from flask import Blueprint, Response, jsonify, request

from faturamento.contexts.billing.domain.status import (
    FiscalDocumentStatus,
    InstallmentStatus,
    ProposalStatus,
    canonicalize,
    status_label,
)
from faturamento.contexts.billing.infrastructure.repositories.directory_repository import DirectoryRepository
from faturamento.contexts.billing.infrastructure.repositories.installment_repository import InstallmentRepository
from faturamento.contexts.billing.infrastructure.repositories.proposal_repository import ProposalRepository
from faturamento.contexts.billing.infrastructure.repositories.status_event_repository import StatusEventRepository
from faturamento.contexts.fiscal.infrastructure.repositories.fiscal_document_repository import (
    FiscalDocumentRepository,
)
from faturamento.db import get_db
from faturamento.errors import NotFoundError, UnrecognizedStatusError, ValidationError
from faturamento.services import current_services
from faturamento.ui_strings import success_message


billing_bp = Blueprint("billing", __name__)

_DIRECTORY = DirectoryRepository()
_PROPOSALS = ProposalRepository()
_INSTALLMENTS = InstallmentRepository()
_FISCAL_DOCUMENTS = FiscalDocumentRepository()
_STATUS_EVENTS = StatusEventRepository()


def _ok(key: str, fallback: str | None = None) -> str:
    return success_message(key, fallback)


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _parse_int(value, *, field: str) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(details=f"Campo '{field}' deve ser inteiro.") from None
    if parsed <= 0:
        raise ValidationError(details=f"Campo '{field}' deve ser positivo.")
    return parsed


def _parse_optional_float(value, *, field: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        raise ValidationError(details=f"Campo '{field}' deve ser numerico.") from None


def _actor(payload: dict, key: str) -> str | None:
    return (str(payload.get(key) or "").strip() or request.headers.get("X-User-Email") or "").strip() or None


def _with_label(row: dict, enum_cls) -> dict:
    data = dict(row)
    try:
        data["status_label"] = status_label(canonicalize(enum_cls, row.get("status")))
    except UnrecognizedStatusError:
        data["status_label"] = row.get("status")
    return data


@billing_bp.route("/api/clients", methods=["POST"])
def create_client_api():
    db = get_db()
    payload = _payload()
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError(details="Campo 'name' obrigatorio.")
    vendor_id = payload.get("vendor_id")
    fields = {key: payload.get(key) for key in payload if key not in {"name", "vendor_id"}}
    client_id = _DIRECTORY.create_client(
        db,
        **fields,
        name=name,
        vendor_id=_parse_int(vendor_id, field="vendor_id") if vendor_id not in (None, "") else None,
    )
    return jsonify(_DIRECTORY.get_client(db, client_id)), 201


@billing_bp.route("/api/vendors", methods=["POST"])
def create_vendor_api():
    db = get_db()
    payload = _payload()
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError(details="Campo 'name' obrigatorio.")
    vendor_id = _DIRECTORY.create_vendor(
        db,
        name=name,
        email=(str(payload.get("email") or "").strip() or None),
        commission_rate=_parse_optional_float(payload.get("commission_rate"), field="commission_rate"),
        bling_vendor_id=(str(payload.get("bling_vendor_id") or "").strip() or None),
    )
    return jsonify(_DIRECTORY.get_vendor(db, vendor_id)), 201


@billing_bp.route("/api/clients/<int:client_id>/discount", methods=["POST"])
def assign_client_discount_api(client_id: int):
    db = get_db()
    payload = _payload()
    percent = _parse_optional_float(payload.get("discount_percent"), field="discount_percent")
    if percent is None or percent < 0 or percent > 100:
        raise ValidationError(details="Desconto deve estar entre 0 e 100.")
    if not _DIRECTORY.assign_client_discount(db, client_id, percent, _actor(payload, "assigned_by")):
        raise NotFoundError(code="client_not_found", message_key="client_not_found")
    return jsonify({"client": _DIRECTORY.get_client(db, client_id), "message": _ok("discount_assigned")})


@billing_bp.route("/api/proposals", methods=["POST"])
def submit_proposal_api():
    db = get_db()
    payload = _payload()
    result = current_services().proposals.submit_proposal(
        db,
        client_id=_parse_int(payload.get("client_id"), field="client_id"),
        vendor_id=_parse_int(payload.get("vendor_id"), field="vendor_id"),
        invoicing_term=str(payload.get("invoicing_term") or ""),
        items=payload.get("items"),
        shipping_value=payload.get("shipping_value"),
    )
    return jsonify({**result, "message": _ok("proposal_saved")}), 201


@billing_bp.route("/api/proposals/<int:proposal_id>", methods=["GET"])
def proposal_detail_api(proposal_id: int):
    db = get_db()
    proposal = _PROPOSALS.get_by_id(db, proposal_id)
    if proposal is None:
        raise NotFoundError(code="proposal_not_found", message_key="proposal_not_found")
    fiscal_document = _FISCAL_DOCUMENTS.get_for_proposal(db, proposal_id)
    return jsonify(
        {
            "proposal": _with_label(proposal, ProposalStatus),
            "items": _PROPOSALS.list_items(db, proposal_id),
            "installments": [
                _with_label(row, InstallmentStatus) for row in _INSTALLMENTS.list_for_proposal(db, proposal_id)
            ],
            "fiscal_document": _with_label(fiscal_document, FiscalDocumentStatus) if fiscal_document else None,
            "history": _STATUS_EVENTS.list_for_entity(db, entity="proposal", entity_id=proposal_id),
        }
    )


@billing_bp.route("/api/proposals/<int:proposal_id>/approve", methods=["POST"])
def approve_proposal_api(proposal_id: int):
    db = get_db()
    payload = _payload()
    result = current_services().approvals.approve(
        db,
        proposal_id,
        approved_by=_actor(payload, "approved_by"),
        approval_date=payload.get("approval_date") or None,
    )
    return jsonify({**result.to_dict(), "message": _ok("proposal_approved")})


@billing_bp.route("/api/proposals/<int:proposal_id>/reject", methods=["POST"])
def reject_proposal_api(proposal_id: int):
    db = get_db()
    payload = _payload()
    result = current_services().approvals.reject(
        db,
        proposal_id,
        reason=payload.get("reason"),
        rejected_by=_actor(payload, "rejected_by"),
    )
    return jsonify({**result, "message": _ok("proposal_rejected")})


@billing_bp.route("/api/proposals/<int:proposal_id>/resume-approval", methods=["POST"])
def resume_approval_api(proposal_id: int):
    db = get_db()
    payload = _payload()
    result = current_services().approvals.resume_approval(
        db,
        proposal_id,
        approval_date=payload.get("approval_date") or None,
    )
    return jsonify({**result.to_dict(), "message": _ok("approval_resumed")})


@billing_bp.route("/api/proposals/<int:proposal_id>/fiscal-document/issue", methods=["POST"])
def issue_fiscal_document_api(proposal_id: int):
    db = get_db()
    document_id = current_services().fiscal.request_document_issuance(db, proposal_id)
    row = _FISCAL_DOCUMENTS.get_for_proposal(db, proposal_id) or {}
    return jsonify(
        {
            "proposal_id": proposal_id,
            "document_id": document_id,
            "status": row.get("status"),
            "last_error": row.get("last_error"),
            "message": _ok("nfe_requested"),
        }
    )


@billing_bp.route("/api/proposals/<int:proposal_id>/fiscal-document/poll", methods=["POST"])
def poll_fiscal_document_api(proposal_id: int):
    db = get_db()
    payload = _payload()
    attempts = payload.get("attempts")
    result = current_services().fiscal.poll_document_status(
        db,
        proposal_id,
        attempts=_parse_int(attempts, field="attempts") if attempts not in (None, "") else 1,
    )
    message_key = {"authorized": "nfe_authorized", "pending_authorization": "nfe_pending"}.get(result["outcome"])
    body = {"proposal_id": proposal_id, **result}
    if message_key:
        body["message"] = _ok(message_key)
    return jsonify(body)


@billing_bp.route("/api/installments/<int:installment_id>/mark-paid", methods=["POST"])
def mark_installment_paid_api(installment_id: int):
    db = get_db()
    payload = _payload()
    result = current_services().installments.mark_paid(db, installment_id, payload.get("payment_date") or None)
    return jsonify({**result, "message": _ok("installment_paid")})


@billing_bp.route("/api/installments/refresh-statuses", methods=["POST"])
def refresh_installment_statuses_api():
    db = get_db()
    payload = _payload()
    return jsonify(current_services().installments.refresh_statuses(db, payload.get("today") or None))


@billing_bp.route("/api/payment-batches", methods=["POST"])
def create_payment_batch_api():
    db = get_db()
    payload = _payload()
    raw_ids = payload.get("installment_ids")
    if not isinstance(raw_ids, list):
        raise ValidationError(code="batch_items_required", message_key="batch_items_required")
    installment_ids = [_parse_int(value, field="installment_ids") for value in raw_ids]
    result = current_services().installments.create_payment_batch(
        db,
        installment_ids,
        str(payload.get("reference") or ""),
        created_by=_actor(payload, "created_by"),
    )
    return jsonify({**result, "message": _ok("payment_batch_created")}), 201


@billing_bp.route("/api/payment-batches/<int:batch_id>", methods=["GET"])
def payment_batch_detail_api(batch_id: int):
    db = get_db()
    detail = current_services().installments.payment_batch_detail(db, batch_id)
    detail["installments"] = [_with_label(row, InstallmentStatus) for row in detail["installments"]]
    return jsonify(detail)


@billing_bp.route("/api/payment-batches/<int:batch_id>/export.csv", methods=["GET"])
def export_payment_batch_api(batch_id: int):
    db = get_db()
    filename, content = current_services().installments.export_payment_batch_csv(db, batch_id)
    return Response(
        content,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
