from __future__ import annotations

from flask import Blueprint, jsonify, request

from faturamento.contexts.reconciliation.domain.matching import summarize
from faturamento.db import get_db
from faturamento.errors import ValidationError
from faturamento.services import current_services
from faturamento.ui_strings import success_message


reconciliation_bp = Blueprint("reconciliation", __name__)


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@reconciliation_bp.route("/api/reconciliation/match", methods=["POST"])
def reconcile_statement_api():
    db = get_db()
    payload = _payload()
    service = current_services().reconciliation
    entries = service.parse_entries(payload.get("entries"))

    vendor_id = payload.get("vendor_id")
    if vendor_id not in (None, ""):
        try:
            vendor_id = int(vendor_id)
        except (TypeError, ValueError):
            raise ValidationError(details="Campo 'vendor_id' deve ser inteiro.") from None
    else:
        vendor_id = None

    proposals = service.reconcile_statement(db, entries, vendor_id=vendor_id)
    return jsonify(
        {
            "matches": [proposal.to_dict() for proposal in proposals],
            "summary": summarize(proposals),
        }
    )


@reconciliation_bp.route("/api/reconciliation/confirm", methods=["POST"])
def confirm_matches_api():
    db = get_db()
    payload = _payload()
    matches = payload.get("matches")
    if not isinstance(matches, list):
        raise ValidationError(details="Informe a lista de conciliacoes a confirmar.")
    result = current_services().reconciliation.confirm_matches(db, matches, today=payload.get("today") or None)
    if result["succeeded"]:
        result["message"] = success_message("reconciliation_done")
    return jsonify(result)
