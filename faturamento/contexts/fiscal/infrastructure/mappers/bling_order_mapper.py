from __future__ import annotations

from typing import Any

from faturamento.contexts.fiscal.domain.contracts import (
    DocumentStatusV1,
    FiscalOrderV1,
    OrderCreationResultV1,
    only_digits,
)
from faturamento.contexts.fiscal.infrastructure.mappers.bling_errors import extract_sefaz_rejection, strip_html
from faturamento.errors import ValidationError


def _bling_id(value: Any) -> int | str:
    raw = str(value or "").strip()
    return int(raw) if raw.isdigit() else raw


def _data_block(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body:
        return body.get("data")
    return body


def _first_record(body: Any) -> dict | None:
    data = _data_block(body)
    if isinstance(data, list):
        for record in data:
            if isinstance(record, dict):
                return record
        return None
    return data if isinstance(data, dict) else None


def _text(value: Any) -> str | None:
    raw = str(value if value is not None else "").strip()
    return raw or None


def map_fiscal_order_to_bling_payload(order: FiscalOrderV1) -> dict[str, Any]:
    if not order.lines:
        raise ValidationError(
            code="fiscal_payload_invalid",
            message_key="valid_items_required",
            details="Pedido sem itens.",
        )
    missing_sku = [line.description or f"item {idx}" for idx, line in enumerate(order.lines, start=1) if not line.sku]
    if missing_sku:
        raise ValidationError(
            code="fiscal_payload_invalid",
            message_key="items_without_sku",
            details=f"Produto(s) sem SKU: {', '.join(missing_sku)}",
        )

    address = dict(order.address or {})
    contact: dict[str, Any] = {
        "nome": order.client_name,
        "numeroDocumento": only_digits(order.client_tax_id),
        "tipoPessoa": "F" if order.is_individual else "J",
        "email": order.client_email,
        "telefone": order.client_phone,
    }
    if order.client_state_registration:
        contact["ie"] = only_digits(order.client_state_registration)

    payload: dict[str, Any] = {
        "numeroLoja": order.store_reference,
        "data": order.issued_on,
        "contato": {key: value for key, value in contact.items() if value not in (None, "")},
        "itens": [
            {
                "codigo": line.sku,
                "descricao": line.description,
                "unidade": line.unit or "UN",
                "quantidade": float(line.qty),
                "valor": round(float(line.unit_price), 2),
            }
            for line in order.lines
        ],
        "parcelas": [
            {
                "dataVencimento": installment.due_date,
                "valor": round(float(installment.amount), 2),
                "observacoes": installment.note,
            }
            for installment in order.installments
        ],
        "naturezaOperacao": {"id": _bling_id(order.nature_of_operation_id)},
        "transporte": {
            "frete": round(float(order.shipping_value or 0), 2),
            "etiqueta": {
                "nome": order.client_name,
                "endereco": address.get("street"),
                "numero": address.get("number"),
                "complemento": address.get("complement"),
                "bairro": address.get("district"),
                "municipio": address.get("city"),
                "uf": address.get("state"),
                "cep": only_digits(address.get("zip")) or None,
            },
        },
    }
    if float(order.discount_value or 0) > 0:
        payload["desconto"] = {"valor": round(float(order.discount_value), 2), "unidade": "REAL"}
    if order.vendor_reference:
        payload["vendedor"] = {"id": _bling_id(order.vendor_reference)}
    if order.notes:
        payload["observacoes"] = order.notes
    return payload


def map_order_creation_response(body: Any, *, duplicate: bool = False) -> OrderCreationResultV1 | None:
    record = _first_record(body)
    if not record or record.get("id") in (None, ""):
        return None
    return OrderCreationResultV1(
        order_id=str(record["id"]),
        order_number=_text(record.get("numero")),
        duplicate=duplicate,
    )


def map_order_detail(body: Any) -> dict[str, Any]:
    record = _first_record(body) or {}
    nature = record.get("naturezaOperacao") if isinstance(record.get("naturezaOperacao"), dict) else {}
    nature_id = _text(nature.get("id"))
    return {
        "order_id": _text(record.get("id")),
        "order_number": _text(record.get("numero")),
        "store_reference": _text(record.get("numeroLoja")),
        "nature_of_operation_id": None if nature_id in (None, "0") else nature_id,
    }


def map_document_id(body: Any) -> str | None:
    record = _first_record(body)
    if not record:
        return None
    return _text(record.get("id"))


def map_document_status(document_id: str, body: Any) -> DocumentStatusV1:
    record = _first_record(body) or {}
    try:
        situation = int(record.get("situacao")) if record.get("situacao") not in (None, "") else None
    except (TypeError, ValueError):
        situation = None

    danfe_link = _text(record.get("linkDanfe")) or _text(record.get("link")) or _text(record.get("linkPdf"))
    rejection = extract_sefaz_rejection(record.get("xml") if isinstance(record.get("xml"), str) else None)
    if not rejection:
        rejection = _text(strip_html(record.get("motivoRejeicao") or record.get("erroEnvio") or ""))

    return DocumentStatusV1(
        document_id=str(record.get("id") or document_id),
        situation=situation,
        number=_text(record.get("numero")),
        access_key=_text(record.get("chaveAcesso")),
        danfe_link=danfe_link,
        rejection_reason=rejection,
    )


def map_submission_rejection(body: Any) -> str | None:
    record = _first_record(body) or {}
    xml = record.get("xml")
    return extract_sefaz_rejection(xml) if isinstance(xml, str) else None
