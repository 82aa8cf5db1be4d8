from __future__ import annotations

import html
import re
from typing import Any, List

from faturamento.contexts.fiscal.domain.gateway import FiscalGatewayError


_TAG_RE = re.compile(r"<[^>]+>")
_INVENTORY_PRODUCTS_RE = re.compile(r"insuficiente[:\s]*(.+)", re.IGNORECASE)
_INF_PROT_RE = re.compile(r"<infProt[^>]*>(.*?)</infProt>", re.IGNORECASE | re.DOTALL)
_CSTAT_RE = re.compile(r"<cStat>\s*(\d+)\s*</cStat>", re.IGNORECASE)
_XMOTIVO_RE = re.compile(r"<xMotivo>\s*(.*?)\s*</xMotivo>", re.IGNORECASE | re.DOTALL)

_DUPLICATE_MARKERS = ("já existe", "ja existe", "duplicad", "already exists")
_ALREADY_SUBMITTED_MARKERS = ("já enviada", "ja enviada", "already sent", "autorizada")


def strip_html(value: Any) -> str:
    text = _TAG_RE.sub(" ", str(value or ""))
    text = html.unescape(text)
    return " ".join(text.split())


def _message_of(entry: Any) -> str:
    if isinstance(entry, dict):
        return strip_html(entry.get("msg") or entry.get("message") or entry.get("mensagem") or "")
    return strip_html(entry)


def extract_field_messages(body: Any) -> List[str]:
    if not isinstance(body, dict):
        return []

    messages: List[str] = []
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    fields = error.get("fields")
    if isinstance(fields, list):
        messages.extend(_message_of(entry) for entry in fields)
    elif isinstance(fields, dict):
        messages.extend(_message_of(entry) for entry in fields.values())

    if not any(messages):
        for key in ("message", "description"):
            if error.get(key):
                messages.append(strip_html(error[key]))
        if isinstance(body.get("error"), str):
            messages.append(strip_html(body["error"]))
        if body.get("message"):
            messages.append(strip_html(body["message"]))
        errors = body.get("errors")
        if isinstance(errors, list):
            messages.extend(_message_of(entry) for entry in errors)

    unique: List[str] = []
    for message in messages:
        if message and message not in unique:
            unique.append(message)
    return unique


def _existing_id(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, dict) and data.get("id") not in (None, ""):
        return str(data["id"])
    return None


def mentions_duplicate(text: str | None) -> bool:
    lowered = str(text or "").lower()
    return any(marker in lowered for marker in _DUPLICATE_MARKERS)


def is_already_submitted(message: str | None) -> bool:
    lowered = str(message or "").lower()
    return any(marker in lowered for marker in _ALREADY_SUBMITTED_MARKERS)


def inventory_products(messages: List[str]) -> str | None:
    for message in messages:
        lowered = message.lower()
        if "estoque" in lowered and "insuficiente" in lowered:
            match = _INVENTORY_PRODUCTS_RE.search(message)
            products = match.group(1).strip() if match else ""
            if products.lower().startswith("no bling para"):
                products = products[len("no bling para") :].lstrip(": ").strip()
            return products
    return None


def classify_http_error(status_code: int, body: Any) -> FiscalGatewayError:
    messages = extract_field_messages(body)
    joined = "; ".join(messages)

    products = inventory_products(messages)
    if products is not None:
        summary = (
            f"Estoque insuficiente no Bling para: {products}"
            if products
            else "Estoque insuficiente no Bling para um ou mais produtos"
        )
        return FiscalGatewayError(
            "inventory_insufficient",
            summary,
            status_code=status_code,
            field_messages=[products] if products else [],
            body=body,
        )

    existing_id = _existing_id(body)
    if status_code == 409 or (status_code == 422 and mentions_duplicate(joined)) or existing_id:
        return FiscalGatewayError(
            "conflict",
            joined or f"Bling HTTP {status_code}: registro duplicado",
            status_code=status_code,
            field_messages=messages,
            existing_id=existing_id,
            body=body,
        )

    if 400 <= status_code < 500 and status_code not in (408, 429):
        return FiscalGatewayError(
            "fiscal_validation_error",
            joined or f"Bling HTTP {status_code}",
            status_code=status_code,
            field_messages=messages,
            body=body,
        )

    return FiscalGatewayError(
        "gateway_unreachable",
        joined or f"Bling HTTP {status_code}",
        status_code=status_code,
        field_messages=messages,
        body=body,
    )


def extract_sefaz_rejection(xml_text: str | None) -> str | None:
    raw = str(xml_text or "")
    if not raw:
        return None
    block_match = _INF_PROT_RE.search(raw)
    block = block_match.group(1) if block_match else raw
    motivo = _XMOTIVO_RE.search(block)
    if not motivo:
        return None
    status = _CSTAT_RE.search(block)
    reason = strip_html(motivo.group(1))
    if status:
        return f"SEFAZ cStat {status.group(1)}: {reason}"
    return f"SEFAZ: {reason}"
