from __future__ import annotations

from .bling_errors import classify_http_error, extract_field_messages, extract_sefaz_rejection, is_already_submitted
from .bling_order_mapper import map_document_status, map_fiscal_order_to_bling_payload, map_order_creation_response

__all__ = [
    "classify_http_error",
    "extract_field_messages",
    "extract_sefaz_rejection",
    "is_already_submitted",
    "map_document_status",
    "map_fiscal_order_to_bling_payload",
    "map_order_creation_response",
]
