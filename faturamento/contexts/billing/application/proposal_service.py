from __future__ import annotations

from typing import Any, Dict, List

from faturamento.contexts.billing.domain.terms import compute_proposal_total, resolve_term
from faturamento.contexts.billing.infrastructure.repositories.directory_repository import DirectoryRepository
from faturamento.contexts.billing.infrastructure.repositories.proposal_repository import ProposalRepository
from faturamento.contexts.billing.infrastructure.repositories.status_event_repository import StatusEventRepository
from faturamento.errors import NotFoundError, ValidationError


def _parse_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        return None


class ProposalService:
    """Sales-side entry point: validates the payload and stores a proposal awaiting approval."""

    def __init__(
        self,
        repository: ProposalRepository | None = None,
        directory: DirectoryRepository | None = None,
        status_events: StatusEventRepository | None = None,
    ) -> None:
        self.repository = repository or ProposalRepository()
        self.directory = directory or DirectoryRepository()
        self.status_events = status_events or StatusEventRepository()

    @staticmethod
    def normalize_items(raw_items: Any) -> List[Dict[str, Any]]:
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError(code="items_required", message_key="items_required")

        items: List[Dict[str, Any]] = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            quantity = _parse_float(raw.get("quantity"))
            if quantity is None or quantity <= 0:
                raise ValidationError(
                    code="quantity_invalid",
                    message_key="quantity_invalid",
                    details=f"Quantidade invalida para o item {raw.get('sku') or raw.get('description') or '?'}.",
                )
            unit_price = _parse_float(raw.get("unit_price"))
            if unit_price is None or unit_price < 0:
                continue
            items.append(
                {
                    "sku": (str(raw.get("sku") or "").strip() or None),
                    "description": (str(raw.get("description") or "").strip() or None),
                    "quantity": quantity,
                    "unit_price": unit_price,
                }
            )
        if not items:
            raise ValidationError(code="valid_items_required", message_key="valid_items_required")
        return items

    def submit_proposal(
        self,
        db,
        *,
        client_id: int,
        vendor_id: int,
        invoicing_term: str,
        items: Any,
        shipping_value: Any = None,
    ) -> dict:
        client = self.directory.get_client(db, client_id)
        if client is None:
            raise NotFoundError(code="client_not_found", message_key="client_not_found")
        if self.directory.get_vendor(db, vendor_id) is None:
            raise NotFoundError(code="vendor_not_found", message_key="vendor_not_found")

        term = resolve_term(invoicing_term)
        normalized_items = self.normalize_items(items)
        shipping = _parse_float(shipping_value) or 0.0
        if shipping < 0:
            raise ValidationError(details="Frete nao pode ser negativo.")

        discount_percent = float(client.get("discount_percent") or 0)
        products_total, discount_value, total_value = compute_proposal_total(
            normalized_items,
            shipping,
            discount_percent,
        )
        proposal_id = self.repository.create(
            db,
            client_id=int(client_id),
            vendor_id=int(vendor_id),
            invoicing_term=term,
            items=normalized_items,
            products_total=products_total,
            shipping_value=shipping,
            discount_percent=discount_percent,
            discount_value=discount_value,
            total_value=total_value,
        )
        self.status_events.add_event(
            db,
            entity="proposal",
            entity_id=proposal_id,
            from_status=None,
            to_status="AWAITING_APPROVAL",
            reason="proposal_submitted",
        )
        db.commit()
        return {
            "id": proposal_id,
            "status": "AWAITING_APPROVAL",
            "invoicing_term": term,
            "products_total": products_total,
            "discount_percent": discount_percent,
            "discount_value": discount_value,
            "shipping_value": shipping,
            "total_value": total_value,
            "items_created": len(normalized_items),
        }
