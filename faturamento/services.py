from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from flask import Flask, current_app

from faturamento.contexts.billing.application.approval_service import ApprovalService
from faturamento.contexts.billing.application.installment_service import InstallmentService
from faturamento.contexts.billing.application.proposal_service import ProposalService
from faturamento.contexts.fiscal.application.fiscal_document_service import FiscalDocumentService
from faturamento.contexts.fiscal.domain.gateway import FiscalGateway
from faturamento.contexts.fiscal.infrastructure.circuit_breaker import get_bling_circuit_breaker
from faturamento.contexts.fiscal.infrastructure.factory import build_fiscal_gateway
from faturamento.contexts.fiscal.infrastructure.settings import BlingSettings
from faturamento.contexts.reconciliation.application.service import ReconciliationService
from faturamento.core import EventBus, FiscalDocumentAuthorized, get_event_bus


EXTENSION_KEY = "faturamento.services"


@dataclass
class ServiceRegistry:
    fiscal: FiscalDocumentService
    proposals: ProposalService
    approvals: ApprovalService
    installments: InstallmentService
    reconciliation: ReconciliationService


def build_services(
    config: Mapping,
    *,
    gateway: FiscalGateway | None = None,
    event_bus: EventBus | None = None,
) -> ServiceRegistry:
    bus = event_bus or get_event_bus()
    settings = BlingSettings.from_mapping(config)
    fiscal = FiscalDocumentService(
        gateway or build_fiscal_gateway(config),
        settings,
        event_bus=bus,
        breaker=get_bling_circuit_breaker(),
    )
    return ServiceRegistry(
        fiscal=fiscal,
        proposals=ProposalService(),
        approvals=ApprovalService(
            fiscal,
            commission_default_rate=float(config.get("COMMISSION_DEFAULT_RATE") or 1.5),
            event_bus=bus,
        ),
        installments=InstallmentService(
            release_day=int(config.get("COMMISSION_RELEASE_DAY") or 5),
            event_bus=bus,
        ),
        reconciliation=ReconciliationService(event_bus=bus),
    )


def _link_installments_on_authorization(event: FiscalDocumentAuthorized) -> None:
    from faturamento.db import get_db

    current_services().installments.on_fiscal_document_authorized(get_db(), event)


def init_services(app: Flask, *, gateway: FiscalGateway | None = None) -> ServiceRegistry:
    get_bling_circuit_breaker().configure_from(app.config)
    registry = build_services(app.config, gateway=gateway)
    app.extensions[EXTENSION_KEY] = registry
    get_event_bus().subscribe(FiscalDocumentAuthorized, _link_installments_on_authorization)
    return registry


def replace_fiscal_gateway(app: Flask, gateway: FiscalGateway) -> ServiceRegistry:
    """Rebuild the registry around another gateway (scripted fakes in tests)."""
    registry = build_services(app.config, gateway=gateway)
    app.extensions[EXTENSION_KEY] = registry
    return registry


def current_services() -> ServiceRegistry:
    return current_app.extensions[EXTENSION_KEY]
