from faturamento.core.event_bus import (
    DomainEvent,
    EventBus,
    FiscalDocumentAuthorized,
    InstallmentsPaid,
    ProposalApproved,
    ProposalRejected,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "ProposalApproved",
    "ProposalRejected",
    "FiscalDocumentAuthorized",
    "InstallmentsPaid",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
