from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Type

from faturamento.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        object.__setattr__(self, "event_id", event_id)
        object.__setattr__(self, "occurred_at", occurred_at.astimezone(timezone.utc))


@dataclass(frozen=True, kw_only=True)
class ProposalApproved(DomainEvent):
    proposal_id: int
    external_order_id: str | None = None
    external_order_number: str | None = None
    installments_created: int = 0


@dataclass(frozen=True, kw_only=True)
class ProposalRejected(DomainEvent):
    proposal_id: int
    reason: str = ""


@dataclass(frozen=True, kw_only=True)
class FiscalDocumentAuthorized(DomainEvent):
    proposal_id: int
    document_id: str
    document_number: str | None = None
    document_link: str | None = None


@dataclass(frozen=True, kw_only=True)
class InstallmentsPaid(DomainEvent):
    installment_ids: tuple = ()
    source: str = "manual"


class EventBus:
    """Synchronous in-process dispatcher; handlers run in publish order."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("faturamento")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(type(event).__name__)
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception(
                    "event_handler_failed",
                    extra={"event_type": type(event).__name__, "event_id": event.event_id},
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_DEFAULT_EVENT_BUS = EventBus()


def get_event_bus() -> EventBus:
    return _DEFAULT_EVENT_BUS


def reset_event_bus_for_tests() -> None:
    _DEFAULT_EVENT_BUS.clear()
