from __future__ import annotations

from typing import Any, Dict, Iterable

from faturamento.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
    expose_details = False

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Nao foi possivel concluir a operacao.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.expose_details and self.details:
            payload["details"] = self.details
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "status_invalid"
    default_http_status = 400
    default_critical = False
    expose_details = True


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "action_invalid"
    default_http_status = 404
    default_critical = False


class InvalidStateError(UserActionError):
    default_code = "invalid_state"
    default_message_key = "action_not_allowed_for_status"
    default_http_status = 409
    default_critical = False
    expose_details = True


class ClientNotEligibleError(ValidationError):
    default_code = "client_not_eligible"
    default_message_key = "client_not_eligible"


class MissingFiscalClassificationError(ValidationError):
    default_code = "missing_fiscal_classification"
    default_message_key = "fiscal_classification_missing"


class UnknownTermError(ValidationError):
    default_code = "unknown_term"
    default_message_key = "term_unknown"


class UnrecognizedStatusError(ValidationError):
    default_code = "unrecognized_status"
    default_message_key = "status_unrecognized"


class GatewayError(AppError):
    default_code = "gateway_error"
    default_message_key = "gateway_unreachable"
    default_http_status = 502
    default_critical = False
    expose_details = True
    retryable = False


class GatewayUnreachableError(GatewayError):
    default_code = "gateway_unreachable"
    default_message_key = "gateway_unreachable"
    default_http_status = 502
    retryable = True


class GatewayTimeoutError(GatewayError):
    default_code = "gateway_timeout"
    default_message_key = "gateway_timeout"
    default_http_status = 504
    retryable = True


class FiscalValidationError(GatewayError):
    default_code = "fiscal_validation_error"
    default_message_key = "fiscal_validation_failed"
    default_http_status = 422

    def __init__(self, *args, field_messages: Iterable[str] | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.field_messages = [str(msg).strip() for msg in (field_messages or []) if str(msg or "").strip()]
        if self.field_messages:
            self.payload.setdefault("field_messages", list(self.field_messages))

    def user_message(self) -> str:
        base = super().user_message()
        if not self.field_messages:
            return base
        return f"{base} {'; '.join(self.field_messages)}"


class InventoryInsufficientError(FiscalValidationError):
    default_code = "inventory_insufficient"
    default_message_key = "inventory_insufficient"

    def __init__(self, *args, products: str | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.products = (products or "").strip() or None
        self.payload["prominent"] = True
        if self.products:
            self.payload["products"] = self.products

    def user_message(self) -> str:
        if self.products:
            return f"Estoque insuficiente no Bling para: {self.products}"
        return error_message(self.message_key)


class PartialFailureError(AppError):
    default_code = "partial_failure"
    default_message_key = "approval_partial_failure"
    default_http_status = 500
    default_critical = True
    expose_details = True

    def __init__(
        self,
        *args,
        external_order_id: str | None = None,
        external_order_number: str | None = None,
        failed_step: str | None = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.external_order_id = external_order_id
        self.external_order_number = external_order_number
        self.failed_step = failed_step
        self.payload.update(
            {
                "external_order_id": external_order_id,
                "external_order_number": external_order_number,
                "failed_step": failed_step,
            }
        )

    def user_message(self) -> str:
        reference = self.external_order_number or self.external_order_id or "?"
        step = self.failed_step or "desconhecida"
        return f"Pedido criado no Bling ({reference}) mas falhou na etapa '{step}'. {error_message(self.message_key)}"


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
