from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_optional_str(value: Any) -> str | None:
    raw = str(value or "").strip()
    return raw or None


@dataclass(frozen=True)
class BlingSettings:
    mode: str = "mock"
    base_url: str = "https://api.bling.com.br/Api/v3"
    client_id: str | None = None
    client_secret: str | None = None
    timeout_seconds: int = 20
    verify_ssl: bool = True
    retry_attempts: int = 2
    retry_backoff_ms: int = 800
    token_expiry_buffer_seconds: int = 300
    nature_of_operation_pf_id: str | None = None
    nature_of_operation_pj_id: str | None = None
    poll_attempts: int = 4
    poll_interval_ms: int = 1500
    simulator_seed: int = 42

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "BlingSettings":
        return cls(
            mode=str(config.get("BLING_MODE") or "mock").strip().lower(),
            base_url=str(config.get("BLING_BASE_URL") or cls.base_url).rstrip("/"),
            client_id=_as_optional_str(config.get("BLING_CLIENT_ID")),
            client_secret=_as_optional_str(config.get("BLING_CLIENT_SECRET")),
            timeout_seconds=max(1, _as_int(config.get("BLING_TIMEOUT_SECONDS"), 20)),
            verify_ssl=_as_bool(config.get("BLING_VERIFY_SSL"), True),
            retry_attempts=max(1, _as_int(config.get("BLING_RETRY_ATTEMPTS"), 2)),
            retry_backoff_ms=max(0, _as_int(config.get("BLING_RETRY_BACKOFF_MS"), 800)),
            token_expiry_buffer_seconds=max(0, _as_int(config.get("BLING_TOKEN_EXPIRY_BUFFER_SECONDS"), 300)),
            nature_of_operation_pf_id=_as_optional_str(config.get("BLING_NATUREZA_OPERACAO_PF_ID")),
            nature_of_operation_pj_id=_as_optional_str(config.get("BLING_NATUREZA_OPERACAO_PJ_ID")),
            poll_attempts=max(1, _as_int(config.get("BLING_POLL_ATTEMPTS"), 4)),
            poll_interval_ms=max(0, _as_int(config.get("BLING_POLL_INTERVAL_MS"), 1500)),
            simulator_seed=_as_int(config.get("BLING_SIMULATOR_SEED"), 42),
        )

    def nature_of_operation_for(self, tax_id: str | None) -> str | None:
        digits = "".join(ch for ch in str(tax_id or "") if ch.isdigit())
        if len(digits) <= 11:
            return self.nature_of_operation_pf_id
        return self.nature_of_operation_pj_id
