from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, TypeVar

from faturamento.contexts.fiscal.domain.gateway import FiscalGatewayError
from faturamento.contexts.fiscal.infrastructure.client import BlingHttpClient
from faturamento.contexts.fiscal.infrastructure.repositories.bling_credential_repository import (
    BlingCredentialRepository,
)
from faturamento.contexts.fiscal.infrastructure.settings import BlingSettings


logger = logging.getLogger("faturamento")

DEFAULT_EXPIRES_IN_SECONDS = 21600

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_expiry(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class BlingCredentials:
    client_id: str | None
    client_secret: str | None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def expires_within(self, seconds: int, *, now: datetime | None = None) -> bool:
        if not self.access_token or self.expires_at is None:
            return True
        reference = now or _utc_now()
        return self.expires_at <= reference + timedelta(seconds=max(0, int(seconds)))

    def basic_auth(self) -> str:
        raw = f"{self.client_id or ''}:{self.client_secret or ''}".encode("utf-8")
        return base64.b64encode(raw).decode("ascii")


class RepositoryCredentialStore:
    """Loads and saves tokens through BlingCredentialRepository on a lazily resolved connection."""

    def __init__(self, settings: BlingSettings, db_getter: Callable, repository: BlingCredentialRepository | None = None):
        self.settings = settings
        self._db_getter = db_getter
        self.repository = repository or BlingCredentialRepository()

    def load(self) -> BlingCredentials:
        row = self.repository.load(self._db_getter()) or {}
        return BlingCredentials(
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            expires_at=_parse_expiry(row.get("expires_at")),
        )

    def save(self, credentials: BlingCredentials) -> None:
        expires_at = credentials.expires_at or _utc_now()
        self.repository.save(
            self._db_getter(),
            access_token=credentials.access_token or "",
            refresh_token=credentials.refresh_token,
            expires_at=expires_at.astimezone(timezone.utc).isoformat(),
        )


class TokenProvider:
    def __init__(self, settings: BlingSettings, store, http: BlingHttpClient) -> None:
        self.settings = settings
        self.store = store
        self.http = http
        self._lock = Lock()

    def _refresh(self, credentials: BlingCredentials) -> BlingCredentials:
        if not credentials.refresh_token:
            raise FiscalGatewayError("gateway_unreachable", "Credenciais do Bling sem refresh_token.")
        if not credentials.client_id or not credentials.client_secret:
            raise FiscalGatewayError("gateway_unreachable", "BLING_CLIENT_ID/BLING_CLIENT_SECRET nao configurados.")

        body = self.http.request_form(
            "oauth/token",
            {"grant_type": "refresh_token", "refresh_token": credentials.refresh_token},
            basic_auth=credentials.basic_auth(),
        )
        body = body if isinstance(body, dict) else {}
        access_token = str(body.get("access_token") or "").strip()
        if not access_token:
            raise FiscalGatewayError("gateway_unreachable", "Bling nao retornou access_token no refresh.")
        try:
            expires_in = int(body.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS

        refreshed = replace(
            credentials,
            access_token=access_token,
            refresh_token=str(body.get("refresh_token") or credentials.refresh_token),
            expires_at=_utc_now() + timedelta(seconds=expires_in),
        )
        self.store.save(refreshed)
        logger.info("bling_token_refreshed", extra={"expires_in": expires_in})
        return refreshed

    def current_token(self, *, force_refresh: bool = False) -> str:
        with self._lock:
            credentials = self.store.load()
            if force_refresh or credentials.expires_within(self.settings.token_expiry_buffer_seconds):
                credentials = self._refresh(credentials)
            return str(credentials.access_token)

    def with_valid_token(self, fn: Callable[[str], T]) -> T:
        token = self.current_token()
        try:
            return fn(token)
        except FiscalGatewayError as exc:
            if exc.status_code != 401:
                raise
            logger.warning("bling_token_rejected", extra={"status_code": exc.status_code})
        return fn(self.current_token(force_refresh=True))
