from __future__ import annotations

import json
import logging
import socket
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Mapping

from faturamento.contexts.fiscal.domain.gateway import FiscalGatewayError
from faturamento.contexts.fiscal.infrastructure.mappers.bling_errors import classify_http_error
from faturamento.contexts.fiscal.infrastructure.settings import BlingSettings


logger = logging.getLogger("faturamento")


class BlingHttpError(FiscalGatewayError):
    """Non-2xx response; keeps status code and parsed body for classification."""


def _is_timeout(reason: object) -> bool:
    if isinstance(reason, (socket.timeout, TimeoutError)):
        return True
    return "timed out" in str(reason or "").lower()


class BlingHttpClient:
    def __init__(self, settings: BlingSettings) -> None:
        self.settings = settings

    def _url(self, path: str, query: Mapping[str, Any] | None = None) -> str:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            url = f"{self.settings.base_url}/{path.lstrip('/')}"
        params = {key: value for key, value in (query or {}).items() if value not in (None, "")}
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        return url

    def _ssl_context(self):
        if self.settings.verify_ssl:
            return None
        return ssl._create_unverified_context()

    @staticmethod
    def _parse_body(raw: bytes) -> Any:
        text = raw.decode("utf-8") if raw else ""
        if not text.strip():
            return {}
        return json.loads(text)

    def send(
        self,
        request: urllib.request.Request,
        *,
        allow_retry: bool = False,
    ) -> Any:
        attempts = max(1, int(self.settings.retry_attempts)) if allow_retry else 1
        # 429 retries even when allow_retry is off.
        rate_limit_attempts = max(2, attempts)
        backoff_ms = int(self.settings.retry_backoff_ms)
        attempt = 0

        while True:
            attempt += 1
            try:
                with urllib.request.urlopen(
                    request,
                    timeout=self.settings.timeout_seconds,
                    context=self._ssl_context(),
                ) as response:
                    return self._parse_body(response.read())
            except urllib.error.HTTPError as exc:  # noqa: PERF203
                raw = exc.read() if exc.fp else b""
                try:
                    body = self._parse_body(raw)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    body = {"message": raw.decode("utf-8", errors="replace")[:500]}

                if exc.code == 429 and attempt < rate_limit_attempts:
                    logger.warning(
                        "bling_rate_limited",
                        extra={"url": request.full_url, "attempt": attempt},
                    )
                    time.sleep(backoff_ms * attempt / 1000)
                    continue
                if allow_retry and exc.code >= 500 and attempt < attempts:
                    time.sleep(backoff_ms * attempt / 1000)
                    continue

                classified = classify_http_error(exc.code, body)
                raise BlingHttpError(
                    classified.kind,
                    classified.message,
                    status_code=exc.code,
                    field_messages=classified.field_messages,
                    existing_id=classified.existing_id,
                    body=body,
                ) from exc
            except urllib.error.URLError as exc:
                if allow_retry and attempt < attempts:
                    time.sleep(backoff_ms * attempt / 1000)
                    continue
                if _is_timeout(exc.reason):
                    raise FiscalGatewayError("gateway_timeout", f"Tempo esgotado ao chamar o Bling: {exc.reason}") from exc
                raise FiscalGatewayError("gateway_unreachable", f"Erro de conexao com o Bling: {exc.reason}") from exc
            except (socket.timeout, TimeoutError) as exc:
                if allow_retry and attempt < attempts:
                    time.sleep(backoff_ms * attempt / 1000)
                    continue
                raise FiscalGatewayError("gateway_timeout", "Tempo esgotado ao chamar o Bling.") from exc
            except json.JSONDecodeError as exc:
                raise FiscalGatewayError("gateway_unreachable", "Bling retornou JSON invalido.") from exc
            except UnicodeDecodeError as exc:
                raise FiscalGatewayError("gateway_unreachable", "Bling retornou resposta fora de UTF-8.") from exc

    def request_json(
        self,
        method: str,
        path: str,
        token: str,
        payload: dict | None = None,
        query: Mapping[str, Any] | None = None,
        allow_retry: bool = False,
    ) -> Any:
        headers = {"Accept": "application/json", "Authorization": f"Bearer {token}"}
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

        request = urllib.request.Request(
            self._url(path, query),
            data=data,
            headers=headers,
            method=method.upper(),
        )
        return self.send(request, allow_retry=allow_retry)

    def request_form(
        self,
        path: str,
        form: Mapping[str, str],
        *,
        basic_auth: str,
    ) -> Any:
        request = urllib.request.Request(
            self._url(path),
            data=urllib.parse.urlencode(dict(form)).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
                "Authorization": f"Basic {basic_auth}",
            },
            method="POST",
        )
        return self.send(request)
