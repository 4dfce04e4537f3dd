from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from channelprov.core.config import get_settings
from channelprov.core.errors import (
    ConfigurationError,
    ErrorKind,
    GraphApiError,
    IntegrationUnavailableError,
)
from channelprov.services.resilience import (
    CircuitBreaker,
    default_retry_policy,
    get_shared_redis,
    retry_async,
    single_attempt_policy,
)
from channelprov.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION_NAME = "meta.graph"

# Provider codes for throttling and transient outages.
_TRANSIENT_CODES = frozenset({1, 2, 4, 17, 32, 341, 613})
_INVALID_TOKEN_CODE = 190
_PERMISSION_CODE = 10
_NOT_FOUND_CODE = 803
_TRANSPORT_ERROR_TYPES = frozenset({"network", "timeout", "circuit_open"})


def classify_graph_error(
    exc: GraphApiError,
    *,
    allow_list: list[str] | None = None,
    default: ErrorKind = ErrorKind.VALIDATION,
) -> ErrorKind:
    """Map a provider failure onto the workflow error taxonomy.

    ``allow_list`` holds "already done" codes for the calling step; ``default`` is
    the kind for any other 4xx.
    """
    if allow_list and exc.matches(allow_list):
        return ErrorKind.IDEMPOTENT_CONFLICT
    if exc.error_type in _TRANSPORT_ERROR_TYPES or exc.status_code is None:
        return ErrorKind.UPSTREAM_UNAVAILABLE
    if exc.status_code >= 500 or exc.code in _TRANSIENT_CODES:
        return ErrorKind.UPSTREAM_UNAVAILABLE
    if exc.code == _INVALID_TOKEN_CODE:
        return ErrorKind.VALIDATION
    if exc.status_code in {401, 403}:
        return ErrorKind.PERMISSION
    if exc.code is not None and (exc.code == _PERMISSION_CODE or 200 <= exc.code <= 299):
        return ErrorKind.PERMISSION
    if exc.status_code == 404 or exc.code == _NOT_FOUND_CODE:
        return ErrorKind.NOT_FOUND
    return default


def _parse_error(response: httpx.Response) -> GraphApiError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    code = error.get("code")
    subcode = error.get("error_subcode")
    return GraphApiError(
        str(error.get("message") or f"graph request failed with status {response.status_code}"),
        status_code=response.status_code,
        code=int(code) if isinstance(code, (int, str)) and str(code).isdigit() else None,
        subcode=int(subcode) if isinstance(subcode, (int, str)) and str(subcode).isdigit() else None,
        error_type=error.get("type"),
        payload=error,
    )


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


class MetaGraphClient:
    """Versioned Graph API client used by every provisioning step.

    Reads go through the retry policy; writes get a single bounded attempt.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker = breaker

    @property
    def base_url(self) -> str:
        return f"{self._settings.meta_graph_base_url.rstrip('/')}/{self._settings.meta_api_version}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        redis = await get_shared_redis()
        self._breaker = CircuitBreaker(INTEGRATION_NAME, redis=redis)
        return self._breaker

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _app_credentials(self) -> tuple[str, str]:
        app_id = self._settings.meta_app_id
        app_secret = self._settings.meta_app_secret
        if not app_id or not app_secret:
            raise ConfigurationError("META_APP_ID and META_APP_SECRET are required")
        return app_id, app_secret

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        operation: str,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        idempotent = method.upper() == "GET"
        policy = default_retry_policy() if idempotent else single_attempt_policy()
        client = self._get_client()
        breaker = await self._get_breaker()
        start = time.monotonic()

        def _elapsed_ms() -> float:
            return (time.monotonic() - start) * 1000.0

        try:
            await breaker.before_call()
        except IntegrationUnavailableError as exc:
            record_external_call(
                integration=INTEGRATION_NAME, operation=operation, latency_ms=0.0, success=False
            )
            raise GraphApiError(str(exc), error_type="circuit_open") from exc

        async def _call() -> httpx.Response:
            response = await client.request(method, url, params=params, json=json, headers=headers)
            if response.status_code >= 500:
                raise _parse_error(response)
            return response

        try:
            response = await retry_async(_call, policy=policy, retryable=_retryable)
        except GraphApiError:
            await breaker.record_failure()
            record_external_call(
                integration=INTEGRATION_NAME, operation=operation, latency_ms=_elapsed_ms(), success=False
            )
            raise
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=INTEGRATION_NAME, operation=operation, latency_ms=_elapsed_ms(), success=False
            )
            error_type = "timeout" if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)) else "network"
            logger.warning("graph_request_failed operation=%s error_type=%s", operation, error_type)
            raise GraphApiError(f"graph request failed: {error_type}", error_type=error_type) from exc

        # A 4xx is an answer from a healthy provider, not an outage.
        await breaker.record_success()
        if response.status_code >= 400:
            record_external_call(
                integration=INTEGRATION_NAME, operation=operation, latency_ms=_elapsed_ms(), success=False
            )
            error = _parse_error(response)
            logger.info(
                "graph_request_rejected operation=%s status=%s code=%s subcode=%s",
                operation,
                error.status_code,
                error.code,
                error.subcode,
            )
            raise error

        record_external_call(
            integration=INTEGRATION_NAME, operation=operation, latency_ms=_elapsed_ms(), success=True
        )
        try:
            body = response.json()
        except ValueError:
            return {}
        if isinstance(body, dict):
            return body
        return {"data": body}

    async def exchange_code(self, code: str) -> dict[str, Any]:
        app_id, app_secret = self._app_credentials()
        # The code is single use, so the exchange must not be replayed.
        return await self._request(
            "POST",
            "oauth/access_token",
            params={
                "client_id": app_id,
                "client_secret": app_secret,
                "redirect_uri": self._settings.meta_redirect_uri,
                "code": code,
            },
            operation="exchange_code",
        )

    async def debug_token(self, input_token: str) -> dict[str, Any]:
        app_id, app_secret = self._app_credentials()
        body = await self._request(
            "GET",
            "debug_token",
            params={"input_token": input_token, "access_token": f"{app_id}|{app_secret}"},
            operation="debug_token",
        )
        return body.get("data") or {}

    async def get_me(self, token: str) -> dict[str, Any]:
        return await self._request("GET", "me", token=token, params={"fields": "id,name"}, operation="me")

    async def _list(self, token: str, path: str, *, fields: str, operation: str) -> list[dict[str, Any]]:
        body = await self._request(
            "GET", path, token=token, params={"fields": fields, "limit": 100}, operation=operation
        )
        data = body.get("data") or []
        return [item for item in data if isinstance(item, dict)]

    async def list_businesses(self, token: str) -> list[dict[str, Any]]:
        return await self._list(token, "me/businesses", fields="id,name", operation="list_businesses")

    async def list_owned_accounts(self, token: str, business_id: str) -> list[dict[str, Any]]:
        return await self._list(
            token,
            f"{business_id}/owned_whatsapp_business_accounts",
            fields="id,name",
            operation="list_owned_accounts",
        )

    async def list_client_accounts(self, token: str, business_id: str) -> list[dict[str, Any]]:
        return await self._list(
            token,
            f"{business_id}/client_whatsapp_business_accounts",
            fields="id,name",
            operation="list_client_accounts",
        )

    async def create_client_account(
        self, token: str, bsp_business_id: str, *, name: str, client_business_id: str
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{bsp_business_id}/client_whatsapp_business_accounts",
            token=token,
            json={"name": name, "client_business_id": client_business_id},
            operation="create_client_account",
        )

    async def create_owned_account(self, token: str, business_id: str, *, name: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{business_id}/whatsapp_business_accounts",
            token=token,
            json={"name": name},
            operation="create_owned_account",
        )

    async def create_client_application(self, token: str, business_id: str, *, name: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{business_id}/client_whatsapp_applications",
            token=token,
            json={"name": name},
            operation="create_client_application",
        )

    async def subscribe_app(self, token: str, account_id: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"{account_id}/subscribed_apps", token=token, operation="subscribe_app"
        )

    async def list_phone_numbers(self, token: str, account_id: str) -> list[dict[str, Any]]:
        return await self._list(
            token,
            f"{account_id}/phone_numbers",
            fields="id,display_phone_number,verified_name,status",
            operation="list_phone_numbers",
        )

    async def add_phone_number(
        self, token: str, account_id: str, *, display_phone_number: str, pin: str
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{account_id}/phone_numbers",
            token=token,
            json={
                "messaging_product": "whatsapp",
                "display_phone_number": display_phone_number,
                "pin": pin,
            },
            operation="add_phone_number",
        )

    async def request_code(
        self, token: str, phone_number_id: str, *, code_method: str, language: str
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{phone_number_id}/request_code",
            token=token,
            json={"code_method": code_method, "language": language},
            operation="request_code",
        )

    async def verify_code(self, token: str, phone_number_id: str, code: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{phone_number_id}/verify_code",
            token=token,
            json={"code": code},
            operation="verify_code",
        )

    async def get_phone_number(self, token: str, phone_number_id: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            phone_number_id,
            token=token,
            params={"fields": "verified_name,display_phone_number,status,code_verification_status"},
            operation="get_phone_number",
        )
