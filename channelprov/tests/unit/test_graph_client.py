from __future__ import annotations

import json

import httpx
import pytest

from channelprov.core.errors import ErrorKind, GraphApiError
from channelprov.providers.meta.graph import MetaGraphClient, classify_graph_error
from channelprov.services.resilience import CircuitBreaker, CircuitBreakerConfig
from channelprov.tests.utils.fake_graph import graph_error


def _client(handler) -> MetaGraphClient:
    transport = httpx.MockTransport(handler)
    breaker = CircuitBreaker(
        "meta.graph.test",
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=60, half_open_trials=1),
    )
    return MetaGraphClient(client=httpx.AsyncClient(transport=transport), breaker=breaker)


def _error_body(code: int, message: str, subcode: int | None = None) -> dict:
    error = {"message": message, "type": "OAuthException", "code": code}
    if subcode is not None:
        error["error_subcode"] = subcode
    return {"error": error}


@pytest.mark.asyncio
async def test_list_businesses_uses_versioned_url_and_bearer() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "biz_1"}, {"id": "biz_2"}]})

    graph = _client(handler)
    businesses = await graph.list_businesses("tok1")
    assert [item["id"] for item in businesses] == ["biz_1", "biz_2"]
    assert seen[0].url.path == "/v22.0/me/businesses"
    assert seen[0].headers["Authorization"] == "Bearer tok1"


@pytest.mark.asyncio
async def test_provider_error_payload_is_parsed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json=_error_body(100, "already subscribed", subcode=2018001))

    graph = _client(handler)
    with pytest.raises(GraphApiError) as excinfo:
        await graph.subscribe_app("tok1", "acct_9")
    assert excinfo.value.status_code == 400
    assert excinfo.value.code == 100
    assert excinfo.value.subcode == 2018001
    assert excinfo.value.matches(["100:2018001"])
    assert not excinfo.value.matches(["100:33"])


@pytest.mark.asyncio
async def test_reads_retry_on_5xx_but_writes_do_not() -> None:
    calls = {"GET": 0, "POST": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls[request.method] += 1
        if request.method == "GET" and calls["GET"] == 1:
            return httpx.Response(503, json=_error_body(2, "temporarily unavailable"))
        if request.method == "POST":
            return httpx.Response(500, json=_error_body(1, "unknown error"))
        return httpx.Response(200, json={"data": []})

    graph = _client(handler)
    assert await graph.list_owned_accounts("tok1", "biz_1") == []
    assert calls["GET"] == 2

    with pytest.raises(GraphApiError) as excinfo:
        await graph.create_owned_account("tok1", "biz_1", name="Cantina")
    assert calls["POST"] == 1
    assert classify_graph_error(excinfo.value) == ErrorKind.UPSTREAM_UNAVAILABLE


@pytest.mark.asyncio
async def test_network_errors_open_the_breaker() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    graph = _client(handler)
    for _ in range(2):
        with pytest.raises(GraphApiError) as excinfo:
            await graph.subscribe_app("tok1", "acct_9")
        assert excinfo.value.error_type == "network"

    with pytest.raises(GraphApiError) as excinfo:
        await graph.subscribe_app("tok1", "acct_9")
    assert excinfo.value.error_type == "circuit_open"
    assert classify_graph_error(excinfo.value) == ErrorKind.UPSTREAM_UNAVAILABLE


@pytest.mark.asyncio
async def test_exchange_code_sends_app_credentials() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": "tok1", "token_type": "bearer"})

    graph = _client(handler)
    body = await graph.exchange_code("auth-code-1")
    assert body["access_token"] == "tok1"
    params = seen[0].url.params
    assert params["client_id"] == "app_1"
    assert params["code"] == "auth-code-1"
    assert "Authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_add_phone_number_payload() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "phone_77"})

    graph = _client(handler)
    body = await graph.add_phone_number("tok1", "acct_9", display_phone_number="+551199990000", pin="152563")
    assert body == {"id": "phone_77"}
    assert seen[0] == {
        "messaging_product": "whatsapp",
        "display_phone_number": "+551199990000",
        "pin": "152563",
    }


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (graph_error(status_code=500, code=1), ErrorKind.UPSTREAM_UNAVAILABLE),
        (graph_error(status_code=400, code=4), ErrorKind.UPSTREAM_UNAVAILABLE),
        (graph_error(status_code=403, code=200), ErrorKind.PERMISSION),
        (graph_error(status_code=400, code=10), ErrorKind.PERMISSION),
        (graph_error(status_code=400, code=190), ErrorKind.VALIDATION),
        (graph_error(status_code=401, code=190), ErrorKind.VALIDATION),
        (graph_error(status_code=404, code=None), ErrorKind.NOT_FOUND),
        (graph_error(status_code=400, code=803), ErrorKind.NOT_FOUND),
        (graph_error(status_code=400, code=100), ErrorKind.VALIDATION),
    ],
)
def test_classify_graph_error(error: GraphApiError, expected: ErrorKind) -> None:
    assert classify_graph_error(error) == expected


def test_classify_allow_list_wins() -> None:
    error = graph_error(status_code=400, code=100, subcode=2018001)
    assert classify_graph_error(error, allow_list=["100:2018001"]) == ErrorKind.IDEMPOTENT_CONFLICT
    assert classify_graph_error(error, default=ErrorKind.UPSTREAM_ERROR) == ErrorKind.UPSTREAM_ERROR
