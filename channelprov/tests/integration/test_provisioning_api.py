from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from channelprov.apps.api.deps import get_store, get_workflow
from channelprov.apps.api.main import create_app
from channelprov.services.provisioning.workflow import ProvisioningWorkflow
from channelprov.services.telemetry import record_external_call
from channelprov.tests.utils.clock import FakeClock
from channelprov.tests.utils.fake_graph import FakeGraphClient, graph_error


@pytest.fixture
def graph() -> FakeGraphClient:
    fake = FakeGraphClient()
    fake.owned_accounts["biz_1"] = [{"id": "acct_1"}]
    return fake


@pytest.fixture
async def client(store, graph):
    # Route handlers run against the in-memory store and the scripted provider.
    clock = FakeClock()
    workflow = ProvisioningWorkflow(store, graph, sleep=clock.sleep, clock=clock)
    app = create_app()
    app.dependency_overrides[get_workflow] = lambda: workflow
    app.dependency_overrides[get_store] = lambda: store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _authorize(client: AsyncClient, tenant_id: str = "tenant_a") -> str:
    response = await client.post(f"/v1/provisioning/{tenant_id}/authorize")
    assert response.status_code == 200
    return response.json()["data"]["state"]


@pytest.mark.asyncio
async def test_health_envelope(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["data"]["status"] == "ok"
    assert payload["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_health_reports_provider_latency(client) -> None:
    record_external_call(integration="meta.graph", operation="list_businesses", latency_ms=40.0, success=True)
    record_external_call(integration="meta.graph", operation="subscribe_app", latency_ms=120.0, success=False)

    response = await client.get("/v1/health")

    latency = response.json()["data"]["external_call_latency_ms"]["meta.graph"]
    assert latency["max"] == 120.0
    assert latency["error_rate"] == 0.5


@pytest.mark.asyncio
async def test_authorize_returns_dialog_url(client) -> None:
    response = await client.post("/v1/provisioning/tenant_a/authorize")

    assert response.status_code == 200
    data = response.json()["data"]
    assert "client_id=app_1" in data["authorize_url"]
    assert f"state={data['state']}" in data["authorize_url"]


@pytest.mark.asyncio
async def test_provision_verify_and_status(client, graph) -> None:
    state = await _authorize(client)

    response = await client.post(
        "/v1/provisioning/tenant_a/provision",
        json={"auth_code": "code_1", "auth_state": state, "phone_number": "+551199990000"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "awaiting_number_verification"
    assert data["detail"] == "verification_code_required"

    response = await client.post("/v1/provisioning/tenant_a/verify-number", json={"code": "135246"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "completed"

    response = await client.get("/v1/provisioning/tenant_a/status")
    status = response.json()["data"]
    assert status["status"] == "completed"
    assert status["messaging_account_id"] == "acct_1"
    assert "bearer_credential" not in status


@pytest.mark.asyncio
async def test_oauth_callback_uses_state_for_tenant(client) -> None:
    state = await _authorize(client, "tenant_cb")

    response = await client.get("/v1/provisioning/oauth/callback", params={"code": "code_1", "state": state})

    assert response.status_code == 200
    assert response.json()["data"]["messaging_account_id"] == "acct_1"


@pytest.mark.asyncio
async def test_oauth_callback_denied(client) -> None:
    response = await client.get(
        "/v1/provisioning/oauth/callback",
        params={"error": "access_denied", "error_description": "Permissions error"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "AUTHORIZATION_DENIED"


@pytest.mark.asyncio
async def test_error_kinds_map_to_http_statuses(client, graph) -> None:
    response = await client.post(
        "/v1/provisioning/tenant_a/provision", json={"auth_code": "code_1", "auth_state": "bogus"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PROVISIONING_VALIDATION"

    graph.introspection = {"is_valid": True, "scopes": ["business_management"]}
    state = await _authorize(client)
    response = await client.post(
        "/v1/provisioning/tenant_a/provision", json={"auth_code": "code_1", "auth_state": state}
    )
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "PROVISIONING_PERMISSION_DENIED"
    assert error["details"]["step"] == "token_exchange"

    response = await client.post("/v1/provisioning/tenant_x/verify-number", json={"code": "135246"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_transient_failure_is_reported_not_failed(client, graph) -> None:
    graph.token_response = graph_error(status_code=503, code=2)
    state = await _authorize(client)

    response = await client.post(
        "/v1/provisioning/tenant_a/provision", json={"auth_code": "code_1", "auth_state": state}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["reason"] == "upstream_unavailable"


@pytest.mark.asyncio
async def test_invalid_pin_and_mode_are_rejected(client) -> None:
    response = await client.post("/v1/provisioning/tenant_a/provision", json={"pin": "12"})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    response = await client.post("/v1/provisioning/tenant_a/provision", json={"mode": "turbo"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_logs_endpoint_is_sanitized(client) -> None:
    state = await _authorize(client)
    await client.post(
        "/v1/provisioning/tenant_a/provision",
        json={"auth_code": "code_1", "auth_state": state, "phone_number": "+551199990000"},
    )

    response = await client.get("/v1/provisioning/tenant_a/logs", params={"step": "phone_registration"})

    assert response.status_code == 200
    items = response.json()["data"]["items"]
    assert items
    assert all(item["step"] == "phone_registration" for item in items)
    assert "99990000" not in response.text
    assert "tok1" not in response.text
