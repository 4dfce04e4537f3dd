from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from channelprov.apps.api.routes import provisioning as routes
from channelprov.services.provisioning.workflow import ProvisionResult


class _Request:
    def __init__(self, disconnected: bool) -> None:
        self.disconnected = disconnected
        self.url = SimpleNamespace(path="/v1/provisioning/tenant_a/provision")

    async def is_disconnected(self) -> bool:
        return self.disconnected


@pytest.mark.asyncio
async def test_client_disconnect_cancels_the_running_workflow(monkeypatch) -> None:
    monkeypatch.setattr(routes, "DISCONNECT_POLL_SECONDS", 0.01)
    seen = {}

    async def run(context) -> ProvisionResult:
        seen["context"] = context
        await asyncio.wait_for(context.cancel_event.wait(), timeout=1.0)
        return ProvisionResult(status="oauth_completed", detail="cancelled")

    result = await routes._run_until_disconnect(_Request(disconnected=True), run)

    assert result.detail == "cancelled"
    assert seen["context"].cancelled


@pytest.mark.asyncio
async def test_connected_client_leaves_context_untouched(monkeypatch) -> None:
    monkeypatch.setattr(routes, "DISCONNECT_POLL_SECONDS", 0.01)
    seen = {}

    async def run(context) -> ProvisionResult:
        await asyncio.sleep(0.05)
        seen["context"] = context
        return ProvisionResult(status="account_detected")

    result = await routes._run_until_disconnect(_Request(disconnected=False), run)

    assert result.status == "account_detected"
    assert not seen["context"].cancelled
