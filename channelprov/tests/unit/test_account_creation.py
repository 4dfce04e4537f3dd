from __future__ import annotations

import pytest

from channelprov.services.provisioning.account_creation import CreationTarget, create_account
from channelprov.services.provisioning.context import ProvisioningContext, StepBudget
from channelprov.tests.utils.fake_graph import FakeGraphClient, graph_error, unavailable_error


def _target(bsp: str | None = "bsp_1") -> CreationTarget:
    return CreationTarget(business_entity_id="biz_1", account_name="Channel Integration tenant_a", bsp_business_id=bsp)


@pytest.mark.asyncio
async def test_first_strategy_wins(store) -> None:
    graph = FakeGraphClient()

    outcome = await create_account(graph, store, ProvisioningContext(), "tenant_a", token="tok1", target=_target())

    assert outcome.messaging_account_id == "acct_9"
    assert outcome.strategy == "bsp_client_account"
    assert graph.counts["create_owned_account"] == 0


@pytest.mark.asyncio
async def test_non_retryable_failure_falls_through_immediately(store) -> None:
    graph = FakeGraphClient()
    graph.create_results["create_client_account"] = graph_error(status_code=400, code=100)

    outcome = await create_account(graph, store, ProvisioningContext(), "tenant_a", token="tok1", target=_target())

    assert outcome.strategy == "entity_owned_account"
    assert outcome.messaging_account_id == "acct_owned"
    assert graph.counts["create_client_account"] == 1
    logs = await store.list_logs("tenant_a", step="waba_creation")
    assert len(logs) == 2
    by_strategy = {entry.strategy: entry for entry in logs}
    assert by_strategy["bsp_client_account"].success is False
    assert by_strategy["bsp_client_account"].details["provider_code"] == 100
    assert by_strategy["entity_owned_account"].success is True


@pytest.mark.asyncio
async def test_transient_failure_retried_once_then_next_strategy(store) -> None:
    graph = FakeGraphClient()
    graph.create_results["create_client_account"] = unavailable_error()

    outcome = await create_account(graph, store, ProvisioningContext(), "tenant_a", token="tok1", target=_target())

    assert graph.counts["create_client_account"] == 2
    assert outcome.strategy == "entity_owned_account"
    logs = await store.list_logs("tenant_a", step="waba_creation")
    assert len(logs) == 3


@pytest.mark.asyncio
async def test_missing_bsp_id_skips_first_strategy(store) -> None:
    graph = FakeGraphClient()

    outcome = await create_account(
        graph, store, ProvisioningContext(), "tenant_a", token="tok1", target=_target(bsp=None)
    )

    assert graph.counts["create_client_account"] == 0
    assert outcome.strategy == "entity_owned_account"


@pytest.mark.asyncio
async def test_all_strategies_exhausted(store) -> None:
    graph = FakeGraphClient()
    for name in graph.create_results:
        graph.create_results[name] = graph_error(status_code=403, code=200, message="Permissions error")

    outcome = await create_account(graph, store, ProvisioningContext(), "tenant_a", token="tok1", target=_target())

    assert not outcome.created
    assert outcome.interrupted is None
    assert len(await store.list_logs("tenant_a", step="waba_creation")) == 3


@pytest.mark.asyncio
async def test_budget_and_cancellation_stop_new_attempts(store) -> None:
    graph = FakeGraphClient()
    graph.create_results["create_client_account"] = graph_error(status_code=400, code=100)

    outcome = await create_account(
        graph, store, ProvisioningContext(budget=StepBudget(1)), "tenant_a", token="tok1", target=_target()
    )
    assert outcome.interrupted == "step_budget_exhausted"
    assert graph.counts["create_owned_account"] == 0

    context = ProvisioningContext()
    context.cancel()
    outcome = await create_account(graph, store, context, "tenant_b", token="tok1", target=_target())
    assert outcome.interrupted == "cancelled"
    assert await store.list_logs("tenant_b", step="waba_creation") == []
