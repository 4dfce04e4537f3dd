from __future__ import annotations

import pytest

from channelprov.services.provisioning.context import ProvisioningContext
from channelprov.services.provisioning.polling import poll_for_account
from channelprov.tests.utils.clock import FakeClock
from channelprov.tests.utils.fake_graph import FakeGraphClient, appears_after


@pytest.mark.asyncio
async def test_poll_is_bounded_with_fixed_interval(store) -> None:
    graph = FakeGraphClient()
    clock = FakeClock()

    result = await poll_for_account(
        graph,
        store,
        ProvisioningContext(),
        "tenant_a",
        token="tok1",
        business_entity_id="biz_1",
        sleep=clock.sleep,
        clock=clock,
    )

    assert result.timed_out
    assert result.attempts == 10
    assert graph.counts["list_owned_accounts"] == 10
    assert graph.counts["list_client_accounts"] == 10
    assert len(clock.sleeps) == 9
    assert all(seconds >= 3.0 for seconds in clock.sleeps)
    logs = await store.list_logs("tenant_a", step="polling_verification", limit=100)
    assert len(logs) == 10
    assert sorted(entry.details["attempt"] for entry in logs) == list(range(1, 11))
    record = await store.get_record("tenant_a")
    assert record.polling_attempts == 10


@pytest.mark.asyncio
async def test_poll_returns_on_first_hit_and_prefers_created_id(store) -> None:
    graph = FakeGraphClient()
    clock = FakeClock()
    graph.owned_accounts["biz_1"] = appears_after(
        2, [{"id": "acct_other"}, {"id": "acct_9"}], lambda: graph.counts["list_owned_accounts"]
    )

    result = await poll_for_account(
        graph,
        store,
        ProvisioningContext(),
        "tenant_a",
        token="tok1",
        business_entity_id="biz_1",
        expected_account_id="acct_9",
        sleep=clock.sleep,
        clock=clock,
    )

    assert result.messaging_account_id == "acct_9"
    assert result.attempts == 2
    assert clock.sleeps == [3.0]


@pytest.mark.asyncio
async def test_cancelled_poll_starts_no_further_attempt(store) -> None:
    graph = FakeGraphClient()
    clock = FakeClock()
    context = ProvisioningContext()

    async def cancelling_sleep(seconds: float) -> None:
        await clock.sleep(seconds)
        context.cancel()

    result = await poll_for_account(
        graph,
        store,
        context,
        "tenant_a",
        token="tok1",
        business_entity_id="biz_1",
        sleep=cancelling_sleep,
        clock=clock,
    )

    assert result.interrupted == "cancelled"
    assert result.attempts == 1
    assert graph.counts["list_owned_accounts"] == 1
