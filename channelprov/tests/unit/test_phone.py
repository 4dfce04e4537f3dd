from __future__ import annotations

import pytest

from channelprov.core.errors import NotFoundError, UpstreamUnavailableError, ValidationError
from channelprov.services.provisioning.phone import register_phone, validate_verification_code, verify_phone
from channelprov.tests.utils.fake_graph import FakeGraphClient, graph_error, unavailable_error


@pytest.mark.parametrize("code", ["1234", "135246", "12345678"])
def test_verification_code_accepts_four_to_eight_digits(code: str) -> None:
    assert validate_verification_code(f" {code} ") == code


@pytest.mark.parametrize("code", [None, "", "123", "123456789", "12a456"])
def test_verification_code_rejects_malformed(code) -> None:
    with pytest.raises(ValidationError):
        validate_verification_code(code)


@pytest.mark.asyncio
async def test_register_new_number_requests_code(store) -> None:
    graph = FakeGraphClient()

    registration = await register_phone(
        graph, store, "tenant_a", token="tok1", messaging_account_id="acct_9", phone_number="+551199990000"
    )

    assert registration.phone_number_id == "phone_77"
    assert registration.already_registered is False
    assert graph.counts["add_phone_number"] == 1
    assert graph.counts["request_code"] == 1
    assert graph.calls[-1][1][1] == "phone_77"
    logs = await store.list_logs("tenant_a", step="phone_registration")
    assert {entry.details["action"] for entry in logs} == {"add_number", "request_code"}
    # Raw numbers never reach the log table.
    assert all("9999" not in str(entry.details) for entry in logs)


@pytest.mark.asyncio
async def test_listed_number_is_reused(store) -> None:
    graph = FakeGraphClient()
    graph.phone_numbers["acct_9"] = [{"id": "phone_5", "display_phone_number": "+55 11 9999-0000"}]

    registration = await register_phone(
        graph, store, "tenant_a", token="tok1", messaging_account_id="acct_9", phone_number="+551199990000"
    )

    assert registration.phone_number_id == "phone_5"
    assert registration.already_registered is True
    assert graph.counts["add_phone_number"] == 0
    assert graph.counts["request_code"] == 1


@pytest.mark.asyncio
async def test_already_registered_code_resolves_by_relisting(store, monkeypatch) -> None:
    from channelprov.core.config import get_settings

    monkeypatch.setenv("ALREADY_REGISTERED_ERROR_CODES", "136024")
    get_settings.cache_clear()
    graph = FakeGraphClient()
    graph.phone_numbers["acct_9"] = lambda: (
        [{"id": "phone_5", "display_phone_number": "+55 11 9999-0000"}]
        if graph.counts["add_phone_number"]
        else []
    )
    graph.add_phone_result = graph_error(status_code=400, code=136024, message="already registered")

    registration = await register_phone(
        graph, store, "tenant_a", token="tok1", messaging_account_id="acct_9", phone_number="+551199990000"
    )

    assert registration.phone_number_id == "phone_5"
    assert registration.already_registered is True


@pytest.mark.asyncio
async def test_foreign_phone_number_id_is_not_found(store) -> None:
    graph = FakeGraphClient()
    graph.phone_numbers["acct_9"] = [{"id": "phone_5"}]

    with pytest.raises(NotFoundError):
        await register_phone(graph, store, "tenant_a", token="tok1", messaging_account_id="acct_9", phone_number_id="phone_x")

    assert graph.counts["request_code"] == 0
    logs = await store.list_logs("tenant_a", step="phone_registration")
    assert logs[0].details["error_kind"] == "not_found"


@pytest.mark.asyncio
async def test_rejected_number_is_validation_error(store) -> None:
    graph = FakeGraphClient()
    graph.add_phone_result = graph_error(status_code=400, code=100, message="Invalid phone number")

    with pytest.raises(ValidationError):
        await register_phone(
            graph, store, "tenant_a", token="tok1", messaging_account_id="acct_9", phone_number="+0000"
        )
    assert graph.counts["request_code"] == 0


@pytest.mark.asyncio
async def test_verify_returns_canonical_details(store) -> None:
    graph = FakeGraphClient()

    verified = await verify_phone(graph, store, "tenant_a", token="tok1", phone_number_id="phone_77", code="135246")

    assert verified.verified_name == "Cantina Central"
    assert verified.display_phone_number == "+55 11 9999-0000"
    logs = await store.list_logs("tenant_a", step="phone_verification")
    assert logs[0].success is True


@pytest.mark.asyncio
async def test_verify_wrong_code_and_outage(store) -> None:
    graph = FakeGraphClient()
    graph.verify_result = graph_error(status_code=400, code=136025, message="Verify code error")

    with pytest.raises(ValidationError):
        await verify_phone(graph, store, "tenant_a", token="tok1", phone_number_id="phone_77", code="000000")

    graph.verify_result = graph_error(status_code=503, code=2)
    with pytest.raises(UpstreamUnavailableError):
        await verify_phone(graph, store, "tenant_a", token="tok1", phone_number_id="phone_77", code="000000")

    with pytest.raises(ValidationError):
        await verify_phone(graph, store, "tenant_a", token="tok1", phone_number_id="phone_77", code="12")
    assert graph.counts["verify_code"] == 2


@pytest.mark.asyncio
async def test_failed_relist_after_already_registered_still_logs_the_add(store, monkeypatch) -> None:
    from channelprov.core.config import get_settings

    monkeypatch.setenv("ALREADY_REGISTERED_ERROR_CODES", "136024")
    get_settings.cache_clear()
    graph = FakeGraphClient()
    graph.phone_numbers["acct_9"] = lambda: unavailable_error() if graph.counts["add_phone_number"] else []
    graph.add_phone_result = graph_error(status_code=400, code=136024, message="already registered")

    with pytest.raises(UpstreamUnavailableError):
        await register_phone(
            graph, store, "tenant_a", token="tok1", messaging_account_id="acct_9", phone_number="+551199990000"
        )

    logs = await store.list_logs("tenant_a", step="phone_registration")
    adds = [entry for entry in logs if entry.details.get("action") == "add_number"]
    assert len(adds) == 1
    assert adds[0].success is False
    assert adds[0].details["already_registered"] is True
    assert adds[0].details["error_kind"] == "upstream_unavailable"
    assert graph.counts["request_code"] == 0


@pytest.mark.asyncio
async def test_verify_rejects_number_not_listed_under_account(store) -> None:
    graph = FakeGraphClient()
    graph.phone_numbers["acct_2"] = [{"id": "phone_5"}]

    with pytest.raises(NotFoundError):
        await verify_phone(
            graph, store, "tenant_a", token="tok1", phone_number_id="phone_77", code="135246",
            messaging_account_id="acct_2",
        )
    assert graph.counts["verify_code"] == 0

    verified = await verify_phone(
        graph, store, "tenant_a", token="tok1", phone_number_id="phone_5", code="135246",
        messaging_account_id="acct_2",
    )
    assert verified.phone_number_id == "phone_5"
