from __future__ import annotations

from dataclasses import dataclass, field
import logging

from channelprov.core.errors import ErrorKind, GraphApiError
from channelprov.providers.meta.graph import MetaGraphClient, classify_graph_error
from channelprov.services.audit import ProvisioningStore


logger = logging.getLogger(__name__)

STEP = "waba_discovery"

OWNED = "owned"
CLIENT = "client"
# Owned accounts always win over client accounts for the same entity.
RELATIONS = (OWNED, CLIENT)


@dataclass(frozen=True)
class DiscoveredEntity:
    business_entity_id: str
    relation: str
    messaging_account_id: str


@dataclass
class DiscoveryResult:
    found: DiscoveredEntity | None = None
    business_ids: list[str] = field(default_factory=list)


async def _accounts_for(
    graph: MetaGraphClient, token: str, business_id: str, relation: str
) -> list[dict]:
    if relation == OWNED:
        return await graph.list_owned_accounts(token, business_id)
    return await graph.list_client_accounts(token, business_id)


async def _log_query_failure(
    store: ProvisioningStore, tenant_id: str, exc: GraphApiError, **details: object
) -> None:
    kind = classify_graph_error(exc, default=ErrorKind.UPSTREAM_ERROR)
    await store.append_log(
        tenant_id,
        STEP,
        success=False,
        error_message=exc.message,
        details={"error_kind": kind.value, **details, **exc.as_details()},
    )
    logger.warning("waba_discovery_query_failed tenant_id=%s kind=%s details=%s", tenant_id, kind.value, details)


async def list_business_ids(
    graph: MetaGraphClient, store: ProvisioningStore, tenant_id: str, *, token: str
) -> list[str]:
    try:
        businesses = await graph.list_businesses(token)
    except GraphApiError as exc:
        await _log_query_failure(store, tenant_id, exc, query="businesses")
        return []
    return [str(item["id"]) for item in businesses if item.get("id")]


async def discover_account(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    tenant_id: str,
    *,
    token: str,
    preferred_business_id: str | None = None,
) -> DiscoveryResult:
    """Search every business entity for an existing messaging account.

    Entities are walked in list order, owned relation before client. A failing
    query is logged and skipped; exhausting every entity is "not found".
    """
    business_ids = await list_business_ids(graph, store, tenant_id, token=token)
    if preferred_business_id:
        business_ids = [preferred_business_id] + [bid for bid in business_ids if bid != preferred_business_id]
    result = DiscoveryResult(business_ids=business_ids)

    for business_id in business_ids:
        for relation in RELATIONS:
            try:
                accounts = await _accounts_for(graph, token, business_id, relation)
            except GraphApiError as exc:
                await _log_query_failure(
                    store, tenant_id, exc, business_entity_id=business_id, relation=relation
                )
                continue
            account_ids = [str(item["id"]) for item in accounts if item.get("id")]
            if account_ids:
                result.found = DiscoveredEntity(
                    business_entity_id=business_id,
                    relation=relation,
                    messaging_account_id=account_ids[0],
                )
                break
        if result.found is not None:
            break

    await store.append_log(
        tenant_id,
        STEP,
        success=result.found is not None,
        error_message=None if result.found else "no messaging account found",
        details={
            "businesses_checked": len(business_ids),
            "business_entity_id": result.found.business_entity_id if result.found else None,
            "relation": result.found.relation if result.found else None,
            "messaging_account_id": result.found.messaging_account_id if result.found else None,
        },
    )
    return result


async def find_account_for_phone(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    tenant_id: str,
    *,
    token: str,
    phone_number_id: str,
    preferred_business_id: str | None = None,
) -> DiscoveredEntity | None:
    """Locate the messaging account that owns an existing phone number id."""
    business_ids = await list_business_ids(graph, store, tenant_id, token=token)
    if preferred_business_id:
        business_ids = [preferred_business_id] + [bid for bid in business_ids if bid != preferred_business_id]

    for business_id in business_ids:
        for relation in RELATIONS:
            try:
                accounts = await _accounts_for(graph, token, business_id, relation)
            except GraphApiError as exc:
                await _log_query_failure(
                    store, tenant_id, exc, business_entity_id=business_id, relation=relation
                )
                continue
            for account in accounts:
                account_id = account.get("id")
                if not account_id:
                    continue
                try:
                    numbers = await graph.list_phone_numbers(token, str(account_id))
                except GraphApiError as exc:
                    await _log_query_failure(store, tenant_id, exc, messaging_account_id=str(account_id))
                    continue
                if any(str(number.get("id")) == phone_number_id for number in numbers):
                    found = DiscoveredEntity(
                        business_entity_id=business_id,
                        relation=relation,
                        messaging_account_id=str(account_id),
                    )
                    await store.append_log(
                        tenant_id,
                        STEP,
                        success=True,
                        details={
                            "mode": "manual",
                            "phone_number_id": phone_number_id,
                            "business_entity_id": business_id,
                            "relation": relation,
                            "messaging_account_id": found.messaging_account_id,
                        },
                    )
                    return found

    await store.append_log(
        tenant_id,
        STEP,
        success=False,
        error_message="no messaging account owns the phone number",
        details={"mode": "manual", "phone_number_id": phone_number_id, "businesses_checked": len(business_ids)},
    )
    return None

