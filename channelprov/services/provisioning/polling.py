from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Awaitable, Callable

from channelprov.core.errors import ErrorKind, GraphApiError
from channelprov.providers.meta.graph import MetaGraphClient, classify_graph_error
from channelprov.services.audit import ProvisioningStore
from channelprov.services.provisioning.context import ProvisioningContext
from channelprov.services.provisioning.discovery import CLIENT, OWNED


logger = logging.getLogger(__name__)

STEP = "polling_verification"


@dataclass(frozen=True)
class PollResult:
    messaging_account_id: str | None
    attempts: int
    interrupted: str | None = None

    @property
    def found(self) -> bool:
        return self.messaging_account_id is not None

    @property
    def timed_out(self) -> bool:
        return not self.found and self.interrupted is None


async def poll_for_account(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    context: ProvisioningContext,
    tenant_id: str,
    *,
    token: str,
    business_entity_id: str,
    expected_account_id: str | None = None,
    max_attempts: int = 10,
    interval_s: float = 3.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """Re-run the owned then client queries until the account shows up.

    Fixed interval, no backoff. Exhaustion is a timeout, not an error.
    """
    started = clock()
    attempts = 0
    for attempt in range(1, max(1, max_attempts) + 1):
        if attempt > 1:
            await sleep(interval_s)
        stop_reason = context.stop_reason()
        if stop_reason is not None or not context.budget.consume():
            return PollResult(None, attempts, interrupted=stop_reason or "step_budget_exhausted")
        attempts = attempt

        account_ids: list[str] = []
        errors: list[dict] = []
        for relation, query in ((OWNED, graph.list_owned_accounts), (CLIENT, graph.list_client_accounts)):
            try:
                accounts = await query(token, business_entity_id)
            except GraphApiError as exc:
                kind = classify_graph_error(exc, default=ErrorKind.UPSTREAM_ERROR)
                errors.append({"relation": relation, "error_kind": kind.value, "provider_code": exc.code})
                continue
            account_ids.extend(str(item["id"]) for item in accounts if item.get("id"))

        chosen: str | None = None
        if expected_account_id and expected_account_id in account_ids:
            chosen = expected_account_id
        elif account_ids:
            chosen = account_ids[0]

        await store.append_log(
            tenant_id,
            STEP,
            success=chosen is not None,
            error_message=None if chosen else "account not visible yet",
            details={
                "attempt": attempt,
                "max_attempts": max_attempts,
                "business_entity_id": business_entity_id,
                "messaging_account_id": chosen,
                "elapsed_s": round(clock() - started, 3),
                "errors": errors,
            },
        )
        await store.upsert_record(tenant_id, polling_attempts=attempt)
        if chosen is not None:
            logger.info("polling_verification_found tenant_id=%s attempt=%s", tenant_id, attempt)
            return PollResult(chosen, attempts)

    logger.info("polling_verification_timeout tenant_id=%s attempts=%s", tenant_id, attempts)
    return PollResult(None, attempts)
