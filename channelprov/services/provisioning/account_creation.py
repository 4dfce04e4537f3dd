from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable

from channelprov.core.errors import RETRYABLE_KINDS, ErrorKind, GraphApiError, ValidationError
from channelprov.providers.meta.graph import MetaGraphClient, classify_graph_error
from channelprov.services.audit import ProvisioningStore
from channelprov.services.provisioning.context import ProvisioningContext


logger = logging.getLogger(__name__)

STEP = "waba_creation"


@dataclass(frozen=True)
class CreationTarget:
    business_entity_id: str
    account_name: str
    bsp_business_id: str | None = None


@dataclass(frozen=True)
class CreationOutcome:
    messaging_account_id: str | None = None
    strategy: str | None = None
    # Set when a cancel or the step budget stopped the loop early.
    interrupted: str | None = None

    @property
    def created(self) -> bool:
        return self.messaging_account_id is not None


async def _bsp_client_account(graph: MetaGraphClient, token: str, target: CreationTarget) -> dict[str, Any]:
    if not target.bsp_business_id:
        raise ValidationError("META_BSP_BUSINESS_ID is not configured", step=STEP)
    return await graph.create_client_account(
        token,
        target.bsp_business_id,
        name=target.account_name,
        client_business_id=target.business_entity_id,
    )


async def _entity_owned_account(graph: MetaGraphClient, token: str, target: CreationTarget) -> dict[str, Any]:
    return await graph.create_owned_account(token, target.business_entity_id, name=target.account_name)


async def _client_application(graph: MetaGraphClient, token: str, target: CreationTarget) -> dict[str, Any]:
    return await graph.create_client_application(token, target.business_entity_id, name=target.account_name)


Strategy = Callable[[MetaGraphClient, str, CreationTarget], Awaitable[dict[str, Any]]]

# Fixed priority order; the first strategy to return an id wins.
STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("bsp_client_account", _bsp_client_account),
    ("entity_owned_account", _entity_owned_account),
    ("client_application", _client_application),
)


async def create_account(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    context: ProvisioningContext,
    tenant_id: str,
    *,
    token: str,
    target: CreationTarget,
    transient_retries: int = 1,
    strategies: tuple[tuple[str, Strategy], ...] = STRATEGIES,
) -> CreationOutcome:
    """Try each creation strategy in order and return the first created account.

    Non-retryable failures move on at once; transient ones are retried up to
    ``transient_retries`` times before moving on. Every attempt is logged.
    """
    for name, strategy in strategies:
        attempt = 0
        while True:
            stop_reason = context.stop_reason()
            if stop_reason is not None or not context.budget.consume():
                logger.info("waba_creation_interrupted tenant_id=%s reason=%s", tenant_id, stop_reason)
                return CreationOutcome(interrupted=stop_reason or "step_budget_exhausted")
            attempt += 1
            details: dict[str, Any] = {
                "business_entity_id": target.business_entity_id,
                "attempt": attempt,
            }
            try:
                body = await strategy(graph, token, target)
            except GraphApiError as exc:
                kind = classify_graph_error(exc, default=ErrorKind.VALIDATION)
                await store.append_log(
                    tenant_id,
                    STEP,
                    strategy=name,
                    success=False,
                    error_message=exc.message,
                    details={**details, "error_kind": kind.value, **exc.as_details()},
                )
                if kind in RETRYABLE_KINDS and attempt <= transient_retries:
                    continue
                break
            except ValidationError as exc:
                await store.append_log(
                    tenant_id,
                    STEP,
                    strategy=name,
                    success=False,
                    error_message=exc.message,
                    details={**details, "error_kind": exc.kind.value},
                )
                break

            account_id = body.get("id") or body.get("whatsapp_business_account_id")
            if not account_id:
                await store.append_log(
                    tenant_id,
                    STEP,
                    strategy=name,
                    success=False,
                    error_message="creation accepted without an account id",
                    details={**details, "error_kind": ErrorKind.UPSTREAM_ERROR.value},
                )
                break
            await store.append_log(
                tenant_id,
                STEP,
                strategy=name,
                success=True,
                details={**details, "messaging_account_id": str(account_id)},
            )
            logger.info("waba_creation_accepted tenant_id=%s strategy=%s", tenant_id, name)
            return CreationOutcome(messaging_account_id=str(account_id), strategy=name)

    logger.warning("waba_creation_exhausted tenant_id=%s", tenant_id)
    return CreationOutcome()
