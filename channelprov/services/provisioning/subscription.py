from __future__ import annotations

import logging

from channelprov.core.config import get_settings, split_csv
from channelprov.core.errors import ErrorKind, GraphApiError
from channelprov.providers.meta.graph import MetaGraphClient, classify_graph_error
from channelprov.services.audit import ProvisioningStore


logger = logging.getLogger(__name__)

STEP = "app_subscription"


async def subscribe_account(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    tenant_id: str,
    *,
    token: str,
    messaging_account_id: str,
) -> bool:
    # Never blocks the workflow; failures are logged and reported as False.
    allow_list = split_csv(get_settings().already_subscribed_error_codes)
    try:
        await graph.subscribe_app(token, messaging_account_id)
    except GraphApiError as exc:
        kind = classify_graph_error(exc, allow_list=allow_list, default=ErrorKind.UPSTREAM_ERROR)
        if kind == ErrorKind.IDEMPOTENT_CONFLICT:
            await store.append_log(
                tenant_id,
                STEP,
                success=True,
                details={
                    "messaging_account_id": messaging_account_id,
                    "already_subscribed": True,
                    **exc.as_details(),
                },
            )
            return True
        await store.append_log(
            tenant_id,
            STEP,
            success=False,
            error_message=exc.message,
            details={"messaging_account_id": messaging_account_id, "error_kind": kind.value, **exc.as_details()},
        )
        logger.warning("app_subscription_failed tenant_id=%s kind=%s", tenant_id, kind.value)
        return False

    await store.append_log(
        tenant_id,
        STEP,
        success=True,
        details={"messaging_account_id": messaging_account_id, "already_subscribed": False},
    )
    return True
