from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from channelprov.apps.api.deps import get_store, get_workflow
from channelprov.apps.api.response import SuccessEnvelope, success_response
from channelprov.services.audit import ProvisioningStore
from channelprov.services.provisioning.context import ProvisioningContext
from channelprov.services.provisioning.workflow import ProvisionOverrides, ProvisioningWorkflow, ProvisionResult


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provisioning", tags=["provisioning"])

DISCONNECT_POLL_SECONDS = 0.5


class AuthorizeResponse(BaseModel):
    authorize_url: str
    state: str


class ProvisionRequest(BaseModel):
    auth_code: str | None = None
    auth_state: str | None = None
    mode: Literal["auto", "manual", "refresh"] = "auto"
    business_entity_id: str | None = None
    phone_number_id: str | None = None
    phone_number: str | None = None
    pin: str | None = Field(default=None, pattern=r"^\d{6}$")


class ProvisionResponse(BaseModel):
    status: str
    business_entity_id: str | None = None
    messaging_account_id: str | None = None
    phone_number_id: str | None = None
    detail: str | None = None
    reason: str | None = None


class VerifyNumberRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class VerifyNumberResponse(BaseModel):
    status: str
    reason: str | None = None


class IntegrationLogItem(BaseModel):
    id: int
    step: str
    strategy: str | None
    success: bool
    error_message: str | None
    details: dict[str, Any]
    created_at: datetime | None


class IntegrationLogList(BaseModel):
    items: list[IntegrationLogItem]


def _overrides(payload: ProvisionRequest) -> ProvisionOverrides:
    return ProvisionOverrides(
        business_entity_id=payload.business_entity_id,
        phone_number_id=payload.phone_number_id,
        phone_number=payload.phone_number,
        pin=payload.pin,
    )


async def _run_until_disconnect(
    request: Request, run: Callable[[ProvisioningContext], Awaitable[ProvisionResult]]
) -> ProvisionResult:
    # A client that goes away stops further creation attempts and polls.
    context = ProvisioningContext()

    async def watch() -> None:
        while not context.cancelled:
            if await request.is_disconnected():
                logger.info("provisioning_client_disconnected path=%s", request.url.path)
                context.cancel()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(watch())
    try:
        return await run(context)
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher


@router.post(
    "/{tenant_id}/authorize",
    response_model=SuccessEnvelope[AuthorizeResponse] | AuthorizeResponse,
)
async def authorize(
    request: Request,
    tenant_id: str,
    workflow: ProvisioningWorkflow = Depends(get_workflow),
) -> dict:
    started = await workflow.start_authorization(tenant_id)
    return success_response(request=request, data=AuthorizeResponse(**started).model_dump())


@router.get(
    "/oauth/callback",
    response_model=SuccessEnvelope[ProvisionResponse] | ProvisionResponse,
)
async def oauth_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    workflow: ProvisioningWorkflow = Depends(get_workflow),
) -> dict:
    # The provider redirects here with either a code or an error.
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTHORIZATION_DENIED", "message": error_description or error},
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "code and state are required"},
        )
    result = await _run_until_disconnect(
        request, lambda context: workflow.complete_authorization(code, state, context=context)
    )
    return success_response(request=request, data=ProvisionResponse(**result.to_dict()).model_dump())


@router.post(
    "/{tenant_id}/provision",
    response_model=SuccessEnvelope[ProvisionResponse] | ProvisionResponse,
)
async def provision(
    request: Request,
    tenant_id: str,
    payload: ProvisionRequest,
    workflow: ProvisioningWorkflow = Depends(get_workflow),
) -> dict:
    result = await _run_until_disconnect(
        request,
        lambda context: workflow.provision(
            tenant_id,
            auth_code=payload.auth_code,
            auth_state=payload.auth_state,
            mode=payload.mode,
            overrides=_overrides(payload),
            context=context,
        ),
    )
    return success_response(request=request, data=ProvisionResponse(**result.to_dict()).model_dump())


@router.post(
    "/{tenant_id}/verify-number",
    response_model=SuccessEnvelope[VerifyNumberResponse] | VerifyNumberResponse,
)
async def verify_number(
    request: Request,
    tenant_id: str,
    payload: VerifyNumberRequest,
    workflow: ProvisioningWorkflow = Depends(get_workflow),
) -> dict:
    result = await workflow.verify_number(tenant_id, payload.code)
    return success_response(request=request, data=VerifyNumberResponse(**result).model_dump())


@router.get("/{tenant_id}/status")
async def provisioning_status(
    request: Request,
    tenant_id: str,
    workflow: ProvisioningWorkflow = Depends(get_workflow),
) -> dict:
    return success_response(request=request, data=await workflow.get_status(tenant_id))


@router.get(
    "/{tenant_id}/logs",
    response_model=SuccessEnvelope[IntegrationLogList] | IntegrationLogList,
)
async def provisioning_logs(
    request: Request,
    tenant_id: str,
    step: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    store: ProvisioningStore = Depends(get_store),
) -> dict:
    entries = await store.list_logs(tenant_id, step=step, limit=limit)
    items = [
        IntegrationLogItem(
            id=entry.id,
            step=entry.step,
            strategy=entry.strategy,
            success=entry.success,
            error_message=entry.error_message,
            details=entry.details or {},
            created_at=entry.created_at,
        )
        for entry in entries
    ]
    return success_response(request=request, data=IntegrationLogList(items=items).model_dump(mode="json"))
