from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from channelprov.apps.api.response import SuccessEnvelope, success_response
from channelprov.services.telemetry import external_latency_by_integration

router = APIRouter(tags=["health"])

LATENCY_WINDOW_SECONDS = 3600


class HealthResponse(BaseModel):
    status: str
    external_call_latency_ms: dict[str, dict[str, float | None]] = Field(default_factory=dict)


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(
        status="ok",
        external_call_latency_ms=external_latency_by_integration(LATENCY_WINDOW_SECONDS),
    )
    return success_response(request=request, data=payload.model_dump())
