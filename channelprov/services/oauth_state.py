from __future__ import annotations

import asyncio
import json
import secrets
import time
from typing import Any

from channelprov.core.config import get_settings
from channelprov.core.errors import ValidationError
from channelprov.services.resilience import get_shared_redis


_state_cache: dict[str, tuple[float, dict[str, Any]]] = {}
_cache_lock = asyncio.Lock()


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def _state_key(state: str) -> str:
    return f"{get_settings().oauth_state_redis_prefix}:{state}"


def _use_memory() -> bool:
    return get_settings().oauth_state_backend.strip().lower() == "memory"


async def store_state(*, state: str, payload: dict[str, Any], ttl_seconds: int) -> None:
    # Redis with TTL in deployed environments; in-process dict for dev and tests.
    redis = None if _use_memory() else await get_shared_redis()
    if redis is None:
        now = time.time()
        async with _cache_lock:
            # Tokens that were never redeemed are dropped once expired.
            for key in [key for key, (expires_at, _) in _state_cache.items() if expires_at < now]:
                del _state_cache[key]
            _state_cache[state] = (now + ttl_seconds, payload)
        return
    await redis.setex(_state_key(state), ttl_seconds, json.dumps(payload))


async def pop_state(state: str) -> dict[str, Any] | None:
    # Read and delete in one step; a state token is single use.
    redis = None if _use_memory() else await get_shared_redis()
    if redis is None:
        async with _cache_lock:
            entry = _state_cache.pop(state, None)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at < time.time():
            return None
        return payload
    raw = await redis.getdel(_state_key(state))
    if raw is None:
        return None
    return json.loads(raw)


async def issue_state(tenant_id: str) -> str:
    settings = get_settings()
    state = generate_state()
    payload = {
        "tenant_id": tenant_id,
        "issued_at": time.time(),
        "nonce": secrets.token_hex(8),
    }
    await store_state(state=state, payload=payload, ttl_seconds=settings.oauth_state_ttl_seconds)
    return state


async def consume_state(state: str | None, *, tenant_id: str | None = None) -> dict[str, Any]:
    """Validate and consume a correlation token; returns its payload.

    When ``tenant_id`` is given the token must have been issued for that tenant.
    """
    if not state:
        raise ValidationError("authorization state is required", step="token_exchange")
    payload = await pop_state(state)
    if payload is None:
        raise ValidationError("authorization state is unknown or expired", step="token_exchange")
    if tenant_id is not None and payload.get("tenant_id") != tenant_id:
        raise ValidationError("authorization state was issued for another tenant", step="token_exchange")
    return payload


def clear_memory_states() -> None:
    _state_cache.clear()
