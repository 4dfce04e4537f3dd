from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from channelprov.domain.models import IntegrationLogEntry, ProvisioningRecord
from channelprov.domain.state import ensure_transition
from channelprov.persistence.repos import provisioning as provisioning_repo
from channelprov.services.credentials import open_credential, seal_credential
from channelprov.services.telemetry import record_step_outcome


logger = logging.getLogger(__name__)

# Key fragments whose values never reach the integration log.
_SENSITIVE_KEY_PATTERNS = ["access_token", "authorization", "token", "secret", "password", "credential"]
# Exact keys for one-time codes; "provider_code" and similar stay readable.
_SENSITIVE_EXACT_KEYS = {"code", "auth_code", "verification_code", "pin", "state", "auth_state"}
_PHONE_KEYS = {"phone_number", "display_phone_number", "to", "from"}
_REDACTED_VALUE = "[REDACTED]"


def mask_phone_number(phone: str | None) -> str | None:
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) <= 4:
        return "*" * max(0, len(digits) - 2) + digits[-2:]
    country = "+55" if digits.startswith("55") else ""
    return f"{country}******{digits[-4:]}"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in _SENSITIVE_EXACT_KEYS:
        return True
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub credentials and codes, mask phone numbers, keep structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if key.lower() in _PHONE_KEYS and isinstance(raw_value, str):
                sanitized[key] = mask_phone_number(raw_value)
            elif _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    return value


class ProvisioningStore:
    """Per-tenant provisioning record plus the append-only integration log.

    Every call opens and commits its own short session, so no transaction is
    held open across provider calls or poll sleeps.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        if session_factory is None:
            from channelprov.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    async def get_record(self, tenant_id: str) -> ProvisioningRecord | None:
        async with self._session_factory() as session:
            return await provisioning_repo.get_record(session, tenant_id)

    async def upsert_record(self, tenant_id: str, **fields: Any) -> ProvisioningRecord:
        if "display_phone_number" in fields:
            fields["display_phone_number"] = mask_phone_number(fields["display_phone_number"])
        if "bearer_credential" in fields:
            fields["bearer_credential"] = seal_credential(fields["bearer_credential"])
        async with self._session_factory() as session:
            try:
                if "status" in fields:
                    current = await provisioning_repo.get_record(session, tenant_id)
                    fields["status"] = ensure_transition(
                        current.status if current is not None else None, fields["status"]
                    ).value
                record = await provisioning_repo.upsert_record(session, tenant_id, **fields)
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                logger.exception("provisioning_record_upsert_failed tenant_id=%s", tenant_id)
                raise
        return record

    async def get_bearer_credential(self, tenant_id: str) -> str | None:
        record = await self.get_record(tenant_id)
        if record is None:
            return None
        return open_credential(record.bearer_credential)

    async def append_log(
        self,
        tenant_id: str,
        step: str,
        *,
        success: bool,
        strategy: str | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        sanitized = sanitize_details(details or {})
        record_step_outcome(step, success=success)
        # Shielded: a cancelled workflow still records the call it already made.
        await asyncio.shield(
            self._write_log(
                tenant_id=tenant_id,
                step=step,
                strategy=strategy,
                success=success,
                error_message=error_message,
                details=sanitized,
            )
        )

    async def _write_log(self, **entry: Any) -> None:
        async with self._session_factory() as session:
            try:
                await provisioning_repo.append_log(session, **entry)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "integration_log_write_failed tenant_id=%s step=%s",
                    entry.get("tenant_id"),
                    entry.get("step"),
                    exc_info=exc,
                )

    async def list_logs(
        self, tenant_id: str, *, step: str | None = None, limit: int = 50
    ) -> list[IntegrationLogEntry]:
        async with self._session_factory() as session:
            return await provisioning_repo.list_logs(session, tenant_id, step=step, limit=limit)
