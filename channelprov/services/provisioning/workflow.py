from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import logging
import time
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

from channelprov.core.config import Settings, get_settings, split_csv
from channelprov.core.errors import (
    ConfigurationError,
    ErrorKind,
    NotFoundError,
    PermissionDeniedError,
    ProvisioningError,
    ValidationError,
)
from channelprov.domain.models import ProvisioningRecord
from channelprov.domain.state import ProvisioningStatus
from channelprov.providers.meta.graph import MetaGraphClient
from channelprov.services.audit import ProvisioningStore
from channelprov.services.oauth_state import consume_state, issue_state
from channelprov.services.provisioning.account_creation import CreationTarget, create_account
from channelprov.services.provisioning.context import ProvisioningContext
from channelprov.services.provisioning.discovery import discover_account, find_account_for_phone
from channelprov.services.provisioning.phone import register_phone, verify_phone
from channelprov.services.provisioning.polling import poll_for_account
from channelprov.services.provisioning.subscription import subscribe_account
from channelprov.services.provisioning.token_exchange import exchange_authorization


logger = logging.getLogger(__name__)

S = ProvisioningStatus

MODES = ("auto", "manual", "refresh")


@dataclass(frozen=True)
class ProvisionOverrides:
    business_entity_id: str | None = None
    phone_number_id: str | None = None
    phone_number: str | None = None
    pin: str | None = None


@dataclass(frozen=True)
class ProvisionResult:
    status: str
    business_entity_id: str | None = None
    messaging_account_id: str | None = None
    phone_number_id: str | None = None
    detail: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _result(record: ProvisioningRecord | None, *, detail: str | None = None, reason: str | None = None) -> ProvisionResult:
    if record is None:
        return ProvisionResult(status=S.PENDING.value, detail=detail, reason=reason)
    return ProvisionResult(
        status=record.status,
        business_entity_id=record.business_entity_id,
        messaging_account_id=record.messaging_account_id,
        phone_number_id=record.phone_number_id,
        detail=detail,
        reason=reason if reason is not None else record.failure_reason,
    )


def _past_authorization(record: ProvisioningRecord | None) -> bool:
    return (
        record is not None
        and bool(record.bearer_credential)
        and record.status not in {S.PENDING.value, S.FAILED.value}
    )


class ProvisioningWorkflow:
    """Drives one tenant from OAuth authorization to a verified messaging channel.

    Every entry point re-reads the persisted record and derives the next action
    from it, so a call interrupted at any step can simply be repeated.
    """

    def __init__(
        self,
        store: ProvisioningStore,
        graph: MetaGraphClient,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._graph = graph
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock

    async def start_authorization(self, tenant_id: str) -> dict[str, str]:
        settings = self._settings
        if not settings.meta_app_id:
            raise ConfigurationError("META_APP_ID is required to start authorization")
        record = await self._store.get_record(tenant_id)
        if record is None:
            await self._store.upsert_record(tenant_id, status=S.PENDING.value)
        state = await issue_state(tenant_id)
        query = urlencode(
            {
                "client_id": settings.meta_app_id,
                "redirect_uri": settings.meta_redirect_uri,
                "state": state,
                "scope": ",".join(split_csv(settings.meta_oauth_scopes)),
                "response_type": "code",
            }
        )
        await self._store.append_log(
            tenant_id,
            "authorization_start",
            success=True,
            details={"scopes": split_csv(settings.meta_oauth_scopes)},
        )
        return {"authorize_url": f"{settings.meta_oauth_dialog_url}?{query}", "state": state}

    async def provision(
        self,
        tenant_id: str,
        auth_code: str | None = None,
        auth_state: str | None = None,
        mode: str = "auto",
        overrides: ProvisionOverrides | None = None,
        context: ProvisioningContext | None = None,
    ) -> ProvisionResult:
        if mode not in MODES:
            raise ValidationError(f"unknown provisioning mode: {mode}")
        if auth_code:
            auth_code = await self._accept_authorization(tenant_id, auth_code, auth_state)
        return await self._provision(
            tenant_id, auth_code=auth_code, mode=mode, overrides=overrides, context=context
        )

    async def complete_authorization(
        self,
        auth_code: str,
        auth_state: str,
        overrides: ProvisionOverrides | None = None,
        context: ProvisioningContext | None = None,
    ) -> ProvisionResult:
        """OAuth redirect entry point; the tenant comes from the correlation token."""
        payload = await consume_state(auth_state)
        return await self._provision(
            str(payload["tenant_id"]), auth_code=auth_code, mode="auto", overrides=overrides, context=context
        )

    async def _accept_authorization(self, tenant_id: str, auth_code: str, auth_state: str | None) -> str | None:
        # Returns the code to exchange, or None when the stored credential is reused.
        record = await self._store.get_record(tenant_id)
        if record is not None and record.status == S.COMPLETED.value:
            return None
        try:
            await consume_state(auth_state, tenant_id=tenant_id)
        except ValidationError:
            if not _past_authorization(record):
                raise
            # A repeated request after the exchange resumes on the stored credential.
            logger.info("authorization_state_reused tenant_id=%s status=%s", tenant_id, record.status)
            return None
        return auth_code

    async def _provision(
        self,
        tenant_id: str,
        *,
        auth_code: str | None,
        mode: str,
        overrides: ProvisionOverrides | None,
        context: ProvisioningContext | None,
    ) -> ProvisionResult:
        overrides = overrides or ProvisionOverrides()
        context = context or ProvisioningContext()

        record = await self._store.get_record(tenant_id)
        if record is not None and record.status == S.COMPLETED.value:
            # Completed tenants are never touched again by a re-invocation.
            await self._store.append_log(
                tenant_id, "complete_flow", success=True, details={"idempotent": True, "status": record.status}
            )
            return _result(record)

        token, early = await self._resolve_token(tenant_id, record, auth_code=auth_code)
        if early is not None:
            return await self._finish(tenant_id, early)

        try:
            result = await self._advance(tenant_id, token, mode=mode, overrides=overrides, context=context)
        except PermissionDeniedError as exc:
            await self._fail(tenant_id, exc)
            raise
        return await self._finish(tenant_id, result)

    async def _resolve_token(
        self,
        tenant_id: str,
        record: ProvisioningRecord | None,
        *,
        auth_code: str | None,
    ) -> tuple[str | None, ProvisionResult | None]:
        if auth_code:
            try:
                grant = await exchange_authorization(self._graph, self._store, tenant_id, code=auth_code)
            except PermissionDeniedError as exc:
                await self._fail(tenant_id, exc)
                raise
            except ProvisioningError as exc:
                if exc.is_hard_stop:
                    raise
                # Transient provider trouble never marks the tenant failed.
                return None, _result(record, reason=exc.kind.value)
            return grant.access_token, None

        if record is None or not record.bearer_credential:
            raise ValidationError("authorization code is required to start provisioning")
        if record.status == S.FAILED.value:
            raise ValidationError("provisioning failed; re-authorize with a new authorization code")
        return await self._store.get_bearer_credential(tenant_id), None

    async def _advance(
        self,
        tenant_id: str,
        token: str,
        *,
        mode: str,
        overrides: ProvisionOverrides,
        context: ProvisioningContext,
    ) -> ProvisionResult:
        record = await self._store.get_record(tenant_id)
        phone_number_id = overrides.phone_number_id

        if mode == "manual":
            if not phone_number_id:
                raise ValidationError("manual mode requires phone_number_id")
            found = await find_account_for_phone(
                self._graph,
                self._store,
                tenant_id,
                token=token,
                phone_number_id=phone_number_id,
                preferred_business_id=overrides.business_entity_id,
            )
            if found is None:
                raise NotFoundError("no messaging account owns the phone number", step="waba_discovery")
            fields: dict[str, Any] = {}
            if record.status in {S.OAUTH_COMPLETED.value, S.AWAITING_MANUAL_CREATION.value}:
                fields["status"] = S.ACCOUNT_DETECTED.value
            if record.messaging_account_id and record.messaging_account_id != found.messaging_account_id:
                # A number registered on the previous account does not carry over.
                logger.info(
                    "messaging_account_relinked tenant_id=%s previous=%s current=%s",
                    tenant_id,
                    record.messaging_account_id,
                    found.messaging_account_id,
                )
                fields.update(phone_number_id=None, display_phone_number=None, verified_name=None)
                if record.status == S.AWAITING_NUMBER_VERIFICATION.value:
                    fields["status"] = S.ACCOUNT_DETECTED.value
            record = await self._store.upsert_record(
                tenant_id,
                **fields,
                business_entity_id=found.business_entity_id,
                messaging_account_id=found.messaging_account_id,
                account_confirmed=True,
            )
        elif record.messaging_account_id and record.account_confirmed:
            if record.status in {S.OAUTH_COMPLETED.value, S.AWAITING_MANUAL_CREATION.value}:
                record = await self._store.upsert_record(tenant_id, status=S.ACCOUNT_DETECTED.value)
        elif record.messaging_account_id and record.creation_strategy:
            # Created earlier but never confirmed: re-poll, never re-create.
            polled = await self._poll(tenant_id, token, record, context)
            if polled is not None:
                return polled
            record = await self._store.get_record(tenant_id)
        elif record.status == S.AWAITING_MANUAL_CREATION.value and mode != "refresh":
            return _result(record, detail="manual_creation_required")
        else:
            outcome = await self._discover_or_create(tenant_id, token, record, overrides, context)
            if outcome is not None:
                return outcome
            record = await self._store.get_record(tenant_id)

        await subscribe_account(
            self._graph, self._store, tenant_id, token=token, messaging_account_id=record.messaging_account_id
        )
        return await self._register_phone(tenant_id, token, record, overrides)

    async def _discover_or_create(
        self,
        tenant_id: str,
        token: str,
        record: ProvisioningRecord,
        overrides: ProvisionOverrides,
        context: ProvisioningContext,
    ) -> ProvisionResult | None:
        discovery = await discover_account(
            self._graph,
            self._store,
            tenant_id,
            token=token,
            preferred_business_id=overrides.business_entity_id,
        )
        if discovery.found is not None:
            await self._store.upsert_record(
                tenant_id,
                status=S.ACCOUNT_DETECTED.value,
                business_entity_id=discovery.found.business_entity_id,
                messaging_account_id=discovery.found.messaging_account_id,
                account_confirmed=True,
            )
            return None

        target_entity = overrides.business_entity_id or next(iter(discovery.business_ids), None)
        if not target_entity:
            updated = await self._store.upsert_record(tenant_id, status=S.AWAITING_MANUAL_CREATION.value)
            return _result(updated, detail="manual_creation_required", reason="no_business_entity")

        settings = self._settings
        outcome = await create_account(
            self._graph,
            self._store,
            context,
            tenant_id,
            token=settings.meta_system_user_token or token,
            target=CreationTarget(
                business_entity_id=target_entity,
                account_name=f"{settings.waba_name_prefix} {tenant_id}",
                bsp_business_id=settings.meta_bsp_business_id,
            ),
            transient_retries=settings.strategy_transient_retries,
        )
        if outcome.interrupted:
            return _result(record, detail=outcome.interrupted)
        if not outcome.created:
            updated = await self._store.upsert_record(
                tenant_id, status=S.AWAITING_MANUAL_CREATION.value, business_entity_id=target_entity
            )
            return _result(updated, detail="manual_creation_required", reason="all_strategies_failed")

        # Persisted before polling so a resumed call re-polls instead of re-creating.
        record = await self._store.upsert_record(
            tenant_id,
            business_entity_id=target_entity,
            messaging_account_id=outcome.messaging_account_id,
            creation_strategy=outcome.strategy,
            account_confirmed=False,
            polling_attempts=0,
        )
        return await self._poll(tenant_id, token, record, context)

    async def _poll(
        self,
        tenant_id: str,
        token: str,
        record: ProvisioningRecord,
        context: ProvisioningContext,
    ) -> ProvisionResult | None:
        settings = self._settings
        polled = await poll_for_account(
            self._graph,
            self._store,
            context,
            tenant_id,
            token=token,
            business_entity_id=record.business_entity_id,
            expected_account_id=record.messaging_account_id,
            max_attempts=settings.poll_max_attempts,
            interval_s=settings.poll_interval_s,
            sleep=self._sleep,
            clock=self._clock,
        )
        if not polled.found:
            current = await self._store.get_record(tenant_id)
            return _result(current, detail=polled.interrupted or "processing")
        await self._store.upsert_record(
            tenant_id,
            status=S.ACCOUNT_DETECTED.value,
            messaging_account_id=polled.messaging_account_id,
            account_confirmed=True,
        )
        return None

    async def _register_phone(
        self,
        tenant_id: str,
        token: str,
        record: ProvisioningRecord,
        overrides: ProvisionOverrides,
    ) -> ProvisionResult:
        current = await self._store.get_record(tenant_id)
        requested = overrides.phone_number or overrides.phone_number_id
        if current.phone_number_id and (current.status == S.AWAITING_NUMBER_VERIFICATION.value or not requested):
            # Registered on an earlier call; only the code is missing.
            if current.status != S.AWAITING_NUMBER_VERIFICATION.value:
                current = await self._store.upsert_record(tenant_id, status=S.AWAITING_NUMBER_VERIFICATION.value)
            return _result(current, detail="verification_code_required")
        if not requested:
            return _result(current, detail="phone_number_required")
        try:
            registration = await register_phone(
                self._graph,
                self._store,
                tenant_id,
                token=token,
                messaging_account_id=record.messaging_account_id,
                phone_number=overrides.phone_number,
                phone_number_id=overrides.phone_number_id,
                pin=overrides.pin,
            )
        except ProvisioningError as exc:
            if exc.is_hard_stop or exc.kind == ErrorKind.NOT_FOUND:
                raise
            current = await self._store.get_record(tenant_id)
            return _result(current, reason=exc.kind.value)
        updated = await self._store.upsert_record(
            tenant_id,
            status=S.AWAITING_NUMBER_VERIFICATION.value,
            phone_number_id=registration.phone_number_id,
            display_phone_number=registration.display_phone_number,
        )
        return _result(updated, detail="verification_code_required")

    async def verify_number(self, tenant_id: str, code: str) -> dict[str, Any]:
        record = await self._store.get_record(tenant_id)
        if record is None:
            raise NotFoundError("no provisioning record for tenant")
        if record.status == S.COMPLETED.value:
            return {"status": record.status}
        if record.status != S.AWAITING_NUMBER_VERIFICATION.value or not record.phone_number_id:
            raise ValidationError("no phone number is awaiting verification")

        token = await self._store.get_bearer_credential(tenant_id)
        try:
            verified = await verify_phone(
                self._graph,
                self._store,
                tenant_id,
                token=token,
                phone_number_id=record.phone_number_id,
                code=code,
                messaging_account_id=record.messaging_account_id,
            )
        except PermissionDeniedError as exc:
            await self._fail(tenant_id, exc)
            raise
        except ProvisioningError as exc:
            if exc.is_hard_stop or exc.kind == ErrorKind.NOT_FOUND:
                raise
            return {"status": record.status, "reason": exc.kind.value}

        fields: dict[str, Any] = {"status": S.COMPLETED.value, "failure_reason": None}
        if verified.display_phone_number:
            fields["display_phone_number"] = verified.display_phone_number
        if verified.verified_name:
            fields["verified_name"] = verified.verified_name
        updated = await self._store.upsert_record(tenant_id, **fields)
        await self._finish(tenant_id, _result(updated))
        return {"status": updated.status}

    async def get_status(self, tenant_id: str) -> dict[str, Any]:
        record = await self._store.get_record(tenant_id)
        if record is None:
            return {"tenant_id": tenant_id, "status": S.PENDING.value}
        return {
            "tenant_id": record.tenant_id,
            "status": record.status,
            "business_entity_id": record.business_entity_id,
            "messaging_account_id": record.messaging_account_id,
            "account_confirmed": record.account_confirmed,
            "phone_number_id": record.phone_number_id,
            "display_phone_number": record.display_phone_number,
            "verified_name": record.verified_name,
            "creation_strategy": record.creation_strategy,
            "polling_attempts": record.polling_attempts,
            "granted_scopes": record.granted_scopes or [],
            "credential_expiry": record.credential_expiry.isoformat() if record.credential_expiry else None,
            "failure_reason": record.failure_reason,
            "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        }

    async def _fail(self, tenant_id: str, exc: ProvisioningError) -> None:
        await self._store.upsert_record(tenant_id, status=S.FAILED.value, failure_reason=exc.message[:500])
        logger.warning("provisioning_failed tenant_id=%s step=%s kind=%s", tenant_id, exc.step, exc.kind.value)

    async def _finish(self, tenant_id: str, result: ProvisionResult) -> ProvisionResult:
        await self._store.append_log(
            tenant_id,
            "complete_flow",
            success=result.status != S.FAILED.value,
            details=result.to_dict(),
        )
        logger.info(
            "provisioning_invocation_finished tenant_id=%s status=%s detail=%s",
            tenant_id,
            result.status,
            result.detail,
        )
        return result
