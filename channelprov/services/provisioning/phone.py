from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any

from channelprov.core.config import get_settings, split_csv
from channelprov.core.errors import (
    ErrorKind,
    GraphApiError,
    NotFoundError,
    ProvisioningError,
    UpstreamError,
    ValidationError,
    error_for_kind,
)
from channelprov.providers.meta.graph import MetaGraphClient, classify_graph_error
from channelprov.services.audit import ProvisioningStore


logger = logging.getLogger(__name__)

REGISTRATION_STEP = "phone_registration"
VERIFICATION_STEP = "phone_verification"

_CODE_PATTERN = re.compile(r"^\d{4,8}$")


@dataclass(frozen=True)
class PhoneRegistration:
    phone_number_id: str
    display_phone_number: str | None
    already_registered: bool


@dataclass(frozen=True)
class VerifiedPhone:
    phone_number_id: str
    display_phone_number: str | None
    verified_name: str | None


def _digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def _find_number(numbers: list[dict[str, Any]], *, phone_number: str | None = None, phone_number_id: str | None = None):
    for number in numbers:
        if phone_number_id and str(number.get("id")) == phone_number_id:
            return number
        if phone_number and _digits(phone_number) and _digits(number.get("display_phone_number")) == _digits(phone_number):
            return number
    return None


async def _list_numbers(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    tenant_id: str,
    *,
    token: str,
    account_id: str,
    step: str = REGISTRATION_STEP,
) -> list[dict[str, Any]]:
    try:
        return await graph.list_phone_numbers(token, account_id)
    except GraphApiError as exc:
        kind = classify_graph_error(exc, default=ErrorKind.UPSTREAM_ERROR)
        logger.warning("phone_numbers_list_failed tenant_id=%s kind=%s", tenant_id, kind.value)
        raise error_for_kind(kind, f"could not list phone numbers: {exc.message}", step=step, cause=exc) from exc


async def _log_failure(
    store: ProvisioningStore, tenant_id: str, step: str, exc: GraphApiError, kind: ErrorKind, **details: Any
) -> None:
    await store.append_log(
        tenant_id,
        step,
        success=False,
        error_message=exc.message,
        details={**details, "error_kind": kind.value, **exc.as_details()},
    )


async def register_phone(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    tenant_id: str,
    *,
    token: str,
    messaging_account_id: str,
    phone_number: str | None = None,
    phone_number_id: str | None = None,
    pin: str | None = None,
) -> PhoneRegistration:
    """Attach a number to the account and request its verification code.

    Takes either a raw ``phone_number`` to add or an existing ``phone_number_id``
    that must already belong to the account.
    """
    settings = get_settings()
    if not phone_number and not phone_number_id:
        raise ValidationError("phone_number or phone_number_id is required", step=REGISTRATION_STEP)

    numbers = await _list_numbers(graph, store, tenant_id, token=token, account_id=messaging_account_id)
    existing = _find_number(numbers, phone_number=phone_number, phone_number_id=phone_number_id)

    if phone_number_id and existing is None:
        await store.append_log(
            tenant_id,
            REGISTRATION_STEP,
            success=False,
            error_message="phone number does not belong to the messaging account",
            details={
                "action": "lookup",
                "phone_number_id": phone_number_id,
                "messaging_account_id": messaging_account_id,
                "error_kind": ErrorKind.NOT_FOUND.value,
            },
        )
        raise NotFoundError("phone number does not belong to the messaging account", step=REGISTRATION_STEP)

    already_registered = existing is not None
    if existing is None:
        allow_list = split_csv(settings.already_registered_error_codes)
        try:
            body = await graph.add_phone_number(
                token,
                messaging_account_id,
                display_phone_number=phone_number,
                pin=pin or settings.phone_registration_pin,
            )
        except GraphApiError as exc:
            kind = classify_graph_error(exc, allow_list=allow_list, default=ErrorKind.VALIDATION)
            if kind != ErrorKind.IDEMPOTENT_CONFLICT:
                await _log_failure(
                    store, tenant_id, REGISTRATION_STEP, exc, kind, action="add_number", phone_number=phone_number
                )
                raise error_for_kind(kind, f"phone registration failed: {exc.message}", step=REGISTRATION_STEP, cause=exc) from exc
            # Already registered elsewhere in this account; resolve its id.
            try:
                numbers = await _list_numbers(graph, store, tenant_id, token=token, account_id=messaging_account_id)
            except ProvisioningError as list_exc:
                await _log_failure(
                    store, tenant_id, REGISTRATION_STEP, exc, list_exc.kind,
                    action="add_number", already_registered=True, phone_number=phone_number,
                )
                raise
            existing = _find_number(numbers, phone_number=phone_number)
            if existing is None:
                await _log_failure(
                    store, tenant_id, REGISTRATION_STEP, exc, ErrorKind.UPSTREAM_ERROR,
                    action="add_number", phone_number=phone_number,
                )
                raise UpstreamError("phone reported registered but not listed", step=REGISTRATION_STEP, cause=exc) from exc
            already_registered = True
            await store.append_log(
                tenant_id,
                REGISTRATION_STEP,
                success=True,
                details={"action": "add_number", "already_registered": True, "phone_number_id": str(existing["id"])},
            )
        else:
            if not body.get("id"):
                await store.append_log(
                    tenant_id,
                    REGISTRATION_STEP,
                    success=False,
                    error_message="registration accepted without a phone number id",
                    details={"action": "add_number", "error_kind": ErrorKind.UPSTREAM_ERROR.value},
                )
                raise UpstreamError("registration accepted without a phone number id", step=REGISTRATION_STEP)
            existing = {"id": body["id"], "display_phone_number": phone_number}
            await store.append_log(
                tenant_id,
                REGISTRATION_STEP,
                success=True,
                details={
                    "action": "add_number",
                    "already_registered": False,
                    "phone_number_id": str(body["id"]),
                    "phone_number": phone_number,
                },
            )

    resolved_id = str(existing["id"])
    display = existing.get("display_phone_number") or phone_number
    try:
        await graph.request_code(
            token,
            resolved_id,
            code_method=settings.phone_code_method,
            language=settings.phone_code_language,
        )
    except GraphApiError as exc:
        kind = classify_graph_error(exc, default=ErrorKind.VALIDATION)
        await _log_failure(store, tenant_id, REGISTRATION_STEP, exc, kind, action="request_code", phone_number_id=resolved_id)
        raise error_for_kind(kind, f"verification code request failed: {exc.message}", step=REGISTRATION_STEP, cause=exc) from exc

    await store.append_log(
        tenant_id,
        REGISTRATION_STEP,
        success=True,
        details={
            "action": "request_code",
            "phone_number_id": resolved_id,
            "display_phone_number": display,
            "code_method": settings.phone_code_method,
        },
    )
    return PhoneRegistration(
        phone_number_id=resolved_id,
        display_phone_number=display,
        already_registered=already_registered,
    )


def validate_verification_code(code: str | None) -> str:
    cleaned = (code or "").strip()
    if not _CODE_PATTERN.match(cleaned):
        raise ValidationError("verification code must be 4 to 8 digits", step=VERIFICATION_STEP)
    return cleaned


async def verify_phone(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    tenant_id: str,
    *,
    token: str,
    phone_number_id: str,
    code: str,
    messaging_account_id: str | None = None,
) -> VerifiedPhone:
    """Submit the verification code for a registered number.

    With ``messaging_account_id`` the number must still be listed under that
    account before the code is sent.
    """
    cleaned = validate_verification_code(code)
    if messaging_account_id:
        numbers = await _list_numbers(
            graph, store, tenant_id, token=token, account_id=messaging_account_id, step=VERIFICATION_STEP
        )
        if _find_number(numbers, phone_number_id=phone_number_id) is None:
            await store.append_log(
                tenant_id,
                VERIFICATION_STEP,
                success=False,
                error_message="phone number does not belong to the messaging account",
                details={
                    "phone_number_id": phone_number_id,
                    "messaging_account_id": messaging_account_id,
                    "error_kind": ErrorKind.NOT_FOUND.value,
                },
            )
            raise NotFoundError("phone number does not belong to the messaging account", step=VERIFICATION_STEP)
    try:
        await graph.verify_code(token, phone_number_id, cleaned)
    except GraphApiError as exc:
        kind = classify_graph_error(exc, default=ErrorKind.VALIDATION)
        await _log_failure(store, tenant_id, VERIFICATION_STEP, exc, kind, phone_number_id=phone_number_id)
        raise error_for_kind(kind, f"verification code rejected: {exc.message}", step=VERIFICATION_STEP, cause=exc) from exc

    # Canonical fields are best effort; the code itself is already accepted.
    try:
        canonical = await graph.get_phone_number(token, phone_number_id)
    except GraphApiError as exc:
        logger.warning(
            "phone_details_fetch_failed tenant_id=%s phone_number_id=%s code=%s",
            tenant_id,
            phone_number_id,
            exc.code,
        )
        canonical = {}

    verified = VerifiedPhone(
        phone_number_id=phone_number_id,
        display_phone_number=canonical.get("display_phone_number"),
        verified_name=canonical.get("verified_name"),
    )
    await store.append_log(
        tenant_id,
        VERIFICATION_STEP,
        success=True,
        details={
            "phone_number_id": phone_number_id,
            "display_phone_number": verified.display_phone_number,
            "verified_name": verified.verified_name,
            "status": canonical.get("status"),
        },
    )
    return verified
