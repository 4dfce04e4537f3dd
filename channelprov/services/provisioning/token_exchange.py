from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from channelprov.core.config import get_settings, split_csv
from channelprov.core.errors import (
    ErrorKind,
    GraphApiError,
    PermissionDeniedError,
    ValidationError,
    error_for_kind,
)
from channelprov.domain.state import ProvisioningStatus
from channelprov.providers.meta.graph import MetaGraphClient, classify_graph_error
from channelprov.services.audit import ProvisioningStore


logger = logging.getLogger(__name__)

STEP = "token_exchange"

_RESTART_STATUSES = frozenset(
    {
        ProvisioningStatus.PENDING.value,
        ProvisioningStatus.OAUTH_COMPLETED.value,
        ProvisioningStatus.AWAITING_MANUAL_CREATION.value,
        ProvisioningStatus.FAILED.value,
    }
)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_at: datetime | None
    user_id: str | None
    scopes: list[str]


def _expiry(exchange: dict, introspection: dict) -> datetime | None:
    now = datetime.now(timezone.utc)
    expires_in = exchange.get("expires_in")
    if isinstance(expires_in, (int, float)) and expires_in > 0:
        return now + timedelta(seconds=int(expires_in))
    # debug_token reports 0 for credentials that never expire.
    expires_at = introspection.get("expires_at")
    if isinstance(expires_at, (int, float)) and expires_at > 0:
        return datetime.fromtimestamp(int(expires_at), tz=timezone.utc)
    return None


async def exchange_authorization(
    graph: MetaGraphClient,
    store: ProvisioningStore,
    tenant_id: str,
    *,
    code: str,
) -> TokenGrant:
    """Exchange an authorization code and persist the resulting credential.

    The credential must carry every required scope; otherwise nothing downstream runs.
    """
    settings = get_settings()
    if not code or not code.strip():
        raise ValidationError("authorization code is required", step=STEP)

    try:
        exchange = await graph.exchange_code(code.strip())
        access_token = exchange.get("access_token")
        if not access_token:
            raise ValidationError("token endpoint returned no access token", step=STEP)
        introspection = await graph.debug_token(access_token)
        me = await graph.get_me(access_token)
    except GraphApiError as exc:
        kind = classify_graph_error(exc, default=ErrorKind.VALIDATION)
        await store.append_log(
            tenant_id,
            STEP,
            success=False,
            error_message=exc.message,
            details={"error_kind": kind.value, **exc.as_details()},
        )
        logger.warning("token_exchange_failed tenant_id=%s kind=%s", tenant_id, kind.value)
        raise error_for_kind(kind, f"token exchange failed: {exc.message}", step=STEP, cause=exc) from exc
    except ValidationError as exc:
        await store.append_log(
            tenant_id, STEP, success=False, error_message=exc.message, details={"error_kind": exc.kind.value}
        )
        raise

    if introspection.get("is_valid") is False:
        await store.append_log(
            tenant_id,
            STEP,
            success=False,
            error_message="credential reported invalid by introspection",
            details={"error_kind": ErrorKind.VALIDATION.value},
        )
        raise ValidationError("credential reported invalid by introspection", step=STEP)

    scopes = [str(scope) for scope in introspection.get("scopes") or []]
    missing = [scope for scope in split_csv(settings.meta_required_scopes) if scope not in scopes]
    if missing:
        message = f"missing required permissions: {', '.join(missing)}"
        await store.append_log(
            tenant_id,
            STEP,
            success=False,
            error_message=message,
            details={"error_kind": ErrorKind.PERMISSION.value, "granted_scopes": scopes, "missing_scopes": missing},
        )
        raise PermissionDeniedError(message, step=STEP)

    grant = TokenGrant(
        access_token=access_token,
        expires_at=_expiry(exchange, introspection),
        user_id=str(me["id"]) if me.get("id") else None,
        scopes=scopes,
    )
    record = await store.get_record(tenant_id)
    fields: dict = {
        "bearer_credential": grant.access_token,
        "credential_expiry": grant.expires_at,
        "granted_scopes": grant.scopes,
        "provider_user_id": grant.user_id,
    }
    # Re-authorizing a tenant whose account is already known only refreshes the credential.
    if record is None or record.status in _RESTART_STATUSES:
        fields["status"] = ProvisioningStatus.OAUTH_COMPLETED.value
        fields["failure_reason"] = None
    await store.upsert_record(tenant_id, **fields)
    await store.append_log(
        tenant_id,
        STEP,
        success=True,
        details={
            "user_id": grant.user_id,
            "granted_scopes": grant.scopes,
            "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
        },
    )
    logger.info("token_exchange_completed tenant_id=%s user_id=%s", tenant_id, grant.user_id)
    return grant
