from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_ERROR = "upstream_error"
    TIMEOUT = "timeout"
    IDEMPOTENT_CONFLICT = "idempotent_conflict"


# Only these stop the workflow and reach the caller as errors.
HARD_STOP_KINDS = frozenset({ErrorKind.VALIDATION, ErrorKind.PERMISSION})
RETRYABLE_KINDS = frozenset({ErrorKind.UPSTREAM_UNAVAILABLE, ErrorKind.UPSTREAM_ERROR})


class ChannelProvError(Exception):
    """Base error for channelprov."""


class DatabaseError(ChannelProvError):
    """Database layer failure."""


class IntegrationUnavailableError(ChannelProvError):
    """Circuit breaker is open for an external integration."""


class InvalidTransitionError(ChannelProvError):
    """Provisioning status change not permitted by the state machine."""


class ConfigurationError(ChannelProvError):
    """Required provider configuration is missing."""


class GraphApiError(ChannelProvError):
    """Provider call failed; carries the parsed Graph error payload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        subcode: int | None = None,
        error_type: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.error_type = error_type
        self.payload = payload or {}

    def matches(self, allow_list: list[str]) -> bool:
        # Entries are "code" or "code:subcode".
        for entry in allow_list:
            raw_code, _, raw_subcode = entry.partition(":")
            if not raw_code.strip().isdigit() or int(raw_code) != self.code:
                continue
            if not raw_subcode:
                return True
            if raw_subcode.strip().isdigit() and int(raw_subcode) == self.subcode:
                return True
        return False

    def as_details(self) -> dict[str, Any]:
        return {
            "http_status": self.status_code,
            "provider_code": self.code,
            "provider_subcode": self.subcode,
            "provider_error_type": self.error_type,
        }


class ProvisioningError(ChannelProvError):
    """Classified workflow failure."""

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        step: str | None = None,
        cause: GraphApiError | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.step = step
        self.cause = cause

    @property
    def is_hard_stop(self) -> bool:
        return self.kind in HARD_STOP_KINDS


class ValidationError(ProvisioningError):
    kind = ErrorKind.VALIDATION


class PermissionDeniedError(ProvisioningError):
    kind = ErrorKind.PERMISSION


class NotFoundError(ProvisioningError):
    kind = ErrorKind.NOT_FOUND


class UpstreamUnavailableError(ProvisioningError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class UpstreamError(ProvisioningError):
    kind = ErrorKind.UPSTREAM_ERROR


_KIND_TO_ERROR: dict[ErrorKind, type[ProvisioningError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.PERMISSION: PermissionDeniedError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailableError,
    ErrorKind.UPSTREAM_ERROR: UpstreamError,
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    *,
    step: str | None = None,
    cause: GraphApiError | None = None,
) -> ProvisioningError:
    error_cls = _KIND_TO_ERROR.get(kind, ProvisioningError)
    return error_cls(message, kind=kind, step=step, cause=cause)
