from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from channelprov.core.config import get_settings
from channelprov.core.errors import ChannelProvError


_SEALED_PREFIX = "fernet:"


class CredentialSealError(ChannelProvError):
    """Raised when a sealed bearer credential cannot be opened."""


def _build_fernet() -> Fernet | None:
    source = (get_settings().credential_encryption_key or "").strip()
    if not source:
        return None
    # Any operator-chosen secret is stretched into a valid Fernet key.
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def is_sealed(value: str | None) -> bool:
    return bool(value) and value.startswith(_SEALED_PREFIX)


def seal_credential(value: str | None) -> str | None:
    if not value or is_sealed(value):
        return value
    fernet = _build_fernet()
    if fernet is None:
        return value
    token = fernet.encrypt(value.encode("utf-8"))
    return _SEALED_PREFIX + str(token.decode("utf-8"))


def open_credential(value: str | None) -> str | None:
    if not is_sealed(value):
        return value
    fernet = _build_fernet()
    if fernet is None:
        raise CredentialSealError("CREDENTIAL_ENCRYPTION_KEY is required to read sealed credentials")
    try:
        return fernet.decrypt(value[len(_SEALED_PREFIX):].encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise CredentialSealError("sealed credential could not be decrypted") from exc
