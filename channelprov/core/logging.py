from __future__ import annotations

import logging
import re

from channelprov.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Bearer headers and access_token query params must never reach log sinks.
_TOKEN_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._|\-]+"),
    re.compile(r"((?:access_token|input_token|client_secret)=)[^&\s]+"),
)
_configured = False


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in _TOKEN_PATTERNS:
            redacted = pattern.sub(r"\1[REDACTED]", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging() -> None:
    # Idempotent so app factories and scripts can both call it.
    global _configured
    if _configured:
        return
    settings = get_settings()
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(RedactingFilter())
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    # httpx logs full request URLs, including query-string tokens, at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
