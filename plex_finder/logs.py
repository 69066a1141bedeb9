"""Logging setup with masking of Plex tokens."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_TOKEN_QUERY = re.compile(r"(X-Plex-Token=)[^&\s]+", re.IGNORECASE)
REDACTED = "***"


class SecretRedactingFilter(logging.Filter):
    """Replace configured secrets and ``X-Plex-Token`` query values in log messages."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets: List[str] = sorted({secret for secret in secrets if secret}, key=len, reverse=True)

    def redact(self, message: str) -> str:
        for secret in self._secrets:
            message = message.replace(secret, REDACTED)
        return _TOKEN_QUERY.sub(rf"\g<1>{REDACTED}", message)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def resolve_level(level: str) -> int:
    return _LEVELS.get(level.strip().lower(), logging.INFO)


def configure_logging(level: str = "info", secrets: Iterable[str] = ()) -> None:
    """Configure root logging and install the redaction filter on its handlers."""

    logging.basicConfig(
        level=resolve_level(level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    redactor = SecretRedactingFilter(secrets)
    for handler in root.handlers:
        for existing in [f for f in handler.filters if isinstance(f, SecretRedactingFilter)]:
            handler.removeFilter(existing)
        handler.addFilter(redactor)


__all__ = ["REDACTED", "SecretRedactingFilter", "configure_logging", "resolve_level"]
