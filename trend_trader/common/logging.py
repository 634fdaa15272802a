from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit, urlunsplit

URL_TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)

# Applied in order after URLs have lost their query strings.
REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)([?&](?:api[-_]?key)=)([^&#\s]+)"), r"\1***"),
    (re.compile(r"(?i)(api[-_]?key\s*[:=]\s*)([^\s,;\"'&]+)"), r"\1***"),
    (re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"), r"\1***"),
    (re.compile(r"(?i)((?:wallet[-_]?)?private[-_]?key\s*[:=]\s*)(\[[^\]]*\]|[^\s,;\"'&]+)"), r"\1***"),
)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "exception": logging.ERROR,
}


def _strip_url_query(token: str) -> str:
    body = token.rstrip(".,);]}")
    trailing = token[len(body):]

    parsed = urlsplit(body)
    if parsed.scheme.lower() in {"http", "https"} and parsed.netloc:
        body = urlunsplit((parsed.scheme, parsed.netloc, parsed.path, "", ""))
    return f"{body}{trailing}"


def sanitize_text(value: str) -> str:
    masked = URL_TOKEN_RE.sub(lambda match: _strip_url_query(match.group(0)), value)
    for pattern, replacement in REDACTION_RULES:
        masked = pattern.sub(replacement, masked)
    return masked


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {key: sanitize_value(child) for key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    extra = {key: sanitize_value(value) for key, value in fields.items()}
    extra["event"] = sanitize_value(event)
    logger.log(
        _LEVELS.get(level, logging.INFO),
        sanitize_text(message),
        exc_info=level == "exception",
        extra=extra,
    )
