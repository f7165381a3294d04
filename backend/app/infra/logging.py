import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
ADDRESS_RE = re.compile(
    r"\b\d{1,6}\s+[A-Za-z0-9.\-\s]+(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|"
    r"Lane|Ln|Way|Court|Ct|Place|Pl|Terrace|Ter|Parkway|Pkwy)\b",
    re.IGNORECASE,
)
BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+")
STRIPE_SIGNATURE_RE = re.compile(r"\bt=\d+,v1=[0-9a-f]+\S*")

# Household data a parent hands over at checkout never belongs in logs.
PII_KEYS = {"email", "parent_email", "phone", "address", "special_requests"}
SENSITIVE_KEYS = PII_KEYS | {
    "authorization",
    "signature",
    "stripe_signature",
    "secret",
    "identity_proxy_secret",
    "token",
}
LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_LOG_RECORD_ATTRS = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


def redact_pii(value: str) -> str:
    # Signature timestamps look like phone numbers, so they go first.
    value = STRIPE_SIGNATURE_RE.sub("[REDACTED_SIGNATURE]", value)
    value = BEARER_RE.sub("Bearer [REDACTED_TOKEN]", value)
    value = EMAIL_RE.sub("[REDACTED_EMAIL]", value)
    value = PHONE_RE.sub("[REDACTED_PHONE]", value)
    value = ADDRESS_RE.sub("[REDACTED_ADDRESS]", value)
    return value


def _sanitize_value(value: Any, key: str | None = None) -> Any:
    if key and key.lower() in SENSITIVE_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item) for item in value]
    if isinstance(value, dict):
        return {item_key: _sanitize_value(item_value, item_key) for item_key, item_value in value.items()}
    return value


def update_log_context(**kwargs: Any) -> dict[str, Any]:
    current = LOG_CONTEXT.get({})
    merged = {**current, **{key: value for key, value in kwargs.items() if value is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


def _extract_extra(record: logging.LogRecord) -> dict[str, Any]:
    structured = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _LOG_RECORD_ATTRS and not key.startswith("_")
    }
    nested = structured.pop("extra", None)
    if isinstance(nested, dict):
        structured.update(nested)
    return structured


class RedactingJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - concise formatter
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": redact_pii(str(record.getMessage())),
            "logger": record.name,
        }
        context = LOG_CONTEXT.get({})
        if context:
            payload.update(_sanitize_value(context))
        extra = _extract_extra(record)
        if extra:
            payload.update(_sanitize_value(extra))
        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
