"""
JSON-lines logging on top of the stdlib ``logging`` module.

Every record becomes one JSON object on stdout:

    {"level": "info", "msg": "message received", "request_id": "...", ...}

``msg`` is stable per call site so log-based alerts can match on it; anything
variable goes into extra fields passed through :func:`log_event`.
"""

import json
import logging
import re
import sys
import threading
from collections import Counter
from typing import Any, Dict, Mapping

_TOKEN_PATTERNS = (
    re.compile(r"(x-access-token:)[^@\s]+", re.IGNORECASE),
    re.compile(r"(Bearer\s+)[A-Za-z0-9_\-.]+", re.IGNORECASE),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9_]+\b"),
    re.compile(r"\bgithub_pat_[A-Za-z0-9_]+\b"),
)

# Values a request handed us that must never be printed, whatever their shape.
# Reference-counted: a value stays masked until every registration is undone.
_sensitive_values: Counter = Counter()
_sensitive_lock = threading.Lock()


def register_sensitive_values(*values: str) -> None:
    with _sensitive_lock:
        for v in values:
            if v:
                _sensitive_values[v] += 1


def unregister_sensitive_values(*values: str) -> None:
    with _sensitive_lock:
        for v in values:
            if not v or v not in _sensitive_values:
                continue
            _sensitive_values[v] -= 1
            if _sensitive_values[v] <= 0:
                del _sensitive_values[v]


def registered_sensitive_values() -> list:
    with _sensitive_lock:
        # longest first so a value containing another is masked whole
        return sorted(_sensitive_values, key=len, reverse=True)


def redact_secrets(text: str) -> str:
    redacted = text
    for value in registered_sensitive_values():
        redacted = redacted.replace(value, "[REDACTED]")
    for pattern in _TOKEN_PATTERNS:
        if pattern.groups > 0:
            redacted = pattern.sub(r"\1[REDACTED]", redacted)
        else:
            redacted = pattern.sub("[REDACTED]", redacted)
    return redacted


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        return redact_secrets(value)
    if isinstance(value, BaseException):
        return redact_secrets(str(value))
    return value


def render(level: str, fields: Mapping[str, Any]) -> str:
    """Render one log line. Pure: no logger state is read or written."""
    out: Dict[str, Any] = {"level": level}
    for k, v in fields.items():
        if k == "level" or v is None:
            continue
        out[k] = _clean(v)
    return json.dumps(out, default=lambda o: redact_secrets(str(o)), ensure_ascii=False)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: Dict[str, Any] = {"msg": record.getMessage(), "logger": record.name}
        fields.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            fields["exc"] = self.formatException(record.exc_info)
        return render(record.levelname.lower(), fields)


def log_event(logger: logging.Logger, level: int, msg: str, exc_info: bool = False, **fields: Any) -> None:
    logger.log(level, msg, exc_info=exc_info, extra={"fields": fields})


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON formatter on the root logger. Idempotent."""
    root = logging.getLogger()
    for h in root.handlers:
        if isinstance(h.formatter, JsonLineFormatter):
            root.setLevel(level)
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLineFormatter())
    root.addHandler(handler)
    root.setLevel(level)
