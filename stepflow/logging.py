"""structlog setup shared by the API, the engine and the scheduler.

Every entry carries the request correlation id when one is bound, and the
engine binds ``run_id``/``agent_id`` through ``structlog.contextvars`` while a
run is in flight, so one grep follows a run from the HTTP request to its
nodes. Output is JSON unless ``LOG_JSON=false`` or ``LOG_DEV_MODE=true``.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from collections import Counter
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


_MASKED_KEY_PARTS = ("password", "secret", "token", "api_key", "authorization")
_EMAIL_KEY_PARTS = ("email", "recipient")
_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]{1,2})[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+)")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _mask_addresses(value: Any) -> Any:
    if isinstance(value, str):
        return _EMAIL_RE.sub(r"\1***@\2", value)
    if isinstance(value, (list, tuple)):
        return [_mask_addresses(item) for item in value]
    return value


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials outright and reduce email addresses to ``ab***@domain``."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(part in lowered for part in _MASKED_KEY_PARTS):
            if isinstance(value, str):
                event_dict[key] = _mask(value)
        elif any(part in lowered for part in _EMAIL_KEY_PARTS):
            event_dict[key] = _mask_addresses(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog; called once on import from the environment."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_workflow_trace(trace: Iterable[Mapping[str, Any]], logger: Optional[Any] = None) -> None:
    """Emit one ``workflow_trace`` entry: per-node rows plus a count by status."""
    rows = list(trace)
    counts = Counter(str(row.get("status")) for row in rows)
    log = logger or get_logger("stepflow.workflow")
    log.info("workflow_trace", trace=rows, status_counts=dict(counts))


_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/[^\s'\"]+"),
    re.compile(r"(?i)[a-z]:\\[^\s'\"]+"),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
    re.compile(r"(?i)bearer\s+[a-z0-9._-]+"),
]
_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub paths, credentials and traceback headers from a 5xx message.

    Node errors can quote whatever a script or remote endpoint said, so the
    API passes server-side messages through here before returning them.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error
