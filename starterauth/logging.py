from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# fields that never reach the log in any form
_DROPPED_KEYS = frozenset({"password", "new_password", "current_password", "password_hash"})
# fields kept only as a short fingerprint
_MASKED_KEYS = ("token", "secret", "authorization", "api_key", "cookie")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id used by every log line of the current request.

    A missing or oversized client header is replaced with a fresh UUID.
    """
    if not correlation_id or len(correlation_id) > 128:
        correlation_id = uuid.uuid4().hex
    request_id_var.set(correlation_id)
    return correlation_id


def mask_email(value: str) -> str:
    """``jane.doe@example.com`` -> ``j***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _mask_token(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***{value[-2:]}"


_LINK_SECRET = re.compile(r"([?&](?:token|code)=)([^&#]*)")


def mask_link(url: str) -> str:
    """Mask the value of ``token``/``code`` query parameters in ``url``."""
    return _LINK_SECRET.sub(lambda m: m.group(1) + _mask_token(m.group(2)), url)


def _attach_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _scrub_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in list(event_dict):
        if key == "event":
            continue
        lower_key = key.lower()
        value = event_dict[key]
        if lower_key in _DROPPED_KEYS:
            event_dict.pop(key)
        elif not isinstance(value, str):
            continue
        elif "email" in lower_key or lower_key == "to":
            event_dict[key] = mask_email(value)
        elif lower_key in ("link", "url"):
            event_dict[key] = mask_link(value)
        elif any(marker in lower_key for marker in _MASKED_KEYS):
            event_dict[key] = _mask_token(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    """Install the structlog pipeline.

    Production writes one JSON object per line; ``dev_mode`` or
    ``json_output=False`` switches to the coloured console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _attach_request_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_ERROR_SCRUBBERS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}",
        r"(?i)(postgres(?:ql)?|redis)://\S+",
        r"(?i)(password|secret|token|api.?key)\s*[:=]\s*\S+",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
    )
]

_SENSITIVE_BODY_KEYS: Iterable[str] = (
    "password", "token", "secret", "authorization", "api_key", "apikey", "credential",
)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip statements, connection URLs, credentials and paths from exception text."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _ERROR_SCRUBBERS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 500 else error[:497] + "..."


def sanitize_request_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Return a copy of a decoded request body that is safe to log.

    Credential-like keys become ``[REDACTED]`` and email addresses are masked,
    at any nesting level.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        clean = {}
        for key, value in data.items():
            lower_key = str(key).lower().replace("-", "_")
            if any(marker in lower_key for marker in _SENSITIVE_BODY_KEYS):
                clean[key] = "[REDACTED]"
            elif "email" in lower_key and isinstance(value, str):
                clean[key] = mask_email(value)
            else:
                clean[key] = sanitize_request_data(value, depth=depth + 1, max_depth=max_depth)
        return clean
    if isinstance(data, list):
        return [sanitize_request_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
