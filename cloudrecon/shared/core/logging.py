import logging
import re
import sys
from typing import Any, cast

import structlog

from cloudrecon.shared.core.config import get_settings

_SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "client_secret",
    "access_token",
    "refresh_token",
    "smtp_password",
    "temporary_password",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_key")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    return key_norm.endswith(_SENSITIVE_SUFFIXES)


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact secrets from log events.
    Credentials and temporary passwords must never reach stderr or log sinks.
    """

    def redact(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact(v))
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [redact(item) for item in data]
        return data

    redacted = redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def email_masker(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask email addresses in free-text error fields (recipients stay visible)."""
    error = event_dict.get("error")
    if isinstance(error, str):
        event_dict["error"] = _EMAIL_RE.sub("[EMAIL_REDACTED]", error)
    return event_dict


def setup_logging(verbose: bool = False) -> None:
    settings = get_settings()

    # 1. Common processors
    base_processors = [
        structlog.contextvars.merge_contextvars,  # run_id / command binding
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_redactor,
        email_masker,
    ]

    # 2. Renderer: console for humans, JSON for pipelines
    if settings.DEBUG or verbose:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
    min_level = logging.DEBUG if verbose else logging.INFO

    # 3. stdout is reserved for command output
    structlog.configure(
        processors=cast(Any, processors),
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=not settings.TESTING,
    )

    # 4. Azure SDK / httpx loggers go through stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level if verbose else logging.WARNING,
    )
    logging.getLogger("azure").setLevel(logging.DEBUG if verbose else logging.WARNING)
