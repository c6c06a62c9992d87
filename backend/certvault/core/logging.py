"""Structured logging for CertVault.

Every log call accepts keyword fields (``logger.info("CSR generated",
hostname=..., key_size=...)``). Fields are rendered as JSON keys or as
``key=value`` pairs, and anything that looks like a secret is redacted
before it is written: password and key fields by name, and PEM private
key blocks wherever they appear in a string value.

Lines logged while a request or an engine operation is running carry the
request ID and operation name from context variables.
"""

import json
import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REDACTED = "[REDACTED]"
REQUEST_ID_HEADER = "X-Request-ID"

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)

# Substrings of field names whose values are never logged
SENSITIVE_FIELDS = (
    "password", "passphrase", "secret", "token", "authorization",
    "encryption_key", "master_key", "wrapping_key", "private_key",
    "key_pem", "plaintext",
)

_PRIVATE_KEY_BLOCK = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?(-----END [A-Z ]*PRIVATE KEY-----|$)",
    re.DOTALL,
)


def _is_sensitive(name: str) -> bool:
    name = name.lower()
    return any(s in name for s in SENSITIVE_FIELDS)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return mask_sensitive(value)
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    if isinstance(value, str) and "PRIVATE KEY" in value:
        return _PRIVATE_KEY_BLOCK.sub(REDACTED, value)
    return value


def mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with secret values replaced."""
    return {
        key: REDACTED if _is_sensitive(key) else _scrub(value)
        for key, value in data.items()
    }


def _context_fields() -> dict[str, str]:
    fields = {}
    if request_id := request_id_var.get():
        fields["request_id"] = request_id
    if operation := operation_var.get():
        fields["operation"] = operation
    return fields


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return mask_sensitive(getattr(record, "extra_fields", None) or {})


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _scrub(record.getMessage()),
            **_context_fields(),
            **_record_fields(record),
        }
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.module}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Colored single-line format for a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = self.LEVEL_COLORS.get(record.levelno, "")
        parts = [f"{color}{stamp} {record.levelname:<7}{self.RESET}", record.name]

        context = _context_fields()
        if "request_id" in context:
            parts.append(f"req={context['request_id'][:8]}")
        if "operation" in context:
            parts.append(f"op={context['operation']}")

        line = " ".join(parts) + f": {_scrub(record.getMessage())}"
        fields = _record_fields(record)
        if fields:
            line += " (" + ", ".join(f"{k}={v}" for k, v in fields.items()) + ")"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.Logger):
    """Logger whose methods take arbitrary keyword fields."""

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, **fields):
        if fields:
            extra = {**(extra or {}), "extra_fields": fields}
        super()._log(level, msg, args, exc_info=exc_info, extra=extra,
                     stack_info=stack_info, stacklevel=stacklevel + 1)


def get_logger(name: str) -> StructuredLogger:
    logging.setLoggerClass(StructuredLogger)
    try:
        return logging.getLogger(name)
    finally:
        logging.setLoggerClass(logging.Logger)


def setup_logging(json_output: bool = False, level: str = "INFO"):
    """Install a single stdout handler on the root logger.

    Args:
        json_output: Emit JSON lines instead of the terminal format
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_output else HumanFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for noisy in ("uvicorn.access", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID and log its outcome."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        logger = get_logger("certvault.http")
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=_elapsed_ms(start),
                exc_info=True,
            )
            raise
        else:
            logger.info(
                f"{request.method} {request.url.path}",
                status_code=response.status_code,
                duration_ms=_elapsed_ms(start),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            request_id_var.reset(token)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


def log_operation(operation: str):
    """Decorate an async engine method so it logs its outcome and timing.

    ``operation_var`` holds the operation name for the duration of the
    call, so lines logged by the method itself are tagged too. Failures
    are logged at WARNING and re-raised unchanged.
    """
    def decorator(func: Callable[..., Awaitable[Any]]):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            token = operation_var.set(operation)
            start = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    f"{operation} failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    duration_ms=_elapsed_ms(start),
                )
                raise
            else:
                logger.info(f"{operation} completed", duration_ms=_elapsed_ms(start))
                return result
            finally:
                operation_var.reset(token)

        return wrapper

    return decorator
