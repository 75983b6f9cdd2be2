"""
Structured Logging

One JSON object per line, shared by the API process and the Celery workers.

Every record carries the correlation id of the request or task that produced
it. Inside a dispatch attempt the worker also binds ``message_id`` and
``attempt``, so a message can be followed from admission through every
retry with a single filter. Credential-like keys in ``extra_data`` are
redacted before the record is built.
"""
import logging
import json
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
dispatch_context_var: ContextVar[dict[str, Any]] = ContextVar("dispatch_context", default={})

# substrings of keys whose values never reach a log sink
_SENSITIVE_KEYS = ("token", "secret", "password", "authorization", "credentials", "api_key")
_REDACTED = "***"

# third-party loggers that are noisy at INFO
_QUIET_LOGGERS = {
    # logs full request URLs; the Telegram URL carries the bot token
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
}

_service_name = "api"


def redact(data: Any) -> Any:
    """Return a copy of ``data`` with sensitive keys masked (recursive)"""
    if isinstance(data, dict):
        return {
            k: _REDACTED if any(s in str(k).lower() for s in _SENSITIVE_KEYS) else redact(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(v) for v in data]
    return data


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": _service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        entry.update(dispatch_context_var.get())

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """
    Logger whose level methods accept ``extra_data={...}``.

    ``extra_data`` lands under ``"extra"`` in the JSON line, redacted.
    """

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, extra_data: dict[str, Any] | None = None):
        if extra_data:
            extra = dict(extra or {})
            extra["extra_data"] = redact(extra_data)
        super()._log(level, msg, args, exc_info=exc_info, extra=extra,
                     stack_info=stack_info, stacklevel=stacklevel + 1)


logging.setLoggerClass(StructuredLogger)


class ContextFilter(logging.Filter):
    """Expose correlation id and message id to the plain-text format"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.message_id = dispatch_context_var.get().get("message_id", "-")
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "messagejs-core",
    service: str = "api",
) -> None:
    """
    Configure the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines for production, plain text for local runs
        app_name: prefix for the plain-text format
        service: "api" or "worker", written into every JSON line
    """
    global _service_name
    _service_name = service

    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            f"%(asctime)s | {app_name}:{service} | %(levelname)-8s | %(name)s "
            "| [%(correlation_id)s %(message_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation id for the current context; generates one when empty"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation id, generating and storing one if not set"""
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


@contextmanager
def bind_dispatch_context(**fields: Any) -> Iterator[None]:
    """Attach dispatch fields (message_id, attempt) to every record in the block"""
    token = dispatch_context_var.set({**dispatch_context_var.get(), **fields})
    try:
        yield
    finally:
        dispatch_context_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore
