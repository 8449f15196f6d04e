"""
Structured logging for the voice pipeline.

Every record carries the request correlation id plus whatever job context
is bound with `log_context` (job id, attempt, worker request id). The job
runner binds the job it is driving, the audio worker re-binds the caller's
context on its own thread, so one job's lines can be pulled out of the
stream by `job_id` alone.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Iterator, Mapping, Optional

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
log_context_var: ContextVar[Mapping[str, Any]] = ContextVar("log_context", default={})

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "multipart", "python_multipart")


class JSONFormatter(logging.Formatter):
    """One JSON object per line: base fields, bound context, then call-site extras."""

    def __init__(self, service_name: str = "voiceclone"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or correlation_id_var.get(),
        }
        context = getattr(record, "context", None)
        payload.update(log_context_var.get() if context is None else context)
        payload.update(getattr(record, "extra", {}))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload["source"] = f"{record.module}:{record.lineno}"

        return json.dumps(payload, default=str)


class ContextFilter(logging.Filter):
    """Copies the correlation id and bound job context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        context = dict(log_context_var.get())
        record.context = context
        record.job_id = context.get("job_id", "-")
        return True


class StructuredLogger(logging.Logger):
    """Keeps call-site `extra` fields together under `record.extra`."""

    def _log(self, level, msg, args, exc_info=None, extra=None, **kwargs):
        super()._log(level, msg, args, exc_info=exc_info, extra={"extra": extra or {}}, **kwargs)


logging.setLoggerClass(StructuredLogger)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "voiceclone",
) -> None:
    """
    Route all logging to stdout.

    JSON lines in production; in development a plain line that still shows
    which job a message belongs to.
    """
    level_no = getattr(logging, level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level_no)
    handler.addFilter(ContextFilter())
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s [job=%(job_id)s] %(name)s: %(message)s")
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level_no)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    return correlation_id_var.get()


def current_log_context() -> Dict[str, Any]:
    """Fields currently bound with `log_context`."""
    return dict(log_context_var.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Bind fields to every record logged inside the block.

    Nested blocks add to (and may override) the outer fields; the outer
    binding is restored on exit.

        with log_context(job_id=job.id, attempt=job.attempt):
            logger.info("Combining recordings")
    """
    merged = {**log_context_var.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = log_context_var.set(merged)
    try:
        yield merged
    finally:
        log_context_var.reset(token)


def log_execution_time(logger: logging.Logger, operation: Optional[str] = None):
    """Log how long a coroutine took, tagged with the operation name."""

    def decorator(func):
        name = operation or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                logger.warning(
                    f"{name} failed",
                    extra={
                        "operation": name,
                        "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                        "error": str(exc),
                    },
                )
                raise
            logger.info(
                f"{name} finished",
                extra={
                    "operation": name,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            return result

        return wrapper

    return decorator
