from __future__ import annotations

import json
import logging
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_FIELDS = frozenset(
    vars(LogRecord("redeem", logging.INFO, __file__, 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx")


class InterceptHandler(logging.Handler):
    """Route stdlib log records (uvicorn, sqlalchemy, httpx) through Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = str(record.msg)

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STDLIB_RECORD_FIELDS
        }
        context.setdefault("stdlib_logger", record.name)

        escaped = message.replace("{", "{{").replace("}", "}}")
        logger.bind(**context).opt(depth=6, exception=record.exc_info).log(level, escaped)


def _render_record(message: "logger.Message", metadata: Dict[str, Any]) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    payload.update(record["extra"])
    print(json.dumps(payload, default=str))


def configure_logging(*, service_name: str, environment: str, version: str) -> None:
    """Emit Loguru and stdlib logs as one JSON line per record."""

    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.remove()
    logger.add(lambda message: _render_record(message, metadata), backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
