from __future__ import annotations

import json
import logging
from logging.config import dictConfig
from traceback import format_exception

from .config import LogFormat, Settings

MAX_STACK_CHARS = 4000


class JsonFormatter(logging.Formatter):
    """Structured JSON formatter for hosted logs."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: dict[str, object] = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "message": record.getMessage(),
        }

        # Bulk dispatch context when the caller passes it via extra=
        for field in ("batch_id", "item_id", "document_id", "provider"):
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            stack = "".join(format_exception(*record.exc_info))
            err_obj: dict[str, object] = {}
            if record.exc_info[0]:
                err_obj["type"] = record.exc_info[0].__name__
            if record.exc_info[1]:
                err_obj["message"] = str(record.exc_info[1])
            err_obj["stack"] = stack[:MAX_STACK_CHARS] + (
                "...(truncated)" if len(stack) > MAX_STACK_CHARS else ""
            )
            payload["error"] = err_obj

        return json.dumps(payload, ensure_ascii=False)


def setup_logging(settings: Settings) -> None:
    formatter_name = "json" if settings.log_format == LogFormat.JSON else "plain"
    level = settings.log_level.upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "plain": {
                    "format": "%(asctime)s %(levelname)-5s [pid:%(process)d] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                },
                "json": {
                    "()": JsonFormatter,
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                },
            },
            "handlers": {
                "stream": {
                    "class": "logging.StreamHandler",
                    "level": level,
                    "formatter": formatter_name,
                }
            },
            "root": {"level": level, "handlers": ["stream"]},
            "loggers": {
                # botocore is chatty at DEBUG
                "botocore": {"level": "WARNING", "handlers": [], "propagate": True},
                "httpx": {"level": "WARNING", "handlers": [], "propagate": True},
                "uvicorn": {"level": "INFO", "handlers": [], "propagate": True},
            },
        }
    )
