import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict

from erp_engine.config import settings


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if hasattr(record, "request_id"):
            log_entry["request_id"] = record.request_id
        if hasattr(record, "user_id"):
            log_entry["user_id"] = record.user_id
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def build_logging_config(level: str, log_format: str) -> Dict[str, Any]:
    formatter = "json" if log_format == "json" else "standard"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {"()": JSONFormatter},
        },
        "handlers": {
            "console": {
                "level": level,
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "erp_engine": {"handlers": ["console"], "level": level, "propagate": False},
            "sqlalchemy.engine": {
                "handlers": ["console"],
                "level": "INFO" if settings.sql_echo else "WARNING",
                "propagate": False,
            },
            "uvicorn.access": {"handlers": ["console"], "level": "INFO", "propagate": False},
        },
        "root": {"handlers": ["console"], "level": "WARNING"},
    }


def setup_logging() -> None:
    logging.config.dictConfig(build_logging_config(settings.log_level.upper(), settings.log_format))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
