"""One JSON object per log line, for the API and the Celery worker alike."""
import json
import logging
import logging.config
from datetime import datetime, timezone

# Context passed through ``extra=`` that is promoted to top-level fields.
_EXTRA_KEYS = (
    "request_id",
    "actor_id",
    "tenant_id",
    "subscription_id",
    "payment_id",
    "path",
    "method",
    "status",
    "duration_ms",
)

# Per-request INFO lines from the gateway client stack are dropped.
_QUIET_LOGGERS = ("httpx", "httpcore")


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is None:
                continue
            payload[key] = str(value) if key.endswith("_id") else value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonLogFormatter}},
            "handlers": {
                "default": {"class": "logging.StreamHandler", "formatter": "json"}
            },
            "loggers": {
                name: {"level": "WARNING"} for name in _QUIET_LOGGERS
            },
            "root": {"handlers": ["default"], "level": level},
        }
    )
