import json
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from groupgate.core.config import settings

# Chatty third-party loggers kept at WARNING unless LOG_LEVEL=DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "aiogram.event", "celery.app.trace")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; `extra={...}` keys listed in EXTRA_FIELDS are lifted to the top level."""

    EXTRA_FIELDS = (
        "user_id", "group_id", "chat_id", "provider", "payment_id",
        "action", "request_id", "path", "method", "status_code",
        "latency_ms", "error", "breaker_name", "old_state", "new_state",
    )

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "env": settings.app_env,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in self.EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Decimal amounts, datetimes and enums fall back to str()
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(service: str = "api") -> None:
    """Install JSON logging on the root logger; called once per process (api, bot, worker)."""
    formatter = JsonFormatter(service)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    handlers: list[logging.Handler] = [console]
    if settings.log_file:
        rotating = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        rotating.setFormatter(formatter)
        handlers.append(rotating)

    level = settings.log_level.upper()
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = handlers
    if level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
