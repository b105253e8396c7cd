import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from marketplace.core.config import settings

# Provider SDKs log request bodies at INFO/DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "stripe", "urllib3")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; the message is a snake_case event name."""

    EXTRA_FIELDS = (
        "transaction_id", "user_id", "buyer_id", "seller_id", "listing_id",
        "subscription_id", "plan", "gateway", "operation", "amount", "currency",
        "old_state", "new_state", "order_id", "payment_id", "refund_id",
        "attempt", "delay_seconds", "issue_id", "error", "breaker_name",
        "released", "skipped", "failed", "expired", "event",
        "hold_period_days", "authorization_window_days",
    )

    def __init__(self, env: str = "local") -> None:
        super().__init__()
        self.env = env

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "env": self.env,
            "message": record.getMessage(),
        }
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    """Install the JSON handlers on the root logger. Safe to call from both the API and Celery."""
    formatter = JsonFormatter(env=settings.app_env)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream]
    if settings.log_file:
        rotating = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        rotating.setFormatter(formatter)
        handlers.append(rotating)

    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    root.handlers = handlers
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
