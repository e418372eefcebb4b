"""JSON logging for the Orange bot.

Every record is one JSON line. The ids that tie a line to a conversation
(MAX chat, MAX user, amoCRM deal) are lifted out of ``context`` into
top-level fields so log search can filter on them directly.
"""

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

SERVICE_NAME = "orange-bot"
MSK = timezone(timedelta(hours=3))

# lead_id и deal_id это одна и та же сделка amoCRM
CORRELATION_KEYS = {
    "chat_id": "chat_id",
    "user_id": "user_id",
    "lead_id": "deal_id",
    "deal_id": "deal_id",
}


def split_context(context: Optional[dict]) -> tuple[dict[str, str], dict[str, Any]]:
    """Correlation ids as strings, plus whatever context is left."""
    ids: dict[str, str] = {}
    rest: dict[str, Any] = {}
    for key, value in (context or {}).items():
        field = CORRELATION_KEYS.get(key)
        if field is None:
            rest[key] = value
        elif value is not None and value != "":
            ids[field] = str(value)
    return ids, rest


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, MSK).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ids, rest = split_context(getattr(record, "context", None))
        log_data.update(ids)
        if rest:
            log_data["context"] = rest

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure JSON logging for the bot poller and the web server."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    # httpx пишет каждый long-poll запрос к MAX
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"orange.{name}")


class ChatLoggerAdapter(logging.LoggerAdapter):
    """Stamps chat_id/user_id (and deal_id once known) on every record of one conversation."""

    def with_deal(self, deal_id: Optional[int]) -> "ChatLoggerAdapter":
        return ChatLoggerAdapter(self.logger, {**self.extra, "deal_id": deal_id})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs
