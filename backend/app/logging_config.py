import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

LOGGER_NAME = "auditdesk"

_LOGGER: Optional[logging.Logger] = None


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, then the event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
        }
        fields = getattr(record, "fields", None)
        if fields is None:
            payload["event"] = "log"
            payload["message"] = record.getMessage()
        else:
            payload.update(fields)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_logger() -> logging.Logger:
    global _LOGGER
    if _LOGGER is not None:
        return _LOGGER

    logger = logging.getLogger(LOGGER_NAME)
    logger.propagate = False  # uvicorn configures root
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name("json_stream")
        handler.setFormatter(JsonLineFormatter())
        logger.addHandler(handler)
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level, logging.INFO))

    _LOGGER = logger
    return logger


def log_event(event: str, level: int = logging.INFO, **fields) -> None:
    get_logger().log(level, event, extra={"fields": {"event": event, **fields}})
