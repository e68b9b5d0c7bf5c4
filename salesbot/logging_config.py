"""JSON logging configuration for the sales bot.

One line per record. Records that carry a conversation id (via SessionLogger or
``extra={"context": {"session_id": ...}}``) get it as a top-level ``session_id``
key so a whole conversation can be pulled out of the log stream with one filter.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

HOISTED_KEYS = ("session_id", "message_id")


class JSONFormatter(logging.Formatter):
    def __init__(self, service: str = "salesbot"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        for key in HOISTED_KEYS:
            if key in context:
                entry[key] = context.pop(key)
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", service: str = "salesbot") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service))
    root.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"salesbot.{name}")


class SessionLogger(logging.LoggerAdapter):
    """Tags every record of a turn with the conversation id.

    Per-call fields go in ``context=`` and are merged over the adapter's own.
    """

    def __init__(self, logger: logging.Logger, session_id: str, **extra: Any):
        super().__init__(logger, {"session_id": session_id, **extra})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs
