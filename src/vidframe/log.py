"""Stdout logging: JSON lines in production, plain text during development."""
import json
import logging
import sys
from datetime import datetime, timezone

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


class PlainFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )


def configure(is_prod: bool = False) -> None:
    """Replace root handlers with a single stdout handler.

    Production logs at INFO as JSON; otherwise everything down to DEBUG is
    printed in a readable format. uvicorn's loggers are routed through the
    same handler.
    """
    level = logging.INFO if is_prod else logging.DEBUG
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if is_prod else PlainFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in UVICORN_LOGGERS:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True

    # asyncio's debug chatter about slow callbacks is noise here
    logging.getLogger("asyncio").setLevel(logging.WARNING)
