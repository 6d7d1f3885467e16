from __future__ import annotations
import logging
import os
import sys
from datetime import datetime, timezone

import orjson

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "false").lower() in ("1", "true", "yes")

_PLAIN = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# attributes every LogRecord has; anything else came in through extra=
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for k, v in vars(record).items():
            if k not in _RESERVED and not k.startswith("_"):
                entry[k] = v
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode()


def configure_logging(level: str | None = None,
                      json_enabled: bool | None = None) -> None:
    """Install a single stderr handler on the ``stoicaf`` logger tree."""
    json_enabled = LOG_JSON if json_enabled is None else json_enabled
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_enabled
                         else logging.Formatter(_PLAIN))

    root = logging.getLogger("stoicaf")
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(level or LOG_LEVEL)
    root.propagate = False
