"""Root logger setup: readable lines in debug, one JSON object per line otherwise.

Sync code attaches ``device_id``, ``session_id`` and ``queue_id`` through
``extra=``; the JSON formatter carries them through so log search can follow
one terminal or one sync session.
"""

import json
import logging
import sys

from possync.core.config import settings

CONTEXT_FIELDS = ("device_id", "session_id", "queue_id", "request_id", "audit_action", "entity_id", "user_id")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging() -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.debug:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    else:
        handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
