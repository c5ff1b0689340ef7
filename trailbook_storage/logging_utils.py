"""
JSON log output for storage components.

Every record becomes one JSON line carrying the time, level, logger name
and message plus whatever context was attached through ``extra`` (for
example ``guest_id`` and ``user_id`` during a migration), so a single
guest's run can be pulled out of aggregated logs.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Fields every LogRecord has; anything beyond these arrived via ``extra``.
_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", (), None))
) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """Render records as single-line JSON objects.

    Keys: ``timestamp`` (UTC, ISO 8601), ``level``, ``logger``, ``message``,
    ``exception`` when there is one, then the record's context fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, _jsonable(value))
            for key, value in vars(record).items()
            if key not in _RECORD_FIELDS and not key.startswith("_")
        )
        return json.dumps(entry, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
) -> logging.Logger:
    """Send ``logger_name`` (the root logger if None) to stdout as JSON.

    Calling it again replaces the handler rather than adding a second one.
    """
    target = logging.getLogger(logger_name)
    target.handlers.clear()

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(StructuredJsonFormatter())
    target.addHandler(stream)
    target.setLevel(level)
    return target


def get_storage_logger(name: str) -> logging.Logger:
    """Logger named ``trailbook_storage.<name>``, e.g. ``get_storage_logger("cosmos")``."""
    return logging.getLogger(f"trailbook_storage.{name}")


class StorageLoggerAdapter(logging.LoggerAdapter):
    """Attaches fixed context (guest_id, user_id, ...) to every record it emits."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs
