"""JSON log lines for engine runs.

Every engine module logs through the standard library with run metadata passed
as ``extra=``. The formatter emits one JSON object per record: ``run_id`` sits
at the top level so the lines of one run can be grepped or filtered together,
and the remaining metadata (``node_id``, ``event_type``, ``level_index`` ...)
goes under ``"extra"``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_RECORD_FIELDS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

_NOISY_LOGGERS = ("asyncio",)


def _run_metadata(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        metadata = _run_metadata(record)
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if "run_id" in metadata:
            line["run_id"] = metadata.pop("run_id")
        if metadata:
            line["extra"] = metadata
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)

        # Step outputs may reach the log through `extra`; never fail on them.
        return json.dumps(line, ensure_ascii=False, default=repr)


def configure_logging(level: str, *, stream: IO[str] | None = None) -> None:
    """Send JSON lines for every logger to `stream` (stdout by default)."""

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))
