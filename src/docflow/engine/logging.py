"""Structured logging configuration.

Standard library logging with one JSON object per line. Workflow identifiers
passed through ``extra`` (organization, instance, stage and task ids) are
lifted to top-level keys so a single instance can be followed across
components; everything else lands under ``extra``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

_RESERVED_LOG_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

CORRELATION_KEYS: tuple[str, ...] = (
    "organization_id",
    "instance_id",
    "stage_instance_id",
    "task_id",
)


class JsonFormatter(logging.Formatter):
    """Render a record as a JSON line; non-JSON values (datetimes, enums) via str()."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        for key in CORRELATION_KEYS:
            if extra.get(key) is not None:
                payload[key] = extra.pop(key)
            else:
                extra.pop(key, None)
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: IO[str] | None = None) -> None:
    """Send every engine log line to ``stream`` (stdout by default) as JSON.

    Re-configuring replaces the previous handlers.
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    # Per-append audit lines are too chatty even for DEBUG runs.
    logging.getLogger("docflow.engine.workflow.audit").setLevel(max(root.level, logging.INFO))
