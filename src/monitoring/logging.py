"""Logging setup for the ingestion services.

Features:
- one stderr handler, so CLI stdout stays machine-readable
- JSON lines (``--json-logs``) or human-readable text
- job context (source_id/job_id/stage) carried on records via ``with_context``
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Record attributes rendered by both formatters, in this order
CONTEXT_FIELDS = ("source_id", "job_id", "stage")

# Short labels used by the text formatter
_TEXT_LABELS = {"source_id": "source", "job_id": "job", "stage": "stage"}


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {k: getattr(record, k) for k in CONTEXT_FIELDS if getattr(record, k, None)}


# ---------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_context(record),
        }

        payload = getattr(record, "payload", None)
        if isinstance(payload, dict):
            entry["payload"] = payload
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``<time> <LEVEL> <logger> [source=.. job=..] <message>``"""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} {record.levelname} {record.name}"

        ctx = _context(record)
        if ctx:
            tags = " ".join(f"{_TEXT_LABELS[k]}={v}" for k, v in ctx.items())
            line += f" [{tags}]"

        line += f" {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ---------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------


def setup_logging(level: str = "INFO", json_logs: bool = False) -> logging.Logger:
    """
    Install a single stderr handler on the root logger.

    Calling it again replaces the previous handler. Unknown level names
    fall back to INFO.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_logs else TextFormatter())
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root


# ---------------------------------------------------------------------
# Job context
# ---------------------------------------------------------------------


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter whose context is merged under any per-call ``extra``."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def with_context(
    logger: logging.Logger,
    *,
    source_id: str | None = None,
    job_id: str | None = None,
    stage: str | None = None,
) -> ContextAdapter:
    """Wrap ``logger`` so every record carries the given job context."""
    fields = {"source_id": source_id, "job_id": job_id, "stage": stage}
    return ContextAdapter(logger, {k: v for k, v in fields.items() if v})
