"""Logging configuration for the instrumenter.

LOGS vs TRANSACTIONS
----------------------
The APM agent tells you WHICH requests were slow.  Logs tell you WHY.
Joining the two needs a shared key, so every log line emitted while a
transaction is open carries its transaction_id.  setup_logging()
installs the TransactionContextFilter from
apm_instrumenter/middleware/request_context.py on its handler.

TWO FORMATTERS
----------------
  _ContainerFormatter: human-readable, single-line, for local dev.

  _JsonFormatter: one JSON object per line, for production log
    pipelines.  Transaction context fields become top-level keys, so
    "all log lines for transaction 42" is a simple filter.

    Set LOG_JSON=true to switch to JSON output.
"""

from __future__ import annotations

import json
import logging
import sys

from apm_instrumenter.middleware.request_context import TransactionContextFilter


class _ContainerFormatter(logging.Formatter):
    """Single-line formatter tuned for container stdout.

    - Always: ISO-8601 timestamp, level, logger name, message
    - WARNING+: appends [filename:lineno]
    - Stack trace included when exc_info is present
    """

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt)
        ms = int(record.msecs)
        # Insert .NNN before the timezone offset (last 5 chars: +0000)
        return f"{base[:-5]}.{ms:03d}{base[-5:]}"

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            self._style._fmt = self._BASE_FMT + self._LOC_SUFFIX
        else:
            self._style._fmt = self._BASE_FMT
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """JSON Lines formatter.

    Context fields attached by the instrumenter (via the request-context
    filter or ``extra=``) are copied to top-level keys when present.
    """

    _CONTEXT_FIELDS = (
        "transaction_id",
        "transaction_name",
        "method",
        "path",
        "app_name",
    )

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self._CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Configure the root logger to write to stdout.

    Args:
        level_name: Log level string (debug/info/warning/error).
            Unknown names fall back to INFO.
        json_format: Emit JSON lines instead of the single-line text format.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())
    handler.addFilter(TransactionContextFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # The newrelic agent is chatty at DEBUG; keep it and uvicorn at WARNING+
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "httpcore", "httpx", "newrelic"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
