"""Logging setup for the CLI and the HTTP service.

Modules log through ``logging.getLogger(__name__)``; this module only decides
where records go:

  - interactive use (CLI): ``rich.logging.RichHandler`` on stderr
  - server use: one JSON object per line on stdout

Extra fields passed via ``extra={...}`` are kept in both formats.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

from rich.console import Console
from rich.logging import RichHandler

_LEVEL_ENV = "LODESTONE_LOG_LEVEL"

_NOISY_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "urllib3", "asyncio")

# LogRecord attributes that are not user-supplied extras.
_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "taskName", "asctime",
    }
)


def _extras(record: logging.LogRecord) -> dict[str, object]:
    return {
        k: v
        for k, v in record.__dict__.items()
        if k not in _STANDARD_ATTRS and not k.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def __init__(self, service_name: str = "lodestone") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        for key, value in _extras(record).items():
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)
        return json.dumps(entry)


class ConsoleFormatter(logging.Formatter):
    """Append ``key=value`` extras to the rendered message.

    Only the formatted string changes; the record itself is shared with
    every other handler and is left as it was.
    """

    def formatMessage(self, record: logging.LogRecord) -> str:
        message = super().formatMessage(record)
        extras = _extras(record)
        if not extras:
            return message
        return f"{message} (" + ", ".join(f"{k}={v}" for k, v in extras.items()) + ")"


def resolve_level(level: str | None = None) -> int:
    """Return the numeric log level from *level*, then the environment, then INFO."""
    name = (level or os.environ.get(_LEVEL_ENV) or "INFO").upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    level: str | None = None,
    *,
    json_output: bool = False,
    service_name: str = "lodestone",
) -> None:
    """Configure the root logger.

    Args:
        level: Level name (DEBUG, INFO, ...). Falls back to LODESTONE_LOG_LEVEL, then INFO.
        json_output: Emit JSON lines on stdout instead of rich console output.
        service_name: Value of the ``service`` field in JSON output.
    """
    log_level = resolve_level(level)

    handler: logging.Handler
    if json_output:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler = RichHandler(
            console=Console(stderr=True),
            markup=False,
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(ConsoleFormatter())
    handler.setLevel(log_level)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
