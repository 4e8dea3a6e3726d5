"""Logging setup for docsync.

Pipeline code attaches its correlation data through ``extra=``
(``run_id``, ``file_id``, cycle counts, fingerprints). The JSON formatter
nests those fields under ``context``; the console formatter appends them as
``key=value`` pairs so a cycle can be followed by run id in either output.
"""
from __future__ import annotations
import logging
import sys
import json
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from pathlib import Path

from config.settings import LoggingConfig

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

# Known context fields, in the order the console prints them.
CONTEXT_FIELDS = (
    'run_id', 'file_id', 'status', 'path', 'root',
    'scanned', 'changed', 'errors', 'missing',
    'chunk_count', 'duration_ms', 'old_sha', 'new_sha',
)

# Third-party loggers that are only interesting when they fail.
QUIET_LOGGERS = ('uvicorn.access', 'httpx', 'apscheduler', 'sqlalchemy.engine')


def log_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields passed through ``extra=``; known fields first, ``None`` dropped."""
    extras = {
        key: value for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and value is not None
    }
    ordered = {key: extras.pop(key) for key in CONTEXT_FIELDS if key in extras}
    ordered.update(sorted(extras.items()))
    return ordered


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, service_name: str = "docsync"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
        }
        context = log_context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Single-line console output with the level name colored."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'
    SHA_PREFIX = 12

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        level = f"{record.levelname:8}"
        if self.use_colors and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        line = f"{timestamp} | {level} | {record.name} | {record.getMessage()}"
        context = log_context(record)
        if context:
            line += " | " + " ".join(f"{key}={self._short(key, value)}" for key, value in context.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line

    def _short(self, key: str, value: Any) -> Any:
        if key.endswith('_sha') and isinstance(value, str):
            return value[:self.SHA_PREFIX]
        return value


def setup_logging(config: Optional[LoggingConfig] = None, service_name: str = "docsync",
                  use_colors: bool = True) -> None:
    """Configure the root logger from ``config``.

    The console gets JSON when ``config.use_json`` is set and colored text
    otherwise (colors only on a TTY). ``config.log_file`` always receives
    JSON. Repeated calls replace the previous handlers.
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    if config.use_json:
        console.setFormatter(JSONFormatter(service_name))
    else:
        console.setFormatter(ColoredFormatter(use_colors and sys.stdout.isatty()))
    root_logger.addHandler(console)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setFormatter(JSONFormatter(service_name))
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
