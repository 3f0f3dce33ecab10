"""
Logging configuration for virt-tool

The interactive console belongs to rich and questionary, so log records go
to a rotating file; only warnings and above are echoed on stderr.
"""
import logging
import logging.handlers
import json
import re
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Iterable


# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

_PASSPHRASE_ARG = re.compile(r"-p\S+")


def redact(command: Iterable[str]) -> str:
    """Render a command line for logging with 7z passphrases masked"""
    return ' '.join(_PASSPHRASE_ARG.sub('-p****', str(part)) for part in command)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, structured fields inlined"""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.lineno}",
        }
        log_entry.update((key, value) for key, value in vars(record).items()
                         if key not in _RECORD_ATTRS)
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JSONFormatter()
    return logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def setup_logging(log_level: str = "INFO",
                  log_format: str = "text",
                  log_dir: str = "./logs",
                  log_file_max_size: int = 10485760,
                  log_file_backup_count: int = 5):
    """Attach the file and stderr handlers to the virt_tool logger"""

    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("virt_tool")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()
    logger.propagate = False

    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / "virt-tool.log",
        maxBytes=log_file_max_size,
        backupCount=log_file_backup_count,
        encoding='utf-8'
    )
    file_handler.setFormatter(_make_formatter(log_format))
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    logger.addHandler(console_handler)

    logging.getLogger('libvirt').setLevel(logging.WARNING)


class StructuredLogger:
    """Logger wrapper that turns keyword arguments into record fields

    ``logger.info("Archive sealed", vm_name="alpha")`` ends up as a
    ``vm_name`` attribute on the record, which the JSON formatter emits.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def log(self, level: int, msg: str, *args, exc_info=None, **fields):
        if self._logger.isEnabledFor(level):
            self._logger.log(level, msg, *args, extra=fields or None, exc_info=exc_info)

    def debug(self, msg, *args, **fields):
        self.log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg, *args, **fields):
        self.log(logging.INFO, msg, *args, **fields)

    def warning(self, msg, *args, **fields):
        self.log(logging.WARNING, msg, *args, **fields)

    def error(self, msg, *args, **fields):
        self.log(logging.ERROR, msg, *args, **fields)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger under the virt_tool hierarchy"""
    return StructuredLogger(logging.getLogger(name))


class LogOperation:
    """Log the start and outcome of a step together with its duration"""

    def __init__(self, logger: StructuredLogger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self._started = None

    def _elapsed(self) -> float:
        return round(time.monotonic() - self._started, 3)

    def __enter__(self):
        self._started = time.monotonic()
        self.logger.info(f"{self.operation} started", operation=self.operation, **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.logger.info(f"{self.operation} finished", operation=self.operation,
                             duration_seconds=self._elapsed(), **self.context)
        else:
            self.logger.error(f"{self.operation} failed", operation=self.operation,
                              duration_seconds=self._elapsed(), error=str(exc_val), **self.context)
        return False
