"""
Logging setup shared by all crawler stages.

Each stage process logs to the console and to its own rotating file,
``<directory>/<stage>.log``.
"""

import json
import logging
import logging.handlers
import os
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import psutil

from .config import LoggingConfig


# Record attributes copied into JSON output when a log call or adapter sets them
CONTEXT_FIELDS = ('stage', 'worker', 'url', 'url_id')

QUIET_LOGGERS = ('aiohttp', 'redis', 'asyncio', 'urllib3')

MAX_LOG_BYTES = 50 * 1024 * 1024
LOG_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with crawl context fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update({key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)})

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Tags every record with fixed context such as the stage name."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


class NoiseFilter(logging.Filter):
    """Drops records from chatty third-party loggers."""

    def __init__(self, prefixes: Iterable[str] = ('aiohttp.access', 'urllib3.connectionpool')):
        super().__init__()
        self.prefixes = tuple(prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(self.prefixes)


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(NoiseFilter())
    return handler


def setup_logging(config: LoggingConfig, stage: str) -> logging.Logger:
    """
    Route the root logger to the console and to the stage's log file.

    Args:
        config: Logging section of the configuration
        stage: Stage name, used for the log file name

    Returns:
        The configured root logger
    """
    level = getattr(logging, config.level.upper())
    formatter = JSONFormatter() if config.json else logging.Formatter(config.format)

    log_file = Path(config.directory) / f"{stage}.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), level, formatter))
    root_logger.addHandler(_handler(
        logging.handlers.RotatingFileHandler(
            log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding='utf-8'
        ),
        logging.DEBUG,
        formatter
    ))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging for {stage} at {config.level.upper()} to {log_file}")
    return root_logger


def get_stage_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """Logger whose records carry ``extra_context`` (e.g. ``stage='frontier'``)."""
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)


def log_system_info():
    """Startup banner: host, interpreter and resources of this worker."""
    logger = logging.getLogger(__name__)
    memory = psutil.virtual_memory()

    logger.info(f"Host {platform.node()} ({platform.platform()}), "
                f"Python {platform.python_version()}, PID {os.getpid()}")
    logger.info(f"CPU cores: {psutil.cpu_count()}, "
                f"memory: {memory.available / 1024**3:.1f} of {memory.total / 1024**3:.1f} GB free")
