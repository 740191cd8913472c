from __future__ import annotations

import logging
import os
from pathlib import Path


class _NoisySqlLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith("sqlalchemy.engine"):
            return True
        return record.levelno >= logging.WARNING


def configure_logging(name: str, level: str | None = None) -> logging.Logger:
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=getattr(logging, log_level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    if os.getenv("SUPPRESS_SQL_ECHO_LOGS", "1").strip().lower() not in {"0", "false", "no", "off"}:
        has_filter = any(isinstance(existing, _NoisySqlLogFilter) for existing in root_logger.filters)
        if not has_filter:
            root_logger.addFilter(_NoisySqlLogFilter())
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    return logger


def env_path(name: str, default: str) -> Path:
    return Path(os.getenv(name, default)).expanduser().resolve()
