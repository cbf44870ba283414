"""
Logging setup for the lending core.

Every component logs through a child of the ``lending`` logger. Records can
carry who acted, what they did and which record it touched; the JSON
formatter writes those as top-level keys so log lines can be filtered by
loan or disbursement ID.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Attributes log_action attaches to a record, in output order
CONTEXT_FIELDS = ("correlation_id", "actor", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields that were not set are left out"""

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "lending",
                  fmt: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Point the application logger at a single handler.

    Calling it again replaces the handler rather than adding a second one.

    Args:
        level: Level name such as "INFO" or "DEBUG"
        logger_name: Logger to configure
        fmt: "json" or "text"
        log_file: Write here instead of stderr
    """
    logger = logging.getLogger(logger_name)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if fmt == "text" else JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(logging.getLevelName(level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "lending") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               actor: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit ``message`` with structured context.

    ``resource`` names the record acted on, e.g. "loan:<id>". Empty context
    values are not attached.
    """
    levelno = logging.getLevelName(level.upper())
    if not logger.isEnabledFor(levelno):
        return

    context = {
        "actor": actor,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    for key, value in context.items():
        if value:
            setattr(record, key, value)
    logger.handle(record)
