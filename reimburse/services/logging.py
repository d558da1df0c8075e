"""
Structured logging for the reimbursement pipeline.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import os

logger = logging.getLogger("reimburse")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def configure_logging(level: Optional[str] = None, use_json: Optional[bool] = None) -> logging.Logger:
    """Attach a single stdout handler to the ``reimburse`` logger.

    Reads ``LOG_LEVEL`` and ``USE_JSON_LOGS`` when arguments are omitted.
    Calling it again replaces the previous handler.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if use_json is None:
        use_json = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

    log_level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(log_level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    if use_json:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False
    return logger


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[BaseException] = None
):
    """Log error with context."""
    extra_fields = {
        "type": "error",
        "error_type": error_type,
    }
    if context:
        extra_fields.update(context)

    if exception is not None:
        logger.error(
            message,
            exc_info=(type(exception), exception, exception.__traceback__),
            extra={"extra_fields": extra_fields},
        )
    else:
        logger.error(message, extra={"extra_fields": extra_fields})
