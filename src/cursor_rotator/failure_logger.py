import logging
import json
from logging.handlers import RotatingFileHandler
import os
from typing import Any, Dict, Optional

from .error_handler import mask_credential

_failure_logger: Optional[logging.Logger] = None


def setup_failure_logger(log_dir: Optional[str] = None) -> logging.Logger:
    """Sets up a dedicated JSON logger for failed upstream attempts."""
    log_dir = log_dir or os.getenv("FAILURE_LOG_DIR", "logs")
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logger = logging.getLogger("cursor_rotator.failures")
    logger.setLevel(logging.INFO)

    # Failure records go to their own file, not to the console
    logger.propagate = False

    handler = RotatingFileHandler(
        os.path.join(log_dir, "failures.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=2,
    )

    class JsonFormatter(logging.Formatter):
        def format(self, record):
            log_record = {
                "timestamp": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "message": record.getMessage(),
            }
            return json.dumps(log_record)

    handler.setFormatter(JsonFormatter())

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(handler)

    return logger


def get_failure_logger() -> logging.Logger:
    global _failure_logger
    if _failure_logger is None:
        _failure_logger = setup_failure_logger()
    return _failure_logger


def log_failure(
    credential: Optional[str],
    attempt: int,
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
):
    """Logs a structured message for a failed upstream attempt."""
    raw_response = None
    if hasattr(error, "body") and isinstance(error.body, (bytes, bytearray)):
        raw_response = bytes(error.body[:512]).decode("utf-8", errors="replace")
    elif hasattr(error, "response") and hasattr(error.response, "text"):
        try:
            raw_response = error.response.text
        except Exception:
            raw_response = None

    log_data = {
        "credential": mask_credential(credential),
        "attempt_number": attempt,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "raw_response": raw_response,
        "context": context or {},
    }
    get_failure_logger().error(log_data)
