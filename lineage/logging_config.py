"""
Structured logging configuration.
"""
import logging
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

LOG_RESERVED_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
}


def sanitize_log_extra(extra: Dict[str, Any] | None) -> Dict[str, Any]:
    if not extra:
        return {}
    sanitized: Dict[str, Any] = {}
    for key, value in extra.items():
        target = f"ctx_{key}" if key in LOG_RESERVED_KEYS else key
        sanitized[target] = value
    return sanitized


def log_info(logger: logging.Logger, message: str, extra: Dict[str, Any] | None = None) -> None:
    logger.info(message, extra=sanitize_log_extra(extra))


def setup_logging(app):
    """
    Configure structured logging to file.
    Logs are written to <LOG_DIR>/app.log with rotation.
    """
    log_dir = Path(app.config.get("LOG_DIR") or Path(__file__).resolve().parents[1] / "logs")
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / "app.log"

    # Create formatter
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # File handler with rotation (10MB max, keep 5 backups)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)

    # Console handler for development
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    # app.logger is the "lineage" logger; lineage.* module loggers propagate to it
    app.logger.setLevel(logging.INFO)
    app.logger.addHandler(file_handler)
    app.logger.addHandler(console_handler)

    # Also configure werkzeug logger (Flask's HTTP logs)
    werkzeug_logger = logging.getLogger('werkzeug')
    werkzeug_logger.setLevel(logging.INFO)
    werkzeug_logger.addHandler(file_handler)

    app.logger.info(f"Logging initialized. Log file: {log_file}")

    return app.logger
