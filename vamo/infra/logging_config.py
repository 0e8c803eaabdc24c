# vamo/infra/logging_config.py
import logging
import sys
import json
from datetime import datetime, timezone

# Extra fields promoted to first-class keys in both formatters.
_CONTEXT_FIELDS = ("request_id", "dispatch_id", "recipient_id", "category")


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for production environments"""

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

        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []
        if hasattr(record, "dispatch_id"):
            context_parts.append(f"dispatch={record.dispatch_id}")
        if hasattr(record, "recipient_id"):
            context_parts.append(f"recipient={record.recipient_id}")
        if hasattr(record, "category"):
            context_parts.append(f"category={record.category}")

        context = f" [{' '.join(context_parts)}]" if context_parts else ""

        line = (
            f"{color}[{timestamp}] {record.levelname:8}{reset} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure application logging

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: If True, use JSON format (for production)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


class LogContext:
    """Attach dispatch context (dispatch/recipient/request ids) to log records"""

    def __init__(
            self,
            logger: logging.Logger,
            request_id: str | None = None,
            dispatch_id: str | None = None,
            recipient_id: str | None = None,
            category: str | None = None,
    ):
        self.logger = logger
        self.context = {
            k: v for k, v in {
                "request_id": request_id,
                "dispatch_id": dispatch_id,
                "recipient_id": recipient_id,
                "category": category,
            }.items() if v is not None
        }

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = kwargs.pop("extra", {})
        extra.update(self.context)
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)


def mask_coordinates(lat: float, lng: float) -> str:
    """Mask GPS coordinates for logging.

    Example: ``mask_coordinates(5.3364, -4.0267)`` → ``"5.3**, -4.0**"``

    One decimal digit (roughly ±10 km) is enough to debug dispatch radius
    problems without logging where a rider is standing.
    """
    return f"{lat:.1f}**, {lng:.1f}**"


def mask_push_token(token: str | None) -> str:
    """Mask a push token: ``ExponentPushToken[abcdef123]`` -> ``ExponentPushToken[abc***]``"""
    if not token:
        return "***"
    if "[" in token:
        prefix, _, rest = token.partition("[")
        return f"{prefix}[{rest[:3]}***]"
    return f"{token[:6]}***" if len(token) > 6 else "***"
