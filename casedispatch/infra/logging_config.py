import logging
import sys
import json
from datetime import datetime, timezone


# Record attributes carried from ``extra=`` into the output, with the short
# label the console format uses for each
_CONTEXT_FIELDS = {
    "request_id": "req",
    "case_id": "case",
    "provider_id": "provider",
    "customer_id": "customer",
}

_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "asyncpg": logging.WARNING,
}


def _context(record: logging.LogRecord) -> dict:
    ctx = {name: getattr(record, name) for name in _CONTEXT_FIELDS if hasattr(record, name)}
    if hasattr(record, "phone"):
        ctx["phone"] = mask_phone(record.phone)
    return ctx


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping in staging and prod."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": f"{record.module}:{record.lineno}",
            **_context(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line format for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        parts = []
        for name, value in _context(record).items():
            label = _CONTEXT_FIELDS.get(name, name)
            # Case IDs are UUIDs; the prefix is enough to grep by
            if name == "case_id":
                value = str(value)[:8]
            parts.append(f"{label}={value}")
        context = f" [{' '.join(parts)}]" if parts else ""

        line = (
            f"{color}{timestamp} {record.levelname:8}{self.RESET} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root_logger.addHandler(handler)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps the same case/provider/request fields on
    every record.

        log = LogContext(logger, case_id=case.id, customer_id=case.customer_id)
        log.info("Case created")
    """

    def __init__(self, logger: logging.Logger, **fields: str | None):
        self.logger = logger
        self.context = {k: v for k, v in fields.items() if v is not None}

    def bind(self, **fields: str | None) -> "LogContext":
        return LogContext(self.logger, **{**self.context, **fields})

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = dict(kwargs.pop("extra", None) or {})
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


def mask_phone(phone: str | None) -> str:
    """``"+359888123456"`` -> ``"+359****56"``"""
    if not phone:
        return ""
    phone = str(phone)
    if len(phone) <= 6:
        return "****"
    return phone[:4] + "****" + phone[-2:]
