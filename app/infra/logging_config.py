# app/infra/logging_config.py
import logging
import sys
import json
from datetime import datetime, timezone

# Record attributes promoted into structured output, with their short console labels.
_CONTEXT_FIELDS = {
    "request_id": "req",
    "job_id": "job",
    "bid_id": "bid",
    "vendor_id": "vendor",
    "recipient": "to",
}
_SHORT_IDS = ("request_id", "job_id", "bid_id")

# Third-party loggers that are too chatty at INFO.
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "twilio.http_client": logging.WARNING,
    "asyncpg": logging.WARNING,
    "aiohttp.access": logging.WARNING,
}


def _context(record: logging.LogRecord) -> dict:
    return {name: getattr(record, name) for name in _CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for the production log shipper"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        payload.update(_context(record))

        # Audit records carry their whole structured body
        if hasattr(record, "audit_action"):
            for key in ("audit_action", "actor", "detail"):
                payload[key] = getattr(record, key, None)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output for local development"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        tags = []
        for name, value in _context(record).items():
            text = str(value)
            tags.append(f"{_CONTEXT_FIELDS[name]}={text[:8] if name in _SHORT_IDS else text}")
        context = f" [{' '.join(tags)}]" if tags else ""

        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}{context}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure the root logger once at import of the HTTP app.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: JSON lines (production) instead of coloured console output
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.getLogger(__name__).info("Logging configured: level=%s json=%s", level, use_json)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps fixed context onto every record.

    Usage:
        log = LogContext(logger, request_id=rid, job_id=job.id)
        log.info("Bid accepted")
    """

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = {key: value for key, value in context.items() if value is not None}

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
    """Mask a phone number for logs: +15125550101 -> +151***0101"""
    if not phone:
        return "***"
    clean = phone.strip()
    if len(clean) <= 6:
        return "***"
    return f"{clean[:4]}***{clean[-4:]}"
