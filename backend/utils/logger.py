import logging
import sys
import json
from utils.utcnow import utcnow
from typing import Any, Optional
from pathlib import Path

# Ids every scan, proposal and execution line is searchable by.
AUDIT_FIELDS = ("user_id", "job_id", "proposal_id", "execution_id", "client_order_id", "worker_id")

_SECRET_MARKERS = ("secret", "api_key", "signature", "password", "token")


def _redact(data: dict[str, Any]) -> dict[str, Any]:
    clean = {}
    for key, value in data.items():
        if any(marker in key.lower() for marker in _SECRET_MARKERS):
            clean[key] = "***"
        elif isinstance(value, dict):
            clean[key] = _redact(value)
        else:
            clean[key] = value
    return clean


class JSONFormatter(logging.Formatter):
    """One JSON object per line; audit ids are lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        extra_data = dict(getattr(record, "extra_data", None) or {})
        for field in AUDIT_FIELDS:
            if field in extra_data:
                log_data[field] = extra_data.pop(field)
        if extra_data:
            log_data["data"] = _redact(extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class AuditTextFormatter(logging.Formatter):
    """Plain text for local runs, with the audit ids appended."""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_data = getattr(record, "extra_data", None) or {}
        ids = [f"{field}={extra_data[field]}" for field in AUDIT_FIELDS if extra_data.get(field)]
        return f"{line} [{' '.join(ids)}]" if ids else line


class ContextLogger:
    """Logger that carries audit ids (user, job, proposal, execution) on every line."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self._context: dict[str, Any] = {}

    def with_context(self, **kwargs) -> "ContextLogger":
        """Bind ids to all subsequent log messages; None values are dropped."""
        bound = ContextLogger(self.logger.name)
        bound._context = {
            **self._context,
            **{key: value for key, value in kwargs.items() if value is not None},
        }
        return bound

    def _log(self, level: int, msg: str, *args: Any, **kwargs: Any):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)

        fields: dict[str, Any] = dict(self._context)
        fields.update(kwargs)

        self.logger.log(
            level,
            msg,
            *args,
            exc_info=exc_info,
            stacklevel=3,  # caller of debug()/info()/...
            extra={"extra_data": fields or None},
        )

    def debug(self, msg: str, *args: Any, **kwargs: Any):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args: Any, **kwargs: Any):
        self._log(logging.CRITICAL, msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any):
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, *args, **kwargs)


def setup_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None):
    """Route every logger to stdout (and optionally a JSON file)."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_format else AuditTextFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # Request-level chatter from the exchange and signal clients
    for noisy in ("httpx", "httpcore", "asyncio", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(name)


# Pre-configured loggers
scheduler_logger = get_logger("scheduler")
proposal_logger = get_logger("proposals")
execution_logger = get_logger("execution")
exchange_logger = get_logger("exchange")
