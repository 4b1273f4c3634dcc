"""Structured Logging — JSON formatter, setup, and injectable component loggers.

Invariants:
    - All logs include timestamp, level, logger name, and message
    - Extra fields (session_id, sandbox_id, tool_name, error_code, ...) surfaced when present
    - JSON format in production, human-readable in development
    - A ComponentLogger built without a base logger never emits anything

Design Decisions:
    - JSONFormatter over third-party libs: zero dependencies, full control
    - setup_logging called once on startup via lifespan
    - ComponentLogger is an explicit wrapper handed to each component at construction;
      it prefixes "[Component]" and forwards to a stdlib logger (ADR: no global
      logger replacement at runtime)
"""

import logging
import json
from datetime import datetime, timezone

_EXTRA_FIELDS = (
    "session_id", "sandbox_id", "user_id", "tool_name", "error_code",
    "attempt", "event_type", "path",
)


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False)


def setup_logging(level: str = "INFO", fmt: str = "json"):
    """Configure logging for the application."""
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s - %(message)s",
        ))
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


def _build_null_logger() -> logging.Logger:
    null = logging.getLogger("agent_server.null")
    null.addHandler(logging.NullHandler())
    null.propagate = False
    return null


NULL_LOGGER = _build_null_logger()


class ComponentLogger:
    """Prefixes every record with the component name and forwards it."""

    def __init__(self, name: str, base: logging.Logger | None = None):
        self.name = name
        self.base = base if base is not None else NULL_LOGGER

    def spawn(self, child: str) -> "ComponentLogger":
        """Derive a logger for a sub-component ("Parent:Child")."""
        return ComponentLogger(f"{self.name}:{child}", self.base)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.ERROR, msg, args, kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, args, kwargs)

    def _log(self, level: int, msg: str, args: tuple, kwargs: dict) -> None:
        if not self.base.isEnabledFor(level):
            return
        kwargs.setdefault("stacklevel", 3)
        self.base.log(level, f"[{self.name}] {msg}", *args, **kwargs)


def component_logger(
    name: str, logger: ComponentLogger | None, module: str,
) -> ComponentLogger:
    """Return the injected logger, or one backed by the module's stdlib logger."""
    if logger is not None:
        return logger
    return ComponentLogger(name, logging.getLogger(module))
