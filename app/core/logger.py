import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Framework loggers that should print through our root handler.
_SHARED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler")


def _level_from_env(var: str, default: str) -> int:
    name = (os.getenv(var) or default).strip().upper()
    return getattr(logging, name, getattr(logging, default))


def _reroute(name: str, level: int) -> None:
    lg = logging.getLogger(name)
    lg.handlers.clear()
    lg.propagate = True
    lg.setLevel(level)


def configure_logging() -> int:
    level = _level_from_env("LOG_LEVEL", "INFO")

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _SHARED_LOGGERS:
        _reroute(name, level)
    # httpx logs request URLs at INFO, api_token included.
    _reroute("httpx", max(level, logging.WARNING))
    _reroute("sqlalchemy.engine", _level_from_env("SQL_LOG_LEVEL", "WARNING"))
    return level


configure_logging()


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "fixture-sync")


logger = get_logger()
