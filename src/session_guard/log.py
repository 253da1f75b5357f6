"""Structured logging for session components.

Every component takes a :class:`SessionLogger` instead of calling the logging
module directly, so tests can record ``(level, message, fields)`` tuples and
assert on them. The default implementation forwards to stdlib ``logging``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Protocol

from .config import LOG_DIR, LOG_FILE, LOG_RETENTION_DAYS, ensure_dirs

logger = logging.getLogger(__name__)


class SessionLogger(Protocol):
    def log(self, level: int, message: str, /, **fields: Any) -> None: ...

    def debug(self, message: str, /, **fields: Any) -> None: ...

    def info(self, message: str, /, **fields: Any) -> None: ...

    def warning(self, message: str, /, **fields: Any) -> None: ...

    def error(self, message: str, /, **fields: Any) -> None: ...


def _render_fields(fields: dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in fields.items())


class StdlibSessionLogger:
    """Forwards structured records to a ``logging.Logger``.

    Fields are appended to the message as ``key=value`` pairs and also
    attached to the record as ``fields`` for handlers that want them.
    """

    def __init__(self, name: str = "session_guard") -> None:
        self._logger = logging.getLogger(name)

    def log(self, level: int, message: str, /, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        if fields:
            self._logger.log(level, "%s %s", message, _render_fields(fields), extra={"fields": fields})
        else:
            self._logger.log(level, "%s", message, extra={"fields": {}})

    def debug(self, message: str, /, **fields: Any) -> None:
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, /, **fields: Any) -> None:
        self.log(logging.INFO, message, **fields)

    def warning(self, message: str, /, **fields: Any) -> None:
        self.log(logging.WARNING, message, **fields)

    def error(self, message: str, /, **fields: Any) -> None:
        self.log(logging.ERROR, message, **fields)


def get_logger(name: str = "session_guard") -> StdlibSessionLogger:
    return StdlibSessionLogger(name)


def list_log_files() -> list[Path]:
    ensure_dirs()
    files = [p for p in LOG_DIR.glob(f"{LOG_FILE.name}*") if p.is_file()]
    return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)


def cleanup_old_logs() -> None:
    cutoff_ts = (datetime.now() - timedelta(days=LOG_RETENTION_DAYS)).timestamp()
    for path in list_log_files():
        if path.stat().st_mtime < cutoff_ts:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.debug("Failed to delete old log file: %s", path)


def configure_logging(level: int = logging.INFO, *, to_file: bool = True) -> None:
    """Console logging plus a midnight-rotated file under ``LOG_DIR``."""
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream_handler]

    if to_file:
        ensure_dirs()
        cleanup_old_logs()
        file_handler = TimedRotatingFileHandler(
            filename=str(LOG_FILE),
            when="midnight",
            interval=1,
            backupCount=LOG_RETENTION_DAYS,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
