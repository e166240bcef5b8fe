"""Structured local logging and crash hook setup.

Records go to a daily-rotated JSON-lines file under the config directory.
Sampling loops report every failed tick, so a sensor that stays broken would
otherwise write the same line once per period; ``RepeatedFailureFilter``
keeps the first one and folds the rest into a ``repeats`` count carried on
the next record that differs.
"""

from __future__ import annotations

import faulthandler
import json
import logging
import logging.handlers
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import DiagnosticsConfig, config_root


_LOGGER_NAME = "benchmon"
_EXTRA_FIELDS = ("event", "metric", "state", "node", "crash_id", "repeats")
_FAILURE_EVENT = "sample_failed"


def log_dir() -> Path:
    path = config_root() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_utc": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
        return json.dumps(payload, ensure_ascii=True, default=str)


class RepeatedFailureFilter(logging.Filter):
    """Drop consecutive identical ``sample_failed`` records for the same metric."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._last: dict[str, str] = {}
        self._dropped: dict[str, int] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        metric = getattr(record, "metric", None)
        if metric is None:
            return True
        message = record.getMessage() if getattr(record, "event", None) == _FAILURE_EVENT else None
        with self._lock:
            if message is not None and self._last.get(metric) == message:
                self._dropped[metric] = self._dropped.get(metric, 0) + 1
                return False
            if message is None:
                self._last.pop(metric, None)
            else:
                self._last[metric] = message
            dropped = self._dropped.pop(metric, 0)
        if dropped:
            record.repeats = dropped
        return True


def configure_logging(
    settings: DiagnosticsConfig | None = None,
    console: bool = True,
    directory: Path | None = None,
    level: str | None = None,
) -> logging.Logger:
    """Attach file (and optionally stderr) handlers to the ``benchmon`` logger once.

    ``level`` overrides ``settings.log_level``, e.g. from a ``--verbose`` flag.
    """
    settings = settings or DiagnosticsConfig()
    logger = logging.getLogger(_LOGGER_NAME)
    if logger.handlers:
        return logger

    logger.setLevel(level or settings.log_level)
    path = (directory or log_dir()) / "benchmon.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(path),
        when="midnight",
        backupCount=max(1, settings.keep_log_files),
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())
    handlers: list[logging.Handler] = [handler]

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s"))
        handlers.append(stream_handler)

    for h in handlers:
        if settings.collapse_repeats:
            h.addFilter(RepeatedFailureFilter())
        logger.addHandler(h)

    logger.info(
        f"logging configured level={logging.getLevelName(logger.level)} file={path}",
        extra={"event": "logging_configured"},
    )
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _install_fault_handler(logger: logging.Logger, directory: Path | None = None) -> None:
    fault_path = (directory or log_dir()) / "fault.log"
    fh = fault_path.open("a", encoding="utf-8")
    faulthandler.enable(file=fh, all_threads=True)
    logger.info("fault handler enabled", extra={"event": "fault_handler_enabled"})


def install_crash_hooks(directory: Path | None = None) -> None:
    logger = get_logger()

    def _log_uncaught(exc_type, exc_value, exc_tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        crash_id = str(uuid.uuid4())
        logger.critical(
            f"uncaught exception crash_id={crash_id}",
            exc_info=(exc_type, exc_value, exc_tb),
            extra={"event": "uncaught_exception", "crash_id": crash_id},
        )

    def _thread_hook(args: threading.ExceptHookArgs) -> None:
        crash_id = str(uuid.uuid4())
        thread_name = getattr(args.thread, "name", "?")
        # Sampling threads are named after their metric.
        metric = thread_name[len("sampling-"):] if thread_name.startswith("sampling-") else None
        logger.critical(
            f"thread exception crash_id={crash_id} thread={thread_name}",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
            extra={"event": "thread_exception", "crash_id": crash_id, "metric": metric},
        )

    sys.excepthook = _log_uncaught
    threading.excepthook = _thread_hook
    _install_fault_handler(logger, directory)
