"""Tagged logging helper for console and optional file output.

Messages carry a short component tag (``[INFO][Peaks] ...``) and optional
key=value fields. The processing loop runs at ~20 Hz, so repeated warnings
go through :func:`log_throttled`.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

_FORMAT = "[%(levelname)s][%(tag)s] %(message)s"

_logger = logging.getLogger("tocktrack")
if not _logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)
    _logger.propagate = False


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "App")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})
_file_handler: logging.Handler | None = None
_last_emitted: dict[str, float] = {}


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided."""
    if fields:
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} | {extras}"
    level_val = getattr(logging, level.upper(), logging.INFO)
    _logger_adapter.log(level_val, message, tag=tag)


def log_throttled(key: str, min_interval_s: float, level: str, tag: str,
                  message: str, **fields: Any) -> bool:
    """Like log_event, but emits at most once per ``min_interval_s`` for ``key``.

    Returns True when the message was emitted.
    """
    now = time.monotonic()
    last = _last_emitted.get(key)
    if last is not None and (now - last) < min_interval_s:
        return False
    _last_emitted[key] = now
    log_event(level, tag, message, **fields)
    return True


def reset_throttle() -> None:
    _last_emitted.clear()


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG/INFO/WARNING/ERROR)."""
    level_name = (level or "INFO").upper()
    _logger.setLevel(getattr(logging, level_name, logging.INFO))


def get_log_level() -> str:
    """Return current global log level name."""
    return logging.getLevelName(_logger.level)


def configure_log_file(path: Path | str | None) -> None:
    """Mirror log output to ``path`` (None removes a previously added file)."""
    global _file_handler
    if _file_handler is not None:
        _logger.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None
    if path is None:
        return
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _file_handler = logging.FileHandler(log_path, encoding="utf-8")
    _file_handler.setFormatter(logging.Formatter("%(asctime)s " + _FORMAT))
    _logger.addHandler(_file_handler)
