"""Process-wide logging configuration."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_CONFIGURED = False


def _int_env(
    source: Mapping[str, str], name: str, default: int, *, minimum: int, maximum: int
) -> int:
    raw = source.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def configure_runtime_logging(
    environ: Mapping[str, str] | None = None, *, force: bool = False
) -> bool:
    """Configure console and optional rotating file logs once per process.

    ``STORYMAP_LOG_LEVEL`` selects the root level (``INFO`` by default) and
    ``STORYMAP_LOG_PATH`` enables a rotating file handler sized by
    ``STORYMAP_LOG_MAX_BYTES`` and ``STORYMAP_LOG_BACKUP_COUNT``. Returns
    ``True`` when handlers were installed by this call.
    """

    global _CONFIGURED
    if _CONFIGURED and not force:
        return False

    source = environ if environ is not None else os.environ
    level_name = source.get("STORYMAP_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    log_path_raw = source.get("STORYMAP_LOG_PATH", "").strip()
    if log_path_raw:
        log_path = Path(log_path_raw).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_path,
            maxBytes=_int_env(
                source,
                "STORYMAP_LOG_MAX_BYTES",
                5 * 1024 * 1024,
                minimum=64 * 1024,
                maximum=100 * 1024 * 1024,
            ),
            backupCount=_int_env(
                source, "STORYMAP_LOG_BACKUP_COUNT", 10, minimum=1, maximum=120
            ),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)

    access_level_name = (
        source.get("STORYMAP_ACCESS_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
    )
    access_level = getattr(logging, access_level_name, logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(access_level)

    _CONFIGURED = True
    return True


def reset_runtime_logging() -> None:
    """Forget that logging was configured so tests can configure it again."""

    global _CONFIGURED
    _CONFIGURED = False


__all__ = ["configure_runtime_logging", "reset_runtime_logging"]
