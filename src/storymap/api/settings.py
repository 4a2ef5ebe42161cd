"""Configuration helpers for deploying the StoryMap service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

DEFAULT_COLUMN_GAP = 320
DEFAULT_ROW_GAP = 200
DEFAULT_ANALYTICS_MAX_ATTEMPTS = 3


def _normalise_path(value: str | None) -> Path | None:
    if value is None:
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    return Path(trimmed).expanduser()


def _positive_int(source: Mapping[str, str], name: str, *, default: int) -> int:
    raw = source.get(name)
    if raw is None:
        return default

    trimmed = raw.strip()
    if not trimmed:
        return default

    try:
        parsed = int(trimmed)
    except ValueError as exc:
        raise ValueError(f"{name} must be a positive integer.") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be greater than zero.")
    return parsed


def _flag(source: Mapping[str, str], name: str) -> bool:
    raw = source.get(name)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StoryMapSettings:
    """Deployment settings for the StoryMap application.

    Values are read from environment variables so the service can be
    configured without modifying application code. Paths are expanded to
    support ``~`` prefixes while empty strings are treated as if the variable
    was unset. Without ``store_root`` StoryMaps are kept in memory.
    """

    store_root: Path | None = None
    scene_content_path: Path | None = None
    layout_column_gap: int = DEFAULT_COLUMN_GAP
    layout_row_gap: int = DEFAULT_ROW_GAP
    analytics_max_attempts: int = DEFAULT_ANALYTICS_MAX_ATTEMPTS
    strict_references: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StoryMapSettings":
        """Return settings populated from ``environ``.

        Args:
            environ: Optional mapping of environment variables. When omitted,
                :data:`os.environ` is used.
        """

        source = environ if environ is not None else os.environ

        return cls(
            store_root=_normalise_path(source.get("STORYMAP_STORE_ROOT")),
            scene_content_path=_normalise_path(
                source.get("STORYMAP_SCENE_CONTENT_PATH")
            ),
            layout_column_gap=_positive_int(
                source, "STORYMAP_LAYOUT_COLUMN_GAP", default=DEFAULT_COLUMN_GAP
            ),
            layout_row_gap=_positive_int(
                source, "STORYMAP_LAYOUT_ROW_GAP", default=DEFAULT_ROW_GAP
            ),
            analytics_max_attempts=_positive_int(
                source,
                "STORYMAP_ANALYTICS_MAX_ATTEMPTS",
                default=DEFAULT_ANALYTICS_MAX_ATTEMPTS,
            ),
            strict_references=_flag(source, "STORYMAP_STRICT_REFERENCES"),
        )


__all__ = ["StoryMapSettings"]
