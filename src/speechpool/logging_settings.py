"""Helpers for parsing the simple logging settings file.

``terminal`` and ``file`` set handler levels. The remaining keys are
channels, each gating the loggers of one area of the service:

    jobs         job orchestration and the stale-job sweep
    credentials  key pool rotation, quota accounting, pool migration
    gemini       upstream speech synthesis calls

A channel set to ``off`` silences its loggers entirely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

_LEVEL_MAP: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": None,
}

CHANNEL_LOGGERS: dict[str, tuple[str, ...]] = {
    "jobs": ("speechpool.services.jobs", "speechpool.services.job_cleanup"),
    "credentials": (
        "speechpool.services.credentials",
        "speechpool.services.key_pool",
        "speechpool.services.quota",
    ),
    "gemini": ("speechpool.gemini",),
}

_HANDLER_KEYS = ("terminal", "file")
_DEFAULT_LEVEL = "info"
_DEFAULT_RETENTION_HOURS = 48
_SILENCED = logging.CRITICAL + 1


def _default_channels() -> dict[str, int | None]:
    return {name: _LEVEL_MAP[_DEFAULT_LEVEL] for name in CHANNEL_LOGGERS}


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None
    file_level: int | None
    retention_hours: int
    channel_levels: dict[str, int | None] = field(default_factory=_default_channels)

    @property
    def jobs_level(self) -> int | None:
        return self.channel_levels.get("jobs")

    def apply_channels(self) -> None:
        """Set the level of every channel's loggers."""

        for channel, names in CHANNEL_LOGGERS.items():
            level = self.channel_levels.get(channel)
            for name in names:
                logging.getLogger(name).setLevel(_SILENCED if level is None else level)


def _resolve_level(value: str) -> int | None:
    return _LEVEL_MAP.get(value.strip().lower(), _LEVEL_MAP[_DEFAULT_LEVEL])


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Parse ``key = value`` lines; unknown keys and comments are ignored."""

    handler_levels: dict[str, int | None] = {
        key: _LEVEL_MAP[_DEFAULT_LEVEL] for key in _HANDLER_KEYS
    }
    channels = _default_channels()
    retention_hours = _DEFAULT_RETENTION_HOURS

    if path.exists():
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = (part.strip() for part in line.split("=", 1))
            normalized_key = key.lower()
            if normalized_key == "retention_hours":
                try:
                    retention_hours = max(0, int(value))
                except ValueError:
                    retention_hours = _DEFAULT_RETENTION_HOURS
            elif normalized_key in handler_levels:
                handler_levels[normalized_key] = _resolve_level(value)
            elif normalized_key in channels:
                channels[normalized_key] = _resolve_level(value)

    return LoggingSettings(
        terminal_level=handler_levels["terminal"],
        file_level=handler_levels["file"],
        retention_hours=retention_hours,
        channel_levels=channels,
    )


__all__ = ["CHANNEL_LOGGERS", "LoggingSettings", "parse_logging_settings"]
