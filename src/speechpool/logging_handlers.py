"""Custom logging handler utilities."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

# Quota days roll over at 15:00 local time (08:00 UTC)
_LOCAL_ZONE = ZoneInfo("Asia/Ho_Chi_Minh")


class DateStampedFileHandler(logging.FileHandler):
    """File handler that writes to ``<dir>/<YYYY-MM-DD>/<prefix>_<time>_<tz>.log``."""

    def __init__(
        self,
        filename: str | Path | None = None,
        *,
        directory: str | Path | None = None,
        prefix: str | None = None,
        encoding: str | None = "utf-8",
        mode: str = "a",
        delay: bool = False,
        errors: Optional[str] = None,
        current_time: datetime | None = None,
    ) -> None:
        timestamp = (current_time or datetime.now(timezone.utc)).astimezone(
            timezone.utc
        )

        if filename:
            filename_path = Path(filename)
            if filename_path.suffix:
                base_dir = filename_path.parent
                base_prefix = prefix or filename_path.stem or "speechpool"
            else:
                base_dir = filename_path
                base_prefix = prefix or "speechpool"
        else:
            base_dir = Path(directory) if directory else Path("logs")
            base_prefix = prefix or "speechpool"

        local_time = timestamp.astimezone(_LOCAL_ZONE)
        # tzname() for this zone is the bare offset "+07"
        tz_label = (local_time.tzname() or "ICT").replace("+", "UTC+")
        date_folder = local_time.strftime("%Y-%m-%d")
        human_time = local_time.strftime("%Y-%m-%d_%H-%M-%S")
        log_path = (
            base_dir.resolve() / date_folder / f"{base_prefix}_{human_time}_{tz_label}.log"
        )

        log_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            log_path,
            mode=mode,
            encoding=encoding,
            delay=delay,
            errors=errors,
        )


def cleanup_old_logs(
    log_directories: list[str | Path],
    retention_hours: int,
    logger: logging.Logger | None = None,
) -> tuple[int, int]:
    """
    Delete ``*.log`` files older than the retention period.

    Args:
        log_directories: Directories to scan recursively
        retention_hours: Age threshold in hours (0 disables cleanup)
        logger: Optional logger for reporting cleanup activity

    Returns:
        Tuple of (files_deleted, errors_encountered)
    """
    if retention_hours <= 0:
        return (0, 0)

    cutoff_time = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    files_deleted = 0
    errors = 0

    for directory in log_directories:
        dir_path = Path(directory).resolve()
        if not dir_path.exists():
            continue

        for log_file in dir_path.rglob("*.log"):
            try:
                mtime = datetime.fromtimestamp(log_file.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff_time:
                    log_file.unlink()
                    files_deleted += 1
                    if logger:
                        logger.debug("Deleted old log file: %s", log_file)
            except OSError as exc:
                errors += 1
                if logger:
                    logger.warning("Failed to delete %s: %s", log_file, exc)

        # Drop date folders emptied by the pass above
        for date_dir in dir_path.iterdir():
            if date_dir.is_dir() and not any(date_dir.iterdir()):
                try:
                    date_dir.rmdir()
                except OSError as exc:
                    errors += 1
                    if logger:
                        logger.warning("Failed to remove %s: %s", date_dir, exc)

    if logger and files_deleted > 0:
        logger.info(
            "Log cleanup complete: %d file(s) deleted, %d error(s)",
            files_deleted,
            errors,
        )

    return (files_deleted, errors)


__all__ = ["DateStampedFileHandler", "cleanup_old_logs"]
