"""Logging setup for schoolsync.

Two outputs live under {data_home}/logs:
- local-{date}.log: the "schoolsync" logger hierarchy
- sync-events-{date}.log: one line per drain/reconcile/notification event,
  easy to grep when diagnosing a sync problem after the fact
"""

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from schoolsync.config import get_data_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOGGER_NAME = "schoolsync"


def get_log_dir() -> Path:
    return get_data_home() / "logs"


def setup_schoolsync_logging(profile: str = "default", level: str = "INFO") -> logging.Logger:
    """Attach a dated file handler to the schoolsync logger.

    DEBUG additionally logs to the console. Calling this more than once does
    not add duplicate handlers. Unknown level names fall back to INFO.
    """
    logger = logging.getLogger(LOGGER_NAME)

    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"local-{date.today().isoformat()}.log"

    has_file = any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename).resolve() == log_file.resolve()
        for h in logger.handlers
    )
    if not has_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    if resolved <= logging.DEBUG:
        has_console = any(
            isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
            for h in logger.handlers
        )
        if not has_console:
            console = logging.StreamHandler()
            console.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(console)

    logger.debug(f"Logging initialised for profile={profile}")
    return logger


def log_sync_event(event_type: str, details: str, profile: str = "default") -> None:
    """Append one line to the dated sync-events log."""
    log_dir = get_log_dir()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        event_file = log_dir / f"sync-events-{date.today().isoformat()}.log"
        timestamp = datetime.now().isoformat(timespec="seconds")
        with open(event_file, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} | {event_type} | profile={profile} | {details}\n")
    except OSError as e:
        logging.getLogger(LOGGER_NAME).warning(f"Could not write sync event log: {e}")


def log_drain(
    profile: str, kind: str, applied: int, remaining: int, error: Optional[str] = None
) -> None:
    details = f"kind={kind}, applied={applied}, remaining={remaining}"
    if error:
        details += f", error={error[:120]}"
    log_sync_event("drain", details, profile=profile)


def log_reconcile(profile: str, outcome: str, fingerprint: Optional[str] = None) -> None:
    details = f"outcome={outcome}"
    if fingerprint:
        details += f", fingerprint={fingerprint[:12]}..."
    log_sync_event("reconcile", details, profile=profile)


def log_notification(profile: str, subject_id: int, kind: str, sent: bool) -> None:
    log_sync_event(
        "notification",
        f"subject={subject_id}, kind={kind}, sent={sent}",
        profile=profile,
    )
