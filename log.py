"""Logging setup for PRGate.

Every module logs under ``prgate.<module>``.  Records about a particular
repository, pull request, commit or build carry those identifiers as
``extra`` fields, which the JSON formatter lifts into top-level keys so a
log search can follow one pull request across reconciliation cycles.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

CONTEXT_FIELDS = ("repo", "pr", "sha", "build")

_PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_LOG_FILE_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with pull-request context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _rotating_file(log_file: str | Path, level: int) -> RotatingFileHandler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=_LOG_FILE_BYTES, backupCount=_LOG_FILE_BACKUPS
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(
    *,
    level: int = logging.INFO,
    json_output: bool = True,
    log_file: str | Path | None = None,
) -> logging.Logger:
    """Install PRGate's handlers on the ``prgate`` logger and return it.

    The console gets JSON lines, or human-readable text when *json_output*
    is false (the CLI's ``--verbose`` mode).  With *log_file* a rotating
    file receives JSON lines regardless of the console format.  Calling
    this again replaces the previous handlers.
    """
    logger = logging.getLogger("prgate")
    logger.setLevel(level)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        JSONFormatter() if json_output else logging.Formatter(_PLAIN_FORMAT)
    )
    logger.addHandler(console)

    if log_file is not None:
        logger.addHandler(_rotating_file(log_file, level))
    return logger
