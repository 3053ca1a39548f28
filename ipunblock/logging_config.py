"""Centralized logging configuration for ipunblock."""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

LOG_DIR = Path("./logs")

_APP_LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
_APP_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_AUDIT_LOGGER_NAME = "ipunblock.audit_trail"


def setup_logging(log_dir: Path | None = None, level: str = "INFO") -> None:
    """Configure logging for the entire application.

    Call once at startup, before any check runs.
    """
    base_dir = log_dir or LOG_DIR
    base_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)

    # Daily rotating file handler for all application logs
    app_handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(base_dir / "ipunblock.log"),
        when="midnight",
        interval=1,
        backupCount=14,
        encoding="utf-8",
    )
    app_handler.setLevel(level)
    app_handler.setFormatter(
        logging.Formatter(_APP_LOG_FORMAT, datefmt=_APP_LOG_DATE_FORMAT)
    )
    root.addHandler(app_handler)

    # paramiko transport chatter stays out of the app log
    logging.getLogger("paramiko").setLevel(logging.WARNING)

    # Dedicated audit-trail logger: JSON Lines, size-rotated
    audit_logger = logging.getLogger(_AUDIT_LOGGER_NAME)
    audit_logger.propagate = False
    audit_handler = logging.handlers.RotatingFileHandler(
        filename=str(base_dir / "audit.jsonl"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    audit_handler.setLevel(logging.DEBUG)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(audit_handler)


def log_audit_event(entry: Dict[str, Any]) -> None:
    """Append one audit event to the JSON Lines audit trail."""
    audit_logger = logging.getLogger(_AUDIT_LOGGER_NAME)
    record = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": entry.get("action", "unknown"),
        "actor": entry.get("actor"),
        "host_id": entry.get("host_id"),
        "ip": entry.get("ip"),
        "outcome": entry.get("outcome"),
        "details": entry.get("details") or None,
    }
    try:
        audit_logger.info(json.dumps(record, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        audit_logger.info(
            json.dumps({"action": record["action"], "error": "serialization_failed"})
        )
