"""
Operation audit logging with structured JSON-Lines.
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .config import get_config_dir
from .models import BackupOutcome, RestoreOutcome

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("password", "token", "secret", "key")


class AuditLogger:
    """Writes structured JSONL audit logs without sensitive data."""
    def __init__(self, log_file: Optional[Path] = None):
        self.log_file = log_file or get_config_dir() / "audit.jsonl"

    def log(self, event_type: str, **kwargs: Any) -> None:
        """Log a structured operation event."""
        details = {
            k: ("*****" if any(s in k.lower() for s in SENSITIVE_KEYS) else v)
            for k, v in kwargs.items()
        }
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "details": details,
        }

        try:
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            # auditing must never abort a backup or restore
            logger.warning("Failed to write audit log %s: %s", self.log_file, e)

    def backup(self, outcome: BackupOutcome) -> None:
        self.log(
            "backup",
            host=outcome.host,
            status=outcome.status,
            succeeded=outcome.count("succeeded"),
            failed=outcome.count("failed"),
            skipped=outcome.count("skipped"),
            snapshots=[p.snapshot_id for p in outcome.paths if p.snapshot_id],
        )

    def restore(self, outcome: RestoreOutcome, host: Optional[str] = None) -> None:
        self.log(
            "restore",
            host=host,
            status="cancelled" if outcome.cancelled else outcome.status,
            pairs=[
                {"repository": str(p.address), "snapshot": p.snapshot_id, "status": p.status}
                for p in outcome.pairs
            ],
            scan_warnings=len(outcome.scan_warnings),
        )

def get_audit_log(last_n: int = 50, log_file: Optional[Path] = None) -> list[Dict[str, Any]]:
    """Retrieve the last N events from the audit log. Unparseable lines are skipped."""
    log_file = log_file or get_config_dir() / "audit.jsonl"
    if not log_file.exists():
        return []

    with log_file.open("r", encoding="utf-8") as f:
        lines = f.readlines()

    parsed = []
    for line in lines[-last_n:]:
        if not line.strip():
            continue
        try:
            parsed.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug("Skipping corrupt audit line")
    return parsed
