"""
Background scheduler and systemd integration for periodic backups.
"""
import logging
import os
import sys
import time
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore

from .audit import AuditLogger
from .backup import run_backup
from .config import Settings, get_config_dir
from .errors import BackupServiceError, DaemonError
from .utils import setup_signal_handlers

logger = logging.getLogger(__name__)


class DaemonProcess:
    def __init__(self, settings: Settings, interval_minutes: int, audit: Optional[AuditLogger] = None):
        self.settings = settings
        self.interval = interval_minutes
        self.scheduler = BackgroundScheduler()
        self.audit = audit or AuditLogger()
        self.pid_file = get_config_dir() / "daemon.pid"

    def is_running(self) -> bool:
        """Check if a daemon is already running via PID file."""
        if not self.pid_file.exists():
            return False
        try:
            pid = int(self.pid_file.read_text())
            os.kill(pid, 0)
            return True
        except (ValueError, ProcessLookupError, PermissionError):
            self.pid_file.unlink(missing_ok=True)
            return False

    def job(self) -> None:
        """One scheduled backup run. Errors are audited, never raised into the scheduler."""
        self.audit.log("daemon_job_start", host=self.settings.hostname)
        try:
            outcome = run_backup(self.settings)
        except BackupServiceError as e:
            logger.error("Scheduled backup failed: %s", e)
            self.audit.log("daemon_job_end", status="failed", error=str(e))
            return
        self.audit.backup(outcome)
        self.audit.log("daemon_job_end", status=outcome.status)

    def start(self) -> None:
        if self.is_running():
            raise DaemonError("A backupctl daemon is already running.")

        self.pid_file.write_text(str(os.getpid()))

        self.scheduler.add_job(self.job, "interval", minutes=self.interval, max_instances=1, coalesce=True)
        self.scheduler.start()
        logger.info("Scheduled backups every %d minutes", self.interval)

        setup_signal_handlers(self.stop)

        try:
            while True:
                time.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            pass
        finally:
            self.stop()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown()
        self.pid_file.unlink(missing_ok=True)


def generate_systemd_unit(interval: int, env_file: Optional[str] = None) -> str:
    """Generate systemd .service content."""
    python_exec = sys.executable
    backupctl_cmd = f"{python_exec} -m backupctl.cli daemon --interval {interval}"
    env_line = f"Environment=LOAD_ENV_FILE={env_file}\n" if env_file else ""

    return f"""[Unit]
Description=backupctl periodic restic backups
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
{env_line}ExecStart={backupctl_cmd}
Restart=on-failure
RestartSec=30
StandardOutput=journal
StandardError=journal
SyslogIdentifier=backupctl

[Install]
WantedBy=default.target
"""
