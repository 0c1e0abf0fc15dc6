"""
Diagnostic suite: external tools, configuration, endpoint, keyring, disk.
"""
import importlib.metadata
import shutil
import time
from pathlib import Path
from typing import List, Optional

import httpx
import keyring

from .config import Settings, get_config_dir
from .errors import BackupServiceError
from .models import DoctorCheck
from .utils import free_space, mask_token

REQUIRED_PACKAGES = ("typer", "rich", "pydantic", "pydantic-settings", "keyring", "httpx", "apscheduler")


def _binary_check(name: str, binary: str) -> DoctorCheck:
    found = shutil.which(binary)
    if found:
        return DoctorCheck(name=name, status="pass", detail=found)
    return DoctorCheck(name=name, status="fail", detail=f"'{binary}' not found on PATH")

def run_diagnostics(settings: Optional[Settings], config_error: Optional[str] = None) -> List[DoctorCheck]:
    """Execute the health checks synchronously. settings is None when configuration failed to load."""
    checks: List[DoctorCheck] = []

    # 1. Configuration
    if settings is None:
        checks.append(DoctorCheck(name="1. Configuration", status="fail", detail=config_error or "Not loaded"))
    else:
        checks.append(DoctorCheck(
            name="1. Configuration",
            status="pass",
            detail=f"{settings.restic_repo_base} (key {mask_token(settings.aws_access_key_id)})",
        ))

    # 2-3. External tools
    checks.append(_binary_check("2. restic Binary", settings.restic_binary if settings else "restic"))
    checks.append(_binary_check("3. aws CLI", settings.aws_binary if settings else "aws"))

    # 4. Repository password
    if settings is not None:
        try:
            settings.resolve_password()
            checks.append(DoctorCheck(name="4. Repository Password", status="pass", detail="Available"))
        except BackupServiceError as e:
            checks.append(DoctorCheck(name="4. Repository Password", status="fail", detail=str(e)))
    else:
        checks.append(DoctorCheck(name="4. Repository Password", status="warn", detail="Skipped"))

    # 5. Endpoint latency
    if settings is not None:
        try:
            endpoint = settings.s3_endpoint()
            start = time.time()
            httpx.head(endpoint, timeout=5.0)
            ms = int((time.time() - start) * 1000)
            status = "pass" if ms < 500 else "warn"
            checks.append(DoctorCheck(name="5. Endpoint Latency", status=status, detail=f"{ms}ms to {endpoint}"))
        except (httpx.HTTPError, BackupServiceError) as e:
            checks.append(DoctorCheck(name="5. Endpoint Latency", status="fail", detail=str(e)))
    else:
        checks.append(DoctorCheck(name="5. Endpoint Latency", status="warn", detail="Skipped"))

    # 6. Keyring backend
    kr = keyring.get_keyring()
    checks.append(DoctorCheck(name="6. OS Keyring Backend", status="pass", detail=str(kr.__class__.__name__)))

    # 7. Config directory
    config_dir = get_config_dir()
    checks.append(DoctorCheck(name="7. Config Directory", status="pass", detail=str(config_dir)))

    # 8. Staging disk space
    staging = Path(settings.backup_restore_staging) if settings else Path("/tmp")
    try:
        free_gb = free_space(staging) // (2**30)
        status = "pass" if free_gb > 1 else "warn"
        checks.append(DoctorCheck(name="8. Disk Space (Staging)", status=status, detail=f"{free_gb} GB free at {staging}"))
    except OSError as e:
        checks.append(DoctorCheck(name="8. Disk Space (Staging)", status="fail", detail=str(e)))

    # 9. Backup paths
    if settings is not None:
        paths = settings.paths
        missing = [p for p in paths if not Path(p).exists()]
        if not paths:
            checks.append(DoctorCheck(name="9. Backup Paths", status="warn", detail="BACKUP_PATHS is empty"))
        elif missing:
            checks.append(DoctorCheck(name="9. Backup Paths", status="warn", detail=f"{len(missing)} of {len(paths)} missing"))
        else:
            checks.append(DoctorCheck(name="9. Backup Paths", status="pass", detail=f"{len(paths)} paths present"))

    # 10. Dependencies
    missing_pkgs = []
    for pkg in REQUIRED_PACKAGES:
        try:
            importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            missing_pkgs.append(pkg)
    if missing_pkgs:
        checks.append(DoctorCheck(name="10. Dependencies", status="fail", detail=", ".join(missing_pkgs)))
    else:
        checks.append(DoctorCheck(name="10. Dependencies", status="pass", detail="All core requirements met"))

    return checks
