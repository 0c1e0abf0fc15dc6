"""
Configuration loading, S3 URL parsing, and password storage for backupctl.
"""
import os
import socket
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import keyring
from keyring.errors import KeyringError
import pydantic
import pydantic_settings
from pydantic import Field

from .errors import ConfigError, InvalidRepoBaseError, MissingSettingError
from .models import RepositoryAddress
from .paths import DEFAULT_DOCKER_VOLUMES_ROOT, DEFAULT_HOME_ROOT

APP_NAME = "backupctl"
PASSWORD_KEY = "restic_password"

SAMPLE_ENV = """# backupctl configuration
# Fill in your actual values below

# Restic repository password (or store it with `backupctl set-password`)
RESTIC_PASSWORD=your_restic_password_here

# S3/R2 repository base URL
RESTIC_REPO_BASE=s3:https://your-account.r2.cloudflarestorage.com/your-bucket/restic

# AWS/S3 credentials
AWS_ACCESS_KEY_ID=your_access_key_here
AWS_SECRET_ACCESS_KEY=your_secret_key_here
AWS_DEFAULT_REGION=auto
AWS_S3_ENDPOINT=https://your-account.r2.cloudflarestorage.com

# Backup paths (comma-separated)
# Example: /home/user/documents,/home/user/projects
BACKUP_PATHS=/home/user/important_data

# Optional: custom hostname (defaults to system hostname)
# BACKUP_HOSTNAME=my-custom-hostname
"""

def get_config_dir() -> Path:
    """Returns the platform-specific configuration directory."""
    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        if appdata:
            base_dir = Path(appdata)
        else:
            base_dir = Path.home() / "AppData" / "Roaming"
    else:
        # XDG Base Directory specification
        xdg_config = os.getenv("XDG_CONFIG_HOME")
        if xdg_config:
            base_dir = Path(xdg_config)
        else:
            base_dir = Path.home() / ".config"

    config_dir = base_dir / APP_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


class Settings(pydantic_settings.BaseSettings):
    """Runtime configuration, read from `.env` and the process environment."""

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    restic_password: Optional[str] = None
    restic_repo_base: str
    aws_access_key_id: str
    aws_secret_access_key: str
    aws_default_region: str = "auto"
    aws_s3_endpoint: Optional[str] = None

    # Comma-separated; kept as a raw string so the settings source does not JSON-decode it
    backup_paths: str = ""
    backup_hostname: str = Field(default_factory=socket.gethostname)
    backup_home_root: str = DEFAULT_HOME_ROOT
    backup_docker_volumes_root: str = DEFAULT_DOCKER_VOLUMES_ROOT

    backup_scan_workers: int = 4
    backup_restore_workers: int = 4
    backup_workers: int = 2
    backup_restore_staging: str = "/tmp/restic/interactive"

    restic_binary: str = "restic"
    aws_binary: str = "aws"

    @pydantic.field_validator("restic_repo_base")
    @classmethod
    def validate_repo_base(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("RESTIC_REPO_BASE must not be empty")
        return v

    @pydantic.field_validator("backup_scan_workers", "backup_restore_workers", "backup_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        if not 1 <= v <= 64:
            raise ValueError("worker counts must be between 1-64")
        return v

    @property
    def hostname(self) -> str:
        return self.backup_hostname

    @property
    def paths(self) -> List[str]:
        return [p.strip() for p in self.backup_paths.split(",") if p.strip()]

    def _split_repo_base(self) -> Tuple[str, str, str, str]:
        """Split `s3:<scheme>://<host>/<bucket>/<base...>` into its parts."""
        if not self.restic_repo_base.startswith("s3:"):
            raise InvalidRepoBaseError(f"Repository base is not an s3 URL: {self.restic_repo_base}")
        rest = self.restic_repo_base[len("s3:"):]
        scheme = "https"
        if "://" in rest:
            scheme, rest = rest.split("://", 1)
        host, _, after_host = rest.partition("/")
        bucket, _, base_path = after_host.partition("/")
        if not host or not bucket:
            raise InvalidRepoBaseError(f"Could not extract bucket name from repo base: {self.restic_repo_base}")
        return scheme, host, bucket, base_path.strip("/")

    def s3_endpoint(self) -> str:
        try:
            scheme, host, _, _ = self._split_repo_base()
            return f"{scheme}://{host}"
        except InvalidRepoBaseError:
            if self.aws_s3_endpoint:
                return self.aws_s3_endpoint
            raise

    def s3_bucket(self) -> str:
        return self._split_repo_base()[2]

    def s3_base_path(self) -> str:
        """The path inside the bucket that holds the host directories."""
        return self._split_repo_base()[3]

    def repo_url(self, address: RepositoryAddress) -> str:
        return f"{self.restic_repo_base}/{address.subpath}"

    def resolve_password(self) -> str:
        if self.restic_password:
            return self.restic_password
        stored = get_stored_password()
        if stored:
            return stored
        raise MissingSettingError(
            "RESTIC_PASSWORD is not set and no password is stored in the OS keyring."
        )

    def engine_env(self) -> Dict[str, str]:
        """Environment for restic/aws child processes."""
        env = dict(os.environ)
        env.update({
            "AWS_ACCESS_KEY_ID": self.aws_access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.aws_secret_access_key,
            "AWS_DEFAULT_REGION": self.aws_default_region,
            "RESTIC_PASSWORD": self.resolve_password(),
        })
        if self.aws_s3_endpoint:
            env["AWS_S3_ENDPOINT"] = self.aws_s3_endpoint
        return env


def get_settings(env_file: Optional[str] = None, **overrides) -> Settings:
    """
    Build settings, optionally from a specific .env file.

    LOAD_ENV_FILE names an alternative .env file when env_file is not given.
    """
    env_file_path = env_file or os.getenv("LOAD_ENV_FILE")
    try:
        if env_file_path:
            resolved = Path(env_file_path).resolve()
            if not resolved.exists():
                raise ConfigError(f"Environment file not found: {resolved}")
            return Settings(_env_file=resolved, **overrides)
        return Settings(**overrides)
    except pydantic.ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]).upper() for err in e.errors() if err["type"] == "missing"]
        if missing:
            raise MissingSettingError(f"Missing required settings: {', '.join(missing)}") from e
        raise ConfigError(f"Invalid configuration: {e}") from e

def write_sample_env(path: Path = Path(".env")) -> bool:
    """Write a sample .env file. Returns False when one already exists."""
    if path.exists():
        return False
    path.write_text(SAMPLE_ENV, encoding="utf-8")
    return True

def store_password(password: str) -> None:
    """Save the restic password in the OS keyring."""
    try:
        keyring.set_password(APP_NAME, PASSWORD_KEY, password)
    except KeyringError as e:
        raise ConfigError(f"Failed to store password in OS keyring: {e}") from e

def get_stored_password() -> Optional[str]:
    """Retrieve the restic password from the OS keyring, if any."""
    try:
        return keyring.get_password(APP_NAME, PASSWORD_KEY)
    except KeyringError:
        return None
