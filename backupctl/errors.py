"""
Custom exception hierarchy for backupctl.
"""
from typing import List, Sequence, Tuple


class BackupServiceError(Exception):
    """Base exception for all backupctl errors."""
    pass

class InvalidPathError(BackupServiceError):
    pass

class DiscoveryError(BackupServiceError):
    pass

class NoHostsFoundError(DiscoveryError):
    pass

class ScanError(BackupServiceError):
    """A single repository could not be scanned. Collected, never raised past the scanner."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause

class CacheConsistencyError(BackupServiceError):
    pass

class RestoreError(BackupServiceError):
    pass

class RepositoryScanFailure(BackupServiceError):
    """No usable repository came out of a scan."""

    def __init__(self, host: str, causes: Sequence[Tuple[object, ScanError]] = ()):
        self.host = host
        self.causes: List[Tuple[object, ScanError]] = list(causes)
        if self.causes:
            message = f"All {len(self.causes)} repositories for host '{host}' failed to scan."
        else:
            message = f"No backups found for host '{host}'."
        super().__init__(message)

class EngineError(BackupServiceError):
    pass

class AuthenticationError(EngineError):
    def __init__(self, message: str = "Authentication failed: invalid credentials or access denied"):
        super().__init__(message)

class NetworkError(EngineError):
    def __init__(self, message: str = "Network error: cannot connect to repository"):
        super().__init__(message)

class RepositoryNotFoundError(EngineError):
    pass

class CommandFailedError(EngineError):
    pass

class CommandNotFoundError(EngineError):
    pass

class SnapshotParseError(EngineError):
    pass

class ConfigError(BackupServiceError):
    pass

class MissingSettingError(ConfigError):
    pass

class InvalidRepoBaseError(ConfigError):
    pass

class DaemonError(BackupServiceError):
    pass


_AUTH_MARKERS = ("access denied", "invalid credentials", "authorization", "forbidden", "access key", "secret key")
_NETWORK_MARKERS = ("network", "connection", "timeout", "unreachable", "dns")

def classify_stderr(stderr: str, context: str) -> EngineError:
    """Map stderr of a failed restic/aws call onto the engine error taxonomy."""
    lowered = stderr.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthenticationError()
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return NetworkError()
    if "repository" in lowered and ("not found" in lowered or "does not exist" in lowered):
        return RepositoryNotFoundError(f"Repository not found: {context}")
    return CommandFailedError(f"Command execution failed: {stderr.strip()}")
