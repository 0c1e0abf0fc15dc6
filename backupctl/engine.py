"""
Wrappers around the external tools: restic for snapshots, `aws s3 ls` for listing.
Handles environment setup, stderr classification, and typed parsing of results.
"""
import json
import logging
import subprocess
import sys
import time
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import pydantic

from .config import Settings
from .errors import (
    CommandNotFoundError,
    EngineError,
    NetworkError,
    RepositoryNotFoundError,
    SnapshotParseError,
    classify_stderr,
)
from .models import Snapshot

logger = logging.getLogger(__name__)

# Directory names restic creates inside every repository
RESTIC_INTERNAL_ENTRIES = frozenset({"data", "index", "keys", "snapshots", "locks"})


class ProcessResult:
    def __init__(self, code: int, stdout: str = "", stderr: str = ""):
        self.code = code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.code == 0

def run_process(args: Sequence[str], env: Optional[Mapping[str, str]] = None, stream: bool = False) -> ProcessResult:
    """
    Run an external command and return its exit code and output.

    With stream=True stdout is forwarded live to the terminal and only stderr
    is captured.
    """
    logger.debug("Executing %s", " ".join(args[:4]))
    try:
        if stream:
            proc = subprocess.run(args, env=env, stdout=sys.stdout, stderr=subprocess.PIPE, text=True)
            return ProcessResult(proc.returncode, "", proc.stderr or "")
        proc = subprocess.run(args, env=env, capture_output=True, text=True)
        return ProcessResult(proc.returncode, proc.stdout or "", proc.stderr or "")
    except FileNotFoundError as e:
        raise CommandNotFoundError(f"Failed to execute {args[0]}: command not found") from e
    except OSError as e:
        raise CommandNotFoundError(f"Failed to execute {args[0]}: {e}") from e


class ObjectLister(Protocol):
    def list_prefixes(self, prefix: str) -> List[str]: ...

class SnapshotEngine(Protocol):
    def list_snapshots(self, repo_url: str) -> List[Snapshot]: ...
    def restore(self, repo_url: str, snapshot_id: str, target: str, include_path: Optional[str] = None) -> str: ...
    def backup(self, repo_url: str, path: str, host: str, tag: str) -> str: ...
    def init_if_needed(self, repo_url: str) -> bool: ...


def parse_snapshots(raw: str, context: str) -> List[Snapshot]:
    """Parse `restic snapshots --json` output into typed snapshots."""
    if not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SnapshotParseError(f"Corrupt snapshot listing for {context}: {e}") from e
    if data is None:
        return []
    if not isinstance(data, list):
        raise SnapshotParseError(f"Unexpected snapshot listing shape for {context}: {type(data).__name__}")
    try:
        return [Snapshot.model_validate(item) for item in data]
    except pydantic.ValidationError as e:
        raise SnapshotParseError(f"Invalid snapshot metadata for {context}: {e}") from e

def parse_snapshot_id(output: str) -> Optional[str]:
    """Extract the id from restic's `snapshot <id> saved` line."""
    for line in output.splitlines():
        if "snapshot" in line and "saved" in line:
            parts = line.split()
            if len(parts) > 1:
                return parts[1]
    return None


class ResticEngine:
    """Runs restic against one repository URL per call."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._env: Optional[Dict[str, str]] = None

    @property
    def env(self) -> Dict[str, str]:
        if self._env is None:
            self._env = self.settings.engine_env()
        return self._env

    def _run(self, repo_url: str, args: Sequence[str], context: str, stream: bool = False) -> str:
        """Centralized restic invocation; raises a classified EngineError on failure."""
        cmd = [self.settings.restic_binary, "--repo", repo_url, *args]
        result = run_process(cmd, env=self.env, stream=stream)
        if result.ok:
            return result.stdout
        raise classify_stderr(result.stderr, context)

    def list_snapshots(self, repo_url: str) -> List[Snapshot]:
        output = self._run(repo_url, ["snapshots", "--json"], repo_url)
        return parse_snapshots(output, repo_url)

    def repo_exists(self, repo_url: str) -> bool:
        try:
            self._run(repo_url, ["cat", "config"], repo_url)
            return True
        except RepositoryNotFoundError:
            return False

    def init_if_needed(self, repo_url: str) -> bool:
        """Initialize the repository when it does not exist yet. Returns True if created."""
        if self.repo_exists(repo_url):
            return False
        logger.info("Initializing repository %s", repo_url)
        self._run(repo_url, ["init"], repo_url)
        return True

    def backup(self, repo_url: str, path: str, host: str, tag: str) -> str:
        return self._run(repo_url, ["backup", path, "--host", host, "--tag", tag], f"backup {path}")

    def restore(self, repo_url: str, snapshot_id: str, target: str, include_path: Optional[str] = None) -> str:
        args = ["restore", snapshot_id, "--target", target]
        if include_path:
            args.extend(["--path", include_path])
        return self._run(repo_url, args, f"restore {snapshot_id} to {target}")

    def stats(self, repo_url: str, path: str) -> int:
        """Raw-data size of the latest snapshot of a path, 0 when unknown."""
        output = self._run(
            repo_url,
            ["stats", "latest", "--mode", "raw-data", "--json", "--path", path],
            f"stats for {path}",
        )
        try:
            data: Dict[str, Any] = json.loads(output)
        except json.JSONDecodeError:
            return 0
        return int(data.get("total_size") or 0)


class AwsS3Lister:
    """Lists one level of common prefixes in the backup bucket via the aws CLI."""

    def __init__(self, settings: Settings, retries: int = 3, base_wait: float = 1.0):
        self.settings = settings
        self.retries = retries
        self.base_wait = base_wait

    def _env(self) -> Dict[str, str]:
        env = dict(self.settings.engine_env())
        env.pop("RESTIC_PASSWORD", None)
        return env

    def list_prefixes(self, prefix: str) -> List[str]:
        """Return directory names directly below `prefix` (spaces preserved)."""
        bucket = self.settings.s3_bucket()
        key = prefix.strip("/")
        full_path = f"s3://{bucket}/{key}/" if key else f"s3://{bucket}/"
        cmd = [self.settings.aws_binary, "s3", "ls", full_path, "--endpoint-url", self.settings.s3_endpoint()]

        for attempt in range(self.retries):
            result = run_process(cmd, env=self._env())
            if result.ok:
                return parse_s3_ls(result.stdout)

            error: EngineError = classify_stderr(result.stderr, full_path)
            # `aws s3 ls` on a missing prefix exits 1 with empty stderr
            if not result.stderr.strip():
                return []
            if isinstance(error, NetworkError) and attempt < self.retries - 1:
                time.sleep(self.base_wait * (2 ** attempt))
                continue
            raise error

        raise NetworkError("Max retries exceeded.")

def parse_s3_ls(output: str) -> List[str]:
    """Extract `PRE <name>/` entries from `aws s3 ls` output."""
    dirs: List[str] = []
    for line in output.splitlines():
        start = line.find("PRE ")
        if start == -1:
            continue
        name = line[start + 4:].rstrip("/")
        if name:
            dirs.append(name)
    return dirs
