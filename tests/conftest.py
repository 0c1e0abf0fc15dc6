import threading
from typing import Dict, List, Optional, Sequence

import pytest

from backupctl.cache import SnapshotCache
from backupctl.config import Settings
from backupctl.errors import EngineError
from backupctl.models import Snapshot

REPO_BASE = "s3:https://r2.example.com/backups/restic"


def make_snapshot(snap_id: str, time: str, path: str, host: str = "pc") -> Snapshot:
    return Snapshot.model_validate({
        "id": snap_id * 8,
        "short_id": snap_id,
        "time": time,
        "hostname": host,
        "paths": [path],
        "tags": [],
    })


class FakeLister:
    """Serves prefix listings from a dict keyed by prefix below the bucket."""

    def __init__(self, tree: Dict[str, List[str]], failing: Sequence[str] = ()):
        self.tree = tree
        self.failing = set(failing)
        self.calls: List[str] = []

    def list_prefixes(self, prefix: str) -> List[str]:
        self.calls.append(prefix)
        if prefix in self.failing:
            raise EngineError(f"listing {prefix} failed")
        return list(self.tree.get(prefix, []))


class FakeEngine:
    """Snapshot engine keyed by repository URL; records every call."""

    def __init__(self, snapshots: Optional[Dict[str, List[Snapshot]]] = None, failing: Sequence[str] = ()):
        self.snapshots = snapshots or {}
        self.failing = set(failing)
        self.listed: List[str] = []
        self.restored: List[tuple] = []
        self.backed_up: List[tuple] = []
        self.initialized: List[str] = []
        self._lock = threading.Lock()

    def list_snapshots(self, repo_url: str) -> List[Snapshot]:
        with self._lock:
            self.listed.append(repo_url)
        if repo_url in self.failing:
            raise EngineError(f"cannot open {repo_url}")
        return list(self.snapshots.get(repo_url, []))

    def restore(self, repo_url: str, snapshot_id: str, target: str, include_path: Optional[str] = None) -> str:
        with self._lock:
            self.restored.append((repo_url, snapshot_id, target, include_path))
        if repo_url in self.failing:
            raise EngineError(f"restore from {repo_url} failed")
        return ""

    def backup(self, repo_url: str, path: str, host: str, tag: str) -> str:
        with self._lock:
            self.backed_up.append((repo_url, path, host, tag))
        if repo_url in self.failing:
            raise EngineError(f"backup to {repo_url} failed")
        return "Files: 1 new\nsnapshot 1a2b3c4d saved\n"

    def init_if_needed(self, repo_url: str) -> bool:
        with self._lock:
            self.initialized.append(repo_url)
        return False


class ScriptedPrompter:
    """Answers select/confirm prompts from a script; records the titles asked."""

    def __init__(self, selections: Sequence[Optional[int]] = (), confirms: Sequence[bool] = ()):
        self.selections = list(selections)
        self.confirms = list(confirms)
        self.asked: List[str] = []

    def select(self, title: str, options: Sequence[str], default: int = 0) -> Optional[int]:
        self.asked.append(title)
        if not self.selections:
            raise AssertionError(f"unexpected prompt: {title}")
        return self.selections.pop(0)

    def confirm(self, text: str, default: bool = False) -> bool:
        self.asked.append(text)
        if not self.confirms:
            raise AssertionError(f"unexpected confirmation: {text}")
        return self.confirms.pop(0)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        restic_password="pw",
        restic_repo_base=REPO_BASE,
        aws_access_key_id="AKIA",
        aws_secret_access_key="secret",
        backup_hostname="pc",
        backup_paths="",
        backup_docker_volumes_root=str(tmp_path / "volumes"),
        backup_restore_staging=str(tmp_path / "staging"),
    )

@pytest.fixture
def cache() -> SnapshotCache:
    return SnapshotCache()

@pytest.fixture
def url_for():
    return lambda address: f"{REPO_BASE}/{address.subpath}"
