"""
Backup workflow: prepare the path list, run restic per path, report.

Every path goes to its own repository, addressed by the categorizer. A
failing path is recorded and the remaining paths still run.
"""
import concurrent.futures
import logging
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .config import Settings
from .engine import ResticEngine, SnapshotEngine, parse_snapshot_id
from .errors import BackupServiceError, InvalidPathError
from .models import BackupOutcome, BackupPathOutcome, RepositoryAddress
from .paths import address_for, discover_docker_volumes, validate_and_filter_paths

logger = logging.getLogger(__name__)

UNREADABLE_MARKER = "at least one source file could not be read"

PathCallback = Callable[[BackupPathOutcome], None]


def collect_paths(configured: Iterable[str], extra: Iterable[str] = (), docker_volume_root: Optional[str] = None) -> List[str]:
    """Configured paths, then extra ones, then docker volumes. First occurrence wins."""
    ordered: List[str] = []
    seen = set()
    candidates = list(configured) + list(extra)
    if docker_volume_root:
        candidates.extend(str(v) for v in discover_docker_volumes(docker_volume_root))
    for raw in candidates:
        path = raw.strip()
        if len(path) > 1:
            path = path.rstrip("/")
        if path and path not in seen:
            seen.add(path)
            ordered.append(path)
    return ordered


class BackupWorkflow:
    def __init__(
        self,
        engine: SnapshotEngine,
        url_for: Callable[[RepositoryAddress], str],
        host: str,
        home_root: str,
        docker_volume_root: str,
        max_workers: int = 2,
    ):
        self.engine = engine
        self.url_for = url_for
        self.host = host
        self.home_root = home_root
        self.docker_volume_root = docker_volume_root
        self.max_workers = max_workers

    @classmethod
    def from_settings(cls, settings: Settings, engine: Optional[SnapshotEngine] = None) -> "BackupWorkflow":
        return cls(
            engine=engine or ResticEngine(settings),
            url_for=settings.repo_url,
            host=settings.hostname,
            home_root=settings.backup_home_root,
            docker_volume_root=settings.backup_docker_volumes_root,
            max_workers=settings.backup_workers,
        )

    # Phase 1
    def prepare(self, paths: Sequence[str]) -> tuple[List[Path], List[BackupPathOutcome]]:
        valid, missing = validate_and_filter_paths(paths)
        skipped = [
            BackupPathOutcome(path=str(p), status="skipped", detail="path does not exist")
            for p in missing
        ]
        return valid, skipped

    # Phase 2
    def backup_one(self, path: Path, cancel: Optional[threading.Event] = None) -> BackupPathOutcome:
        raw = str(path)
        try:
            address = address_for(raw, self.host, self.home_root, self.docker_volume_root)
        except InvalidPathError as e:
            return BackupPathOutcome(path=raw, status="skipped", detail=str(e))

        if cancel is not None and cancel.is_set():
            return BackupPathOutcome(path=raw, address=address, status="skipped", detail="cancelled before start")

        repo_url = self.url_for(address)
        logger.info("Backing up %s to %s", raw, address)
        try:
            if self.engine.init_if_needed(repo_url):
                logger.info("Initialized repository %s", address)
            output = self.engine.backup(repo_url, raw, self.host, address.category.tag)
        except BackupServiceError as e:
            logger.error("Backup of %s failed: %s", raw, e)
            return BackupPathOutcome(path=raw, address=address, status="failed", detail=str(e))

        snapshot_id = parse_snapshot_id(output)
        warning = UNREADABLE_MARKER in output
        if snapshot_id is None:
            return BackupPathOutcome(path=raw, address=address, status="failed", detail="restic did not report a saved snapshot")
        detail = "some files could not be read" if warning else "saved"
        return BackupPathOutcome(path=raw, address=address, status="succeeded",
                                 snapshot_id=snapshot_id, warning=warning, detail=detail)

    def execute(self, paths: Sequence[Path], cancel: Optional[threading.Event] = None, on_path: Optional[PathCallback] = None) -> List[BackupPathOutcome]:
        results: List[BackupPathOutcome] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_path = {executor.submit(self.backup_one, p, cancel): p for p in paths}
            for future in concurrent.futures.as_completed(future_to_path):
                outcome = future.result()
                results.append(outcome)
                if on_path:
                    on_path(outcome)
        return results

    # Phase 3
    def run(self, paths: Sequence[str], cancel: Optional[threading.Event] = None, on_path: Optional[PathCallback] = None) -> BackupOutcome:
        valid, skipped = self.prepare(paths)
        results = skipped + self.execute(valid, cancel, on_path)

        order = {p: i for i, p in enumerate(paths)}
        results.sort(key=lambda o: order.get(o.path, len(order)))
        outcome = BackupOutcome(host=self.host, paths=results)
        logger.info(
            "Backup finished with %s: %d succeeded, %d failed, %d skipped",
            outcome.status, outcome.count("succeeded"), outcome.count("failed"), outcome.count("skipped"),
        )
        return outcome


def run_backup(
    settings: Settings,
    extra_paths: Iterable[str] = (),
    engine: Optional[SnapshotEngine] = None,
    cancel: Optional[threading.Event] = None,
    on_path: Optional[PathCallback] = None,
) -> BackupOutcome:
    """Back up the configured paths, any extra ones, and all docker volumes."""
    paths = collect_paths(settings.paths, extra_paths, settings.backup_docker_volumes_root)
    workflow = BackupWorkflow.from_settings(settings, engine)
    return workflow.run(paths, cancel, on_path)
