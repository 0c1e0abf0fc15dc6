"""
Interactive restore workflow.

An explicit state machine: HostSelect -> RepositoryDiscovery -> TargetSelect
-> TimeWindowSelect -> Execute -> PostAction -> Done. Every phase is one
method that returns Advance(next_phase, payload) or Cancel, or raises.
Restic is only invoked in Execute, which cannot be cancelled once started.
"""
import concurrent.futures
import logging
import shutil
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .cache import SnapshotCache
from .config import Settings
from .discovery import DiscoveryScanner
from .engine import ResticEngine, SnapshotEngine
from .errors import (
    BackupServiceError,
    NoHostsFoundError,
    RepositoryScanFailure,
    RestoreError,
)
from .models import (
    Category,
    PairOutcome,
    RepositoryAddress,
    RepositoryData,
    RestoreOutcome,
    RestoreSelection,
    ScanResult,
    Snapshot,
    TimeWindow,
)
from .ui import Prompter
from .utils import copy_into, has_data, move_into

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    HOST_SELECT = "host_select"
    REPOSITORY_DISCOVERY = "repository_discovery"
    TARGET_SELECT = "target_select"
    TIME_WINDOW_SELECT = "time_window_select"
    EXECUTE = "execute"
    POST_ACTION = "post_action"
    DONE = "done"
    CANCELLED = "cancelled"

INTERACTIVE_PHASES = frozenset({
    Phase.HOST_SELECT,
    Phase.TARGET_SELECT,
    Phase.TIME_WINDOW_SELECT,
    Phase.POST_ACTION,
})

class Advance:
    def __init__(self, phase: Phase, payload: Any = None):
        self.phase = phase
        self.payload = payload

class Cancel:
    pass

Transition = Union[Advance, Cancel]

POST_ACTIONS = [
    "Copy to original location (merge over existing files)",
    "Move to original location (replace existing files)",
    "Leave files in temporary location",
]
COPY, MOVE, LEAVE = range(3)


def time_windows(repos: Sequence[RepositoryData]) -> List[Tuple[TimeWindow, int]]:
    """Distinct 5-minute windows across all snapshots, most recent first, with snapshot counts."""
    counts: Dict[TimeWindow, int] = {}
    for repo in repos:
        for snap in repo.snapshots:
            window = snap.window
            counts[window] = counts.get(window, 0) + 1
    return sorted(counts.items(), key=lambda item: item[0].start, reverse=True)

def build_selection(repos: Sequence[RepositoryData], window: TimeWindow) -> RestoreSelection:
    """
    Pick the effective snapshot of every repository for a window.

    The effective snapshot is the latest one taken before the window closes.
    Repositories without one are listed as ineligible instead of failing the rest.
    """
    chosen: Dict[RepositoryAddress, Snapshot] = {}
    ineligible: List[RepositoryAddress] = []
    for repo in repos:
        snap = repo.latest_before(window.end)
        if snap is None:
            ineligible.append(repo.address)
        else:
            chosen[repo.address] = snap
    return RestoreSelection(
        addresses=[r.address for r in repos],
        window=window,
        snapshots=chosen,
        ineligible=ineligible,
    )

def _enclosing(path: Optional[str], roots: Sequence[str]) -> Optional[str]:
    """The first of `roots` that strictly contains `path`, if any."""
    if not path:
        return None
    for root in roots:
        if path != root and Path(path).is_relative_to(root):
            return root
    return None

def parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise BackupServiceError(f"Invalid timestamp '{value}': expected ISO 8601") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RestoreRunner:
    """Runs restic restores for a selection in a bounded pool, continuing past failures."""

    def __init__(
        self,
        engine: SnapshotEngine,
        cache: SnapshotCache,
        url_for: Callable[[RepositoryAddress], str],
        staging_dir: Path,
        max_workers: int = 4,
    ):
        self.engine = engine
        self.cache = cache
        self.url_for = url_for
        self.staging_dir = staging_dir
        self.max_workers = max_workers

    def original_path(self, address: RepositoryAddress, snapshot: Snapshot) -> Optional[str]:
        return self.cache.original_path(address) or (snapshot.paths[0] if snapshot.paths else None)

    def prepare_staging(self) -> None:
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def _restore_one(self, address: RepositoryAddress, snapshot: Snapshot, cancel: Optional[threading.Event]) -> PairOutcome:
        original = self.original_path(address, snapshot)
        if cancel is not None and cancel.is_set():
            return PairOutcome(address=address, original_path=original, snapshot_id=snapshot.short_id,
                               status="skipped", detail="cancelled before start")
        logger.info("Restoring %s from snapshot %s", original or address, snapshot.short_id)
        try:
            self.engine.restore(self.url_for(address), snapshot.id, str(self.staging_dir), original)
        except BackupServiceError as e:
            error = RestoreError(f"Restore of {address} failed: {e}")
            logger.error("%s", error)
            return PairOutcome(address=address, original_path=original, snapshot_id=snapshot.short_id,
                               status="failed", detail=str(error))
        return PairOutcome(address=address, original_path=original, snapshot_id=snapshot.short_id,
                           status="succeeded", detail=f"restored to {self.staging_dir}")

    def run(self, selection: RestoreSelection, cancel: Optional[threading.Event] = None) -> List[PairOutcome]:
        outcomes: List[PairOutcome] = [
            PairOutcome(address=address, original_path=self.cache.original_path(address),
                        status="no_eligible_snapshot", detail=f"no snapshot before {selection.window.end:%Y-%m-%d %H:%M}")
            for address in selection.ineligible
        ]
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._restore_one, address, snap, cancel)
                for address, snap in selection.snapshots.items()
            ]
            for future in concurrent.futures.as_completed(futures):
                outcomes.append(future.result())

        outcomes.sort(key=lambda p: p.address.sort_key())
        return outcomes


class RestoreWorkflow:
    def __init__(
        self,
        scanner: DiscoveryScanner,
        runner: RestoreRunner,
        prompter: Prompter,
        default_host: Optional[str] = None,
        host: Optional[str] = None,
        path: Optional[str] = None,
        timestamp: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.scanner = scanner
        self.runner = runner
        self.prompter = prompter
        self.default_host = default_host
        self.host_opt = host
        self.path_opt = path
        self.timestamp_opt = timestamp
        self.cancel = cancel or threading.Event()

        self.scan_warnings: List[str] = []
        self.executed: List[PairOutcome] = []
        self.phase = Phase.HOST_SELECT

    @classmethod
    def from_settings(cls, settings: Settings, cache: SnapshotCache, prompter: Prompter, **options: Any) -> "RestoreWorkflow":
        scanner = DiscoveryScanner.from_settings(settings, cache)
        runner = RestoreRunner(
            engine=ResticEngine(settings),
            cache=cache,
            url_for=settings.repo_url,
            staging_dir=Path(settings.backup_restore_staging),
            max_workers=settings.backup_restore_workers,
        )
        return cls(scanner, runner, prompter, default_host=settings.hostname, **options)

    @property
    def cache(self) -> SnapshotCache:
        return self.scanner.cache

    def run(self) -> RestoreOutcome:
        handlers: Dict[Phase, Callable[[Any], Transition]] = {
            Phase.HOST_SELECT: self.select_host,
            Phase.REPOSITORY_DISCOVERY: self.discover_repositories,
            Phase.TARGET_SELECT: self.select_target,
            Phase.TIME_WINDOW_SELECT: self.select_time_window,
            Phase.EXECUTE: self.execute,
            Phase.POST_ACTION: self.post_action,
        }
        payload: Any = None
        while self.phase not in (Phase.DONE, Phase.CANCELLED):
            if self.phase in INTERACTIVE_PHASES and self.cancel.is_set():
                self.phase = Phase.CANCELLED
                break
            result = handlers[self.phase](payload)
            if isinstance(result, Cancel):
                logger.info("Restore cancelled during %s", self.phase.value)
                self.phase = Phase.CANCELLED
                break
            self.phase, payload = result.phase, result.payload

        pairs = payload if self.phase is Phase.DONE else self.executed
        return RestoreOutcome(
            pairs=pairs or [],
            scan_warnings=self.scan_warnings,
            staging_dir=str(self.runner.staging_dir) if self.executed else None,
            cancelled=self.phase is Phase.CANCELLED,
        )

    # S0
    def select_host(self, _: Any) -> Transition:
        if self.host_opt:
            return Advance(Phase.REPOSITORY_DISCOVERY, self.host_opt)

        hosts = self.scanner.discover_hosts()
        if not hosts:
            raise NoHostsFoundError("No hosts found in backup repository.")

        default = hosts.index(self.default_host) if self.default_host in hosts else 0
        choice = self.prompter.select("Select hostname", hosts, default)
        if choice is None:
            return Cancel()
        logger.info("Selected host %s", hosts[choice])
        return Advance(Phase.REPOSITORY_DISCOVERY, hosts[choice])

    # S1
    def discover_repositories(self, host: str) -> Transition:
        logger.info("Querying backups for host %s", host)
        result = self.scanner.scan(host)

        self.scan_warnings = [f"{f.address}: {f.error}" for f in result.failures]
        usable = [r for r in result.repos if r.snapshots]
        if not usable:
            raise RepositoryScanFailure(host, [(f.address, f.error) for f in result.failures])

        return Advance(Phase.TARGET_SELECT, result.model_copy(update={"repos": usable}))

    def _label(self, repo: RepositoryData) -> str:
        path = self.cache.original_path(repo.address) or repo.address.segment
        return f"{path} ({len(repo.snapshots)} snapshots)"

    # S2
    def select_target(self, scan: ScanResult) -> Transition:
        repos = scan.repos

        if self.path_opt:
            wanted = self.path_opt.rstrip("/") or "/"
            working = [r for r in repos if self.cache.original_path(r.address) == wanted]
            self.path_opt = None
            if working:
                return Advance(Phase.TIME_WINDOW_SELECT, working)
            logger.warning("No repository holds backups of %s", wanted)

        options = ["All (everything)"]
        targets: List[Optional[Category]] = [None]
        for category in Category:
            options.append(f"{category.label} (all {category.label.lower()} paths)")
            targets.append(category)
        options.append("Individual repository (single selection)")

        choice = self.prompter.select("Select what to restore", options, 0)
        if choice is None:
            return Cancel()

        if choice == len(options) - 1:
            index = self.prompter.select("Select repository", [self._label(r) for r in repos], 0)
            if index is None:
                return Cancel()
            working = [repos[index]]
        elif targets[choice] is None:
            working = list(repos)
        else:
            working = [r for r in repos if r.address.category is targets[choice]]

        if not working:
            logger.warning("Nothing to restore in that selection")
            return Advance(Phase.TARGET_SELECT, scan)

        logger.info("Selected %d repositories for restoration", len(working))
        return Advance(Phase.TIME_WINDOW_SELECT, working)

    # S3
    def select_time_window(self, working: List[RepositoryData]) -> Transition:
        if self.timestamp_opt:
            window = TimeWindow.containing(parse_timestamp(self.timestamp_opt))
        else:
            windows = time_windows(working)
            labels = [w.label(count) for w, count in windows]
            choice = self.prompter.select("Select time window", labels, 0)
            if choice is None:
                return Cancel()
            window = windows[choice][0]

        logger.info("Selected time window %s", f"{window.start:%Y-%m-%d %H:%M}")
        selection = build_selection(working, window)

        staging = self.runner.staging_dir
        if has_data(staging):
            if not self.prompter.confirm(f"Staging directory {staging} is not empty. Continue and clear it?", False):
                return Cancel()
        return Advance(Phase.EXECUTE, selection)

    # S4
    def execute(self, selection: RestoreSelection) -> Transition:
        self.runner.prepare_staging()
        logger.info("Restoring %d repositories to %s", len(selection.snapshots), self.runner.staging_dir)
        self.executed = self.runner.run(selection)
        return Advance(Phase.POST_ACTION, self.executed)

    # S5
    def post_action(self, pairs: List[PairOutcome]) -> Transition:
        restored = [p for p in pairs if p.status == "succeeded"]
        if not restored:
            return Advance(Phase.DONE, pairs)

        choice = self.prompter.select("What would you like to do with the restored files?", POST_ACTIONS, LEAVE)
        if choice is None:
            return Cancel()
        if choice == LEAVE:
            logger.info("Files remain at %s", self.runner.staging_dir)
            return Advance(Phase.DONE, pairs)

        applied: Dict[RepositoryAddress, PairOutcome] = {}
        placed_roots: List[str] = []
        # outermost first: a nested repository's data is already inside its parent's staged tree
        for pair in sorted(restored, key=lambda p: len(Path(p.original_path or "/").parts)):
            parent = _enclosing(pair.original_path, placed_roots)
            if parent is not None:
                applied[pair.address] = pair.model_copy(update={"detail": f"placed with {parent}"})
                continue
            result = self._apply(pair, choice)
            if result.status == "succeeded" and pair.original_path:
                placed_roots.append(pair.original_path)
            applied[pair.address] = result

        final = [applied.get(p.address, p) for p in pairs]
        placed = all(p.status == "succeeded" for p in applied.values())

        # skipped pairs still have their only copy in staging
        if choice == MOVE and placed:
            shutil.rmtree(self.runner.staging_dir, ignore_errors=True)
        return Advance(Phase.DONE, final)

    def _apply(self, pair: PairOutcome, action: int) -> PairOutcome:
        if not pair.original_path:
            return pair.model_copy(update={"status": "skipped", "detail": "original path unknown"})

        dest = Path(pair.original_path)
        src = self.runner.staging_dir / pair.original_path.lstrip("/")
        if not src.exists():
            return pair.model_copy(update={"status": "failed", "detail": f"restored data missing at {src}"})

        if has_data(dest) and not self.prompter.confirm(f"{dest} already contains data. Overwrite?", False):
            return pair.model_copy(update={"status": "skipped", "detail": "destination kept"})

        try:
            if action == COPY:
                copy_into(src, dest)
                detail = f"copied to {dest}"
            else:
                move_into(src, dest)
                detail = f"moved to {dest}"
        except OSError as e:
            error = RestoreError(f"Failed to place {src} at {dest}: {e}")
            logger.error("%s", error)
            return pair.model_copy(update={"status": "failed", "detail": str(error)})

        logger.info("%s", detail)
        return pair.model_copy(update={"detail": detail})


def run_restore(
    selection: RestoreSelection,
    settings: Settings,
    cache: SnapshotCache,
    cancel: Optional[threading.Event] = None,
) -> RestoreOutcome:
    """Restore a prepared selection into the staging directory without prompting."""
    runner = RestoreRunner(
        engine=ResticEngine(settings),
        cache=cache,
        url_for=settings.repo_url,
        staging_dir=Path(settings.backup_restore_staging),
        max_workers=settings.backup_restore_workers,
    )
    runner.prepare_staging()
    pairs = runner.run(selection, cancel)
    return RestoreOutcome(pairs=pairs, staging_dir=str(runner.staging_dir))

def restore_interactive(settings: Settings, cache: SnapshotCache, prompter: Optional[Prompter] = None, **options: Any) -> RestoreOutcome:
    workflow = RestoreWorkflow.from_settings(settings, cache, prompter or Prompter(), **options)
    return workflow.run()
