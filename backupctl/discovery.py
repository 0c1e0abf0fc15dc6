"""
Repository discovery and concurrent snapshot scanning.

Walks the `[<base>/]<host>/<category>/<segment>` layout in the bucket, then
scans every repository found in a bounded thread pool. Failures of single
repositories are collected next to the successful results.
"""
import concurrent.futures
import logging
import threading
from typing import Callable, List, Optional, Set

from .cache import SnapshotCache
from .config import Settings
from .engine import RESTIC_INTERNAL_ENTRIES, AwsS3Lister, ObjectLister, ResticEngine, SnapshotEngine
from .errors import BackupServiceError, DiscoveryError, ScanError
from .models import (
    Category,
    RepositoryAddress,
    RepositoryData,
    ScanFailure,
    ScanResult,
    UnscannedRepository,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[RepositoryAddress, bool], None]


def _join(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


class DiscoveryScanner:
    def __init__(
        self,
        lister: ObjectLister,
        engine: SnapshotEngine,
        cache: SnapshotCache,
        url_for: Callable[[RepositoryAddress], str],
        base_path: str = "",
        max_workers: int = 4,
    ):
        self.lister = lister
        self.engine = engine
        self.cache = cache
        self.url_for = url_for
        self.base_path = base_path
        self.max_workers = max_workers

    @classmethod
    def from_settings(cls, settings: Settings, cache: SnapshotCache) -> "DiscoveryScanner":
        return cls(
            lister=AwsS3Lister(settings),
            engine=ResticEngine(settings),
            cache=cache,
            url_for=settings.repo_url,
            base_path=settings.s3_base_path(),
            max_workers=settings.backup_scan_workers,
        )

    def discover_hosts(self) -> List[str]:
        """List host directories below the base path."""
        try:
            hosts = self.lister.list_prefixes(self.base_path)
        except BackupServiceError as e:
            raise DiscoveryError(f"Failed to list hosts: {e}") from e
        return sorted(hosts)

    def _safe_list(self, prefix: str) -> List[str]:
        try:
            return self.lister.list_prefixes(prefix)
        except BackupServiceError as e:
            logger.warning("Failed to list %s: %s", prefix, e)
            return []

    def list_repositories(self, host: str) -> List[UnscannedRepository]:
        """Parse the bucket listing under a host into unscanned repositories."""
        host_prefix = _join(self.base_path, host)
        try:
            tokens = self.lister.list_prefixes(host_prefix)
        except BackupServiceError as e:
            raise DiscoveryError(f"Failed to list repositories for host '{host}': {e}") from e

        found: List[UnscannedRepository] = []
        seen: Set[RepositoryAddress] = set()

        def add(category: Category, segment: str) -> None:
            address = RepositoryAddress(host=host, category=category, segment=segment)
            if address not in seen:
                seen.add(address)
                found.append(UnscannedRepository(address=address))

        for token in tokens:
            try:
                category = Category(token)
            except ValueError:
                logger.warning("Ignoring unrecognized category '%s' under host '%s'", token, host)
                continue

            category_prefix = _join(host_prefix, category.value)
            children = self._safe_list(category_prefix)

            if category is Category.USER_HOME:
                for user in children:
                    subdirs = self._safe_list(_join(category_prefix, user))
                    if RESTIC_INTERNAL_ENTRIES.intersection(subdirs):
                        # the whole home directory is one repository
                        add(category, user)
                    for sub in subdirs:
                        if sub not in RESTIC_INTERNAL_ENTRIES:
                            add(category, f"{user}/{sub}")

            elif category is Category.DOCKER_VOLUME:
                for volume in children:
                    add(category, volume)
                    nested = self._safe_list(_join(category_prefix, volume))
                    for child in nested:
                        if child not in RESTIC_INTERNAL_ENTRIES:
                            add(category, f"{volume}/{child}")

            else:
                for name in children:
                    add(category, name)

        return found

    def _scan_one(self, unscanned: UnscannedRepository, cancel: Optional[threading.Event]) -> Optional[RepositoryData]:
        if cancel is not None and cancel.is_set():
            return None
        address = unscanned.address
        try:
            snapshots = self.engine.list_snapshots(self.url_for(address))
        except BackupServiceError as e:
            raise ScanError(f"Failed to scan {address}: {e}", cause=e) from e
        return RepositoryData(address=address, snapshots=snapshots)

    def scan(
        self,
        host: str,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ScanResult:
        """
        Scan every repository of a host for snapshots.

        Repositories already in the cache are not rescanned. Tasks that have not
        started when `cancel` is set are skipped; running tasks complete.
        """
        unscanned = self.list_repositories(host)
        repos: List[RepositoryData] = []
        failures: List[ScanFailure] = []

        pending: List[UnscannedRepository] = []
        for item in unscanned:
            cached = self.cache.get(item.address)
            if cached is not None:
                repos.append(cached)
            else:
                pending.append(item)

        logger.info("Scanning %d repositories for host '%s' (%d cached)", len(pending), host, len(repos))

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_repo = {executor.submit(self._scan_one, item, cancel): item for item in pending}
            for future in concurrent.futures.as_completed(future_to_repo):
                address = future_to_repo[future].address
                try:
                    data = future.result()
                except ScanError as e:
                    logger.warning("%s", e)
                    failures.append(ScanFailure(address=address, error=e))
                    if on_progress:
                        on_progress(address, False)
                    continue
                except Exception as e:
                    logger.exception("Unexpected failure scanning %s", address)
                    failures.append(ScanFailure(address=address, error=ScanError(str(e), cause=e)))
                    if on_progress:
                        on_progress(address, False)
                    continue

                if data is None:
                    logger.debug("Scan of %s skipped after cancellation", address)
                    continue
                repos.append(self.cache.put(data))
                if on_progress:
                    on_progress(address, True)

        repos.sort(key=lambda r: r.address.sort_key())
        failures.sort(key=lambda f: f.address.sort_key())
        return ScanResult(host=host, repos=repos, failures=failures)


def discover_hosts(settings: Settings, cache: Optional[SnapshotCache] = None) -> List[str]:
    return DiscoveryScanner.from_settings(settings, cache or SnapshotCache()).discover_hosts()

def scan_host(settings: Settings, host: str, cache: Optional[SnapshotCache] = None) -> ScanResult:
    return DiscoveryScanner.from_settings(settings, cache or SnapshotCache()).scan(host)
