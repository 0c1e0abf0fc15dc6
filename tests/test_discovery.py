import threading

import pytest

from backupctl.cache import SnapshotCache
from backupctl.discovery import DiscoveryScanner
from backupctl.errors import DiscoveryError, ScanError
from backupctl.models import Category, RepositoryAddress

from .conftest import REPO_BASE, FakeEngine, FakeLister, make_snapshot

INTERNAL = ["data", "index", "keys", "locks", "snapshots"]

TREE = {
    "restic": ["pc", "laptop"],
    "restic/pc": ["user_home", "docker_volume", "system", "unknown_category"],
    "restic/pc/user_home": ["tim"],
    "restic/pc/user_home/tim": INTERNAL + ["docs", "my_projects"],
    "restic/pc/docker_volume": ["db"],
    "restic/pc/docker_volume/db": INTERNAL,
    "restic/pc/system": ["etc_nginx"],
}


def url(subpath):
    return f"{REPO_BASE}/{subpath}"

def snapshots_for(*subpaths):
    return {
        url(s): [make_snapshot(f"{i:02d}", "2024-05-01T10:00:00Z", f"/x/{s}")]
        for i, s in enumerate(subpaths)
    }

ALL_REPOS = [
    "pc/user_home/tim",
    "pc/user_home/tim/docs",
    "pc/user_home/tim/my_projects",
    "pc/docker_volume/db",
    "pc/system/etc_nginx",
]

@pytest.fixture
def make_scanner(cache, url_for):
    def build(lister, engine, max_workers=4):
        return DiscoveryScanner(lister, engine, cache, url_for, base_path="restic", max_workers=max_workers)
    return build


def test_discover_hosts_sorted(make_scanner):
    scanner = make_scanner(FakeLister(TREE), FakeEngine())
    assert scanner.discover_hosts() == ["laptop", "pc"]

def test_discover_hosts_failure(make_scanner):
    scanner = make_scanner(FakeLister(TREE, failing=["restic"]), FakeEngine())
    with pytest.raises(DiscoveryError):
        scanner.discover_hosts()

def test_list_repositories_layout(make_scanner):
    scanner = make_scanner(FakeLister(TREE), FakeEngine())
    found = [u.address.subpath for u in scanner.list_repositories("pc")]
    assert sorted(found) == sorted(ALL_REPOS)

def test_unknown_category_is_skipped(make_scanner):
    lister = FakeLister(TREE)
    scanner = make_scanner(lister, FakeEngine())
    scanner.list_repositories("pc")
    assert "restic/pc/unknown_category" not in lister.calls

def test_host_listing_failure_is_fatal(make_scanner):
    scanner = make_scanner(FakeLister(TREE, failing=["restic/pc"]), FakeEngine())
    with pytest.raises(DiscoveryError):
        scanner.scan("pc")

def test_scan_collects_successes_and_failures(make_scanner, cache):
    failing = [url("pc/user_home/tim/docs"), url("pc/system/etc_nginx")]
    engine = FakeEngine(snapshots_for(*ALL_REPOS), failing=failing)
    result = make_scanner(FakeLister(TREE), engine).scan("pc")

    assert len(result.repos) == len(ALL_REPOS) - 2
    assert len(result.failures) == 2
    assert {f.address.subpath for f in result.failures} == {"pc/user_home/tim/docs", "pc/system/etc_nginx"}
    assert all(isinstance(f.error, ScanError) for f in result.failures)
    # ordered by category, then segment
    assert [r.address.category for r in result.repos] == [
        Category.USER_HOME, Category.USER_HOME, Category.DOCKER_VOLUME,
    ]
    assert len(cache) == len(ALL_REPOS) - 2

def test_scan_reuses_cache(make_scanner):
    engine = FakeEngine(snapshots_for(*ALL_REPOS))
    scanner = make_scanner(FakeLister(TREE), engine)
    first = scanner.scan("pc")
    calls = len(engine.listed)
    second = scanner.scan("pc")
    assert len(engine.listed) == calls
    assert second.repos == first.repos

def test_scan_with_single_worker_matches_pool(make_scanner, url_for):
    engine = FakeEngine(snapshots_for(*ALL_REPOS))
    serial = make_scanner(FakeLister(TREE), engine, max_workers=1).scan("pc")
    parallel = DiscoveryScanner(
        FakeLister(TREE), FakeEngine(snapshots_for(*ALL_REPOS)), SnapshotCache(), url_for,
        base_path="restic", max_workers=8,
    ).scan("pc")
    assert [r.address for r in serial.repos] == [r.address for r in parallel.repos]

def test_cancelled_scan_skips_pending(make_scanner):
    cancel = threading.Event()
    cancel.set()
    engine = FakeEngine(snapshots_for(*ALL_REPOS))
    result = make_scanner(FakeLister(TREE), engine).scan("pc", cancel=cancel)
    assert engine.listed == []
    assert result.repos == [] and result.failures == []

def test_progress_callback(make_scanner):
    seen = []
    engine = FakeEngine(snapshots_for(*ALL_REPOS), failing=[url("pc/docker_volume/db")])
    make_scanner(FakeLister(TREE), engine).scan("pc", on_progress=lambda a, ok: seen.append((a.subpath, ok)))
    assert len(seen) == len(ALL_REPOS)
    assert ("pc/docker_volume/db", False) in seen

def test_empty_host(make_scanner):
    result = make_scanner(FakeLister(TREE), FakeEngine()).scan("laptop")
    assert result.repos == [] and result.failures == []

def test_repository_address_str():
    address = RepositoryAddress(host="pc", category=Category.SYSTEM, segment="etc_nginx")
    assert str(address) == "pc/system/etc_nginx"
