import threading

import pytest

from backupctl.cache import SnapshotCache
from backupctl.errors import CacheConsistencyError
from backupctl.models import Category, RepositoryAddress, RepositoryData

from .conftest import make_snapshot

ADDRESS = RepositoryAddress(host="pc", category=Category.USER_HOME, segment="tim/my_docs")


def data(*snaps):
    return RepositoryData(address=ADDRESS, snapshots=list(snaps))

def test_put_and_get():
    cache = SnapshotCache()
    entry = data(make_snapshot("a1", "2024-05-01T10:00:00Z", "/home/tim/my/docs"))
    assert cache.get(ADDRESS) is None
    assert cache.put(entry) is entry
    assert cache.get(ADDRESS) is entry
    assert ADDRESS in cache
    assert len(cache) == 1
    assert cache.for_host("pc") == [entry]
    assert cache.for_host("other") == []

def test_identical_put_is_noop():
    cache = SnapshotCache()
    first = data(make_snapshot("a1", "2024-05-01T10:00:00Z", "/etc"))
    cache.put(first)
    assert cache.put(data(make_snapshot("a1", "2024-05-01T10:00:00Z", "/etc"))) is first

def test_diverging_put_raises():
    cache = SnapshotCache()
    cache.put(data(make_snapshot("a1", "2024-05-01T10:00:00Z", "/etc")))
    with pytest.raises(CacheConsistencyError):
        cache.put(data())

def test_original_path_comes_from_latest_snapshot():
    cache = SnapshotCache()
    cache.put(data(
        make_snapshot("a1", "2024-05-01T10:00:00Z", "/home/tim/old"),
        make_snapshot("b2", "2024-05-02T10:00:00Z", "/home/tim/my_docs"),
    ))
    # the segment alone cannot tell "my_docs" from "my/docs"
    assert cache.original_path(ADDRESS) == "/home/tim/my_docs"

def test_original_path_unknown():
    cache = SnapshotCache()
    assert cache.original_path(ADDRESS) is None
    cache.put(data())
    assert cache.original_path(ADDRESS) is None

def test_concurrent_puts_store_once():
    cache = SnapshotCache()
    entries = [data(make_snapshot("a1", "2024-05-01T10:00:00Z", "/etc")) for _ in range(16)]
    stored = []

    def worker(entry):
        stored.append(cache.put(entry))

    threads = [threading.Thread(target=worker, args=(e,)) for e in entries]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) == 1
    assert all(s is stored[0] for s in stored)
