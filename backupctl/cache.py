"""
Invocation-scoped snapshot cache.

One instance lives for a single CLI invocation and is handed to the scanner
and the restore workflow explicitly. Entries are write-once per address.
"""
import logging
import threading
from typing import Dict, Iterator, List, Optional

from .errors import CacheConsistencyError
from .models import RepositoryAddress, RepositoryData

logger = logging.getLogger(__name__)


class SnapshotCache:
    def __init__(self) -> None:
        self._entries: Dict[RepositoryAddress, RepositoryData] = {}
        self._write_lock = threading.Lock()

    def put(self, data: RepositoryData) -> RepositoryData:
        """
        Store the result of a successful scan.

        Storing an identical entry twice is a no-op. Storing a different entry
        for an address already populated means one address was scanned twice
        with diverging results, which raises CacheConsistencyError.
        """
        with self._write_lock:
            existing = self._entries.get(data.address)
            if existing is not None:
                if existing != data:
                    raise CacheConsistencyError(
                        f"Repository {data.address} was scanned twice with different results "
                        f"({len(existing.snapshots)} vs {len(data.snapshots)} snapshots)."
                    )
                return existing
            self._entries[data.address] = data
            return data

    def get(self, address: RepositoryAddress) -> Optional[RepositoryData]:
        # dict reads are atomic; populated entries are never rewritten
        return self._entries.get(address)

    def __contains__(self, address: RepositoryAddress) -> bool:
        return address in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[RepositoryData]:
        return iter(list(self._entries.values()))

    def for_host(self, host: str) -> List[RepositoryData]:
        return [d for d in self if d.address.host == host]

    def original_path(self, address: RepositoryAddress) -> Optional[str]:
        """
        The filesystem path a repository holds, read from its latest snapshot.

        The segment is never decoded: the encoding cannot round-trip underscores.
        """
        data = self._entries.get(address)
        if data is None or data.latest is None or not data.latest.paths:
            return None
        return data.latest.paths[0]
