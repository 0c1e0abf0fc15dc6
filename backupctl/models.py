"""
Pydantic v2 data models for backupctl.
"""
import math
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ScanError

WINDOW_SECONDS = 300

# restic emits nanosecond precision, datetime only holds microseconds
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)

class Category(str, Enum):
    USER_HOME = "user_home"
    DOCKER_VOLUME = "docker_volume"
    SYSTEM = "system"

    @property
    def label(self) -> str:
        return {
            Category.USER_HOME: "User Home",
            Category.DOCKER_VOLUME: "Docker Volumes",
            Category.SYSTEM: "System",
        }[self]

    @property
    def tag(self) -> str:
        """The restic --tag value applied to backups of this category."""
        return {
            Category.USER_HOME: "user-path",
            Category.DOCKER_VOLUME: "docker-volume",
            Category.SYSTEM: "system-path",
        }[self]

CATEGORY_ORDER: Dict[Category, int] = {c: i for i, c in enumerate(Category)}

class RepositoryAddress(FrozenModel):
    host: str = Field(..., min_length=1)
    category: Category
    segment: str = Field(..., min_length=1)

    @property
    def subpath(self) -> str:
        """Relative location of the repository below the repo base."""
        return f"{self.host}/{self.category.value}/{self.segment}"

    def sort_key(self) -> tuple:
        return (CATEGORY_ORDER[self.category], self.segment)

    def __str__(self) -> str:
        return self.subpath

class UnscannedRepository(FrozenModel):
    address: RepositoryAddress

class TimeWindow(FrozenModel):
    start: datetime
    end: datetime

    @classmethod
    def containing(cls, instant: datetime) -> "TimeWindow":
        """Return the 5-minute UTC bucket the instant falls into."""
        epoch = math.floor(instant.timestamp() / WINDOW_SECONDS) * WINDOW_SECONDS
        start = datetime.fromtimestamp(epoch, tz=timezone.utc)
        return cls(start=start, end=start + timedelta(seconds=WINDOW_SECONDS))

    def __contains__(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def label(self, count: int) -> str:
        return f"{self.start:%Y-%m-%d %H:%M} to {self.end:%H:%M} ({count} snapshots)"

class Snapshot(FrozenModel):
    id: str
    short_id: str
    host: str = ""
    timestamp: datetime
    paths: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    size: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def from_restic_json(cls, data: Any) -> Any:
        """Accept the raw `restic snapshots --json` element shape."""
        if not isinstance(data, dict) or "time" not in data:
            return data
        summary = data.get("summary") or {}
        snap_id = data.get("id") or data.get("short_id")
        return {
            "id": snap_id,
            "short_id": data.get("short_id") or (snap_id or "")[:8],
            "host": data.get("hostname", ""),
            "timestamp": data["time"],
            "paths": data.get("paths") or [],
            "tags": data.get("tags") or [],
            "size": summary.get("total_bytes_processed"),
        }

    @field_validator("timestamp", mode="before")
    @classmethod
    def trim_fraction(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _FRACTION_RE.sub(r"\1", v)
        return v

    @field_validator("timestamp")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def window(self) -> TimeWindow:
        return TimeWindow.containing(self.timestamp)

class RepositoryData(FrozenModel):
    address: RepositoryAddress
    snapshots: List[Snapshot] = Field(default_factory=list)

    @field_validator("snapshots")
    @classmethod
    def order_by_time(cls, v: List[Snapshot]) -> List[Snapshot]:
        return sorted(v, key=lambda s: (s.timestamp, s.id))

    @property
    def latest(self) -> Optional[Snapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def latest_before(self, instant: datetime) -> Optional[Snapshot]:
        """Latest snapshot strictly earlier than the instant."""
        eligible = [s for s in self.snapshots if s.timestamp < instant]
        return eligible[-1] if eligible else None

class ScanFailure(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    address: RepositoryAddress
    error: ScanError

class ScanResult(FrozenModel):
    host: str
    repos: List[RepositoryData] = Field(default_factory=list)
    failures: List[ScanFailure] = Field(default_factory=list)

class RestoreSelection(FrozenModel):
    addresses: List[RepositoryAddress]
    window: TimeWindow
    snapshots: Dict[RepositoryAddress, Snapshot] = Field(default_factory=dict)
    ineligible: List[RepositoryAddress] = Field(default_factory=list)

PairStatus = Literal["succeeded", "skipped", "failed", "no_eligible_snapshot"]
OverallStatus = Literal["success", "partial", "failure"]

class PairOutcome(FrozenModel):
    address: RepositoryAddress
    original_path: Optional[str] = None
    snapshot_id: Optional[str] = None
    status: PairStatus
    detail: str = ""

def _overall(ok: int, total: int) -> OverallStatus:
    if total and ok == total:
        return "success"
    if ok:
        return "partial"
    return "failure"

class RestoreOutcome(FrozenModel):
    pairs: List[PairOutcome] = Field(default_factory=list)
    scan_warnings: List[str] = Field(default_factory=list)
    staging_dir: Optional[str] = None
    cancelled: bool = False

    @property
    def status(self) -> OverallStatus:
        # a pair kept in staging after a declined overwrite is still a usable result
        ok = self.count("succeeded")
        failed = self.count("failed") + self.count("no_eligible_snapshot")
        if self.pairs and not failed and ok < len(self.pairs):
            return "partial"
        return _overall(ok, len(self.pairs))

    def count(self, status: PairStatus) -> int:
        return sum(1 for p in self.pairs if p.status == status)

class BackupPathOutcome(FrozenModel):
    path: str
    address: Optional[RepositoryAddress] = None
    status: Literal["succeeded", "skipped", "failed"]
    snapshot_id: Optional[str] = None
    warning: bool = False
    detail: str = ""

class BackupOutcome(FrozenModel):
    host: str
    paths: List[BackupPathOutcome] = Field(default_factory=list)

    @property
    def status(self) -> OverallStatus:
        ok = sum(1 for p in self.paths if p.status == "succeeded")
        return _overall(ok, len(self.paths))

    def count(self, status: str) -> int:
        return sum(1 for p in self.paths if p.status == status)

class DoctorCheck(FrozenModel):
    name: str
    status: Literal["pass", "warn", "fail"]
    detail: str
