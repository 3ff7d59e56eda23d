# core/models.py
"""Enums and dataclasses shared by the store, services, scheduler and protocol."""
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


class HistoryEventType(str, Enum):
    SCAN = "scan"
    REBUILD = "rebuild"
    ERROR = "error"


class SchedulerState(IntEnum):
    STOPPED = 0
    RUNNING = 1


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class ImageInfo:
    """One image as reported by the listing provider."""
    name: str
    size: int
    last_modified: int  # st_mtime_ns


@dataclass
class FolderHashRecord:
    folder_path: str
    current_hash: str
    previous_hash: Optional[str] = None
    last_scanned_at: float = field(default_factory=time.time)
    last_built_at: Optional[float] = None
    thumbnail_count: int = 0
    revision: int = 0

    @property
    def is_current(self) -> bool:
        return self.previous_hash is not None and self.previous_hash == self.current_hash

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HistoryEntry:
    folder_path: str
    event_type: HistoryEventType
    detail: str = ""
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: _new_id("hist"))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return data


@dataclass(frozen=True)
class ChangeRecord:
    folder_path: str
    from_hash: Optional[str]
    to_hash: str
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: _new_id("change"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FolderStatus:
    folder_path: str
    is_current: bool
    current_hash: str
    previous_hash: Optional[str]
    thumbnail_count: int
    last_built_at: Optional[float]

    @classmethod
    def from_record(cls, record: FolderHashRecord) -> "FolderStatus":
        return cls(
            folder_path=record.folder_path,
            is_current=record.is_current,
            current_hash=record.current_hash,
            previous_hash=record.previous_hash,
            thumbnail_count=record.thumbnail_count,
            last_built_at=record.last_built_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CacheSnapshot:
    """All three collections as read inside one transaction."""
    records: List[FolderHashRecord] = field(default_factory=list)
    history: List[HistoryEntry] = field(default_factory=list)
    changes: List[ChangeRecord] = field(default_factory=list)


@dataclass
class RebuildResult:
    folder_path: str
    thumbnails_generated: int = 0
    files_processed: int = 0
    failed: int = 0
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScanResult:
    success: bool
    folders_checked: int = 0
    changes: int = 0
    rebuilt: int = 0
    errors: int = 0
    pruned: int = 0
    duration: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
